# src/main.py
import logging
import time
from decimal import Decimal

from flask import Flask, request, session, jsonify, g
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from src.config import Config
from src.database import SessionLocal, get_db, close_db, init_schema, storage_guard
from src.errors import CreditControlError, InvalidArgumentError, UnauthorizedError
from src.models import AccountRole, User, to_money
from src.blueprints.credit import credit_bp
from src.blueprints.orders import orders_bp
from src.observability import (
    configure_logging,
    increment_counter,
    observe_latency,
    record_event,
    get_metrics_snapshot,
    check_database_health,
)
from src.observability.logging_config import ensure_request_id
from src.rbac import (
    LIMITED_ROLES,
    SELF_REGISTRABLE_ROLES,
    Permission,
    display_name,
    has_permission,
    is_admin,
    parse_role,
)
from src.services.audit_service import AuditService
from src.services.notification_service import NotificationService
from src.services.pending_limit_service import coerce_amount

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(credit_bp)
app.register_blueprint(orders_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Create tables and make sure one administrator exists."""
    init_schema()
    logger.info("Database tables initialized successfully")
    if not Config.BOOTSTRAP_SUPER_ADMIN:
        return

    db = SessionLocal()
    try:
        with storage_guard(db, "super admin bootstrap"):
            if db.query(User).filter_by(role=AccountRole.ADMIN).first() is None:
                db.add(User(
                    email=Config.SUPER_ADMIN_EMAIL,
                    full_name=Config.SUPER_ADMIN_NAME,
                    passwordHash=generate_password_hash(Config.SUPER_ADMIN_PASSWORD),
                    role=AccountRole.ADMIN,
                ))
                db.commit()
                logger.info("Bootstrapped super admin %s", Config.SUPER_ADMIN_EMAIL)
    finally:
        db.close()


init_database()


def is_admin_user() -> bool:
    user = getattr(g, "current_user", None)
    if user:
        return is_admin(AccountRole(user.role))
    return False


def _serialize_user(user: User):
    role = AccountRole(user.role)
    return {
        "id": user.userID,
        "email": user.email,
        "full_name": user.full_name,
        "role": role.value,
        "role_display": display_name(role),
        "pending_amount_limit": float(to_money(user.pending_amount_limit)),
        "assigned_salesman_id": user.assigned_salesman_id,
    }


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        db = get_db()
        g.current_user = db.query(User).filter_by(userID=session['user_id']).first()
        if g.current_user is not None:
            g.account_role = AccountRole(g.current_user.role).value
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )

@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "")
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response

@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(CreditControlError)
def handle_credit_control_error(error: CreditControlError):
    increment_counter("api_errors_total", labels={"code": error.code})
    if error.status_code >= 500:
        logger.error("Request failed: %s", error.message)
    else:
        logger.info("Request rejected: %s", error.message, extra={"code": error.code})
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(SQLAlchemyError)
def handle_storage_failure(error: SQLAlchemyError):
    get_db().rollback()
    increment_counter("api_errors_total", labels={"code": "STORAGE_ERROR"})
    logger.error("Unhandled storage failure: %s", error)
    return jsonify({"error": "Storage temporarily unavailable", "code": "STORAGE_ERROR"}), 503


# ---------------------------------------------
# Authentication
# ---------------------------------------------

@app.route('/api/auth/register', methods=['POST'])
def register():
    payload = request.get_json(silent=True) or {}
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    full_name = (payload.get('full_name') or '').strip()
    if not email or not password or not full_name:
        raise InvalidArgumentError("email, password and full_name are required")

    role = parse_role(payload.get('role', AccountRole.LOCAL_CUSTOMER.value))
    if role not in SELF_REGISTRABLE_ROLES:
        raise UnauthorizedError(f"{display_name(role)} accounts are created by an administrator")

    db = get_db()
    if db.query(User).filter_by(email=email).first():
        raise InvalidArgumentError("Email already registered")

    user = User(
        email=email,
        full_name=full_name,
        passwordHash=generate_password_hash(password),
        role=role,
        pending_amount_limit=Config.DEFAULT_PENDING_AMOUNT_LIMIT if role in LIMITED_ROLES else Decimal("0"),
    )
    with storage_guard(db, "registration"):
        db.add(user)
        db.commit()
    increment_counter("accounts_registered_total", labels={"role": role.value})
    return jsonify({"success": True, "user": _serialize_user(user)}), 201

@app.route('/api/auth/login', methods=['POST'])
def login():
    payload = request.get_json(silent=True) or {}
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    db = get_db()
    user = db.query(User).filter_by(email=email).first()
    if user and check_password_hash(user.passwordHash, password):
        session['user_id'] = user.userID
        increment_counter("logins_total", labels={"outcome": "success"})
        return jsonify({"success": True, "user": _serialize_user(user)})
    increment_counter("logins_total", labels={"outcome": "failure"})
    return jsonify({"error": "Invalid email or password"}), 401

@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({"success": True})


# ---------------------------------------------
# Account administration
# ---------------------------------------------

@app.route('/api/admin/users', methods=['POST'])
def api_create_user():
    """Create staff or client accounts, optionally with a limit and salesman."""
    user = getattr(g, "current_user", None)
    if user is None:
        return jsonify({'error': 'Not authenticated'}), 401
    if not has_permission(AccountRole(user.role), Permission.CREATE_USERS):
        raise UnauthorizedError("Unauthorized: Admin access required")

    payload = request.get_json(silent=True) or {}
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    full_name = (payload.get('full_name') or '').strip()
    if not email or not password or not full_name:
        raise InvalidArgumentError("email, password and full_name are required")
    role = parse_role(payload.get('role', AccountRole.LOCAL_CUSTOMER.value))

    db = get_db()
    if db.query(User).filter_by(email=email).first():
        raise InvalidArgumentError("Email already registered")

    salesman_id = payload.get('assigned_salesman_id')
    if salesman_id is not None:
        salesman = db.query(User).filter_by(userID=salesman_id).first()
        if salesman is None or AccountRole(salesman.role) != AccountRole.SALESMAN:
            raise InvalidArgumentError("assigned_salesman_id must reference a salesman")

    limit = coerce_amount(payload.get('pending_amount_limit', Config.DEFAULT_PENDING_AMOUNT_LIMIT), 'pending_amount_limit')
    if limit < 0:
        raise InvalidArgumentError("Limit cannot be negative")

    new_user = User(
        email=email,
        full_name=full_name,
        passwordHash=generate_password_hash(password),
        role=role,
        pending_amount_limit=limit if role in LIMITED_ROLES else Decimal("0"),
        assigned_salesman_id=salesman_id,
    )
    with storage_guard(db, "account creation"):
        db.add(new_user)
        db.flush()
        AuditService(db).log(
            action="USER_CREATED",
            entity_type="user",
            entity_id=new_user.userID,
            actor_id=user.userID,
            new_values={"email": email, "role": role, "pending_amount_limit": new_user.pending_amount_limit},
        )
        db.commit()
    record_event("account_created", {"account_id": new_user.userID, "role": role.value})
    return jsonify({"success": True, "user": _serialize_user(new_user)}), 201


# ---------------------------------------------
# Health & metrics
# ---------------------------------------------

@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health(get_db())
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "service": Config.APP_NAME,
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code

@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    if not is_admin_user():
        return jsonify({'error': 'Forbidden'}), 403
    return jsonify(get_metrics_snapshot())


# ---------------------------------------------
# Notifications API
# ---------------------------------------------

@app.route('/api/notifications', methods=['GET'])
def api_get_notifications():
    """Get notifications for the current user."""
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401

    notification_service = NotificationService()
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    limit = request.args.get('limit', default=20, type=int)

    notifications = notification_service.get_notifications(
        user_id=session['user_id'],
        unread_only=unread_only,
        limit=limit,
    )
    unread_count = notification_service.get_unread_count(session['user_id'])

    return jsonify({
        'notifications': notifications,
        'unread_count': unread_count,
    })


@app.route('/api/notifications/<notification_id>/read', methods=['POST'])
def api_mark_notification_read(notification_id):
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401

    notification_service = NotificationService()
    success = notification_service.mark_as_read(session['user_id'], notification_id)

    return jsonify({
        'success': success,
        'unread_count': notification_service.get_unread_count(session['user_id']),
    })


@app.route('/api/notifications/mark-all-read', methods=['POST'])
def api_mark_all_notifications_read():
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401

    notification_service = NotificationService()
    count = notification_service.mark_all_as_read(session['user_id'])

    return jsonify({
        'success': True,
        'marked_count': count,
        'unread_count': 0,
    })
