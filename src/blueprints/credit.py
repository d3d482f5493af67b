from __future__ import annotations

from typing import Optional

from flask import Blueprint, g, jsonify, request, session

from src.database import get_db
from src.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import AccountRole, User
from src.observability.business_metrics import compute_credit_exposure
from src.rbac import Permission, has_permission
from src.services.pending_limit_service import PendingLimitService

credit_bp = Blueprint("credit", __name__)


def _get_pending_limit_service() -> PendingLimitService:
    return PendingLimitService(get_db())


def _current_account() -> Optional[User]:
    return getattr(g, "current_user", None)


def _can_view_account(acting: User, target_id: int) -> bool:
    """Admins with VIEW_USERS see everyone; a salesman sees assigned clients."""
    role = AccountRole(acting.role)
    if acting.userID == target_id or has_permission(role, Permission.VIEW_USERS):
        return True
    if not has_permission(role, Permission.VIEW_ASSIGNED_ORDERS):
        return False
    target = get_db().query(User).filter_by(userID=target_id).first()
    if target is None:
        raise NotFoundError(f"Account {target_id} not found")
    return target.assigned_salesman_id == acting.userID


@credit_bp.route("/api/pending-limit", methods=["GET"])
def api_my_pending_limit():
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    report = _get_pending_limit_service().compute_utilization(session["user_id"])
    return jsonify(report.to_dict())


@credit_bp.route("/api/pending-limit/validate", methods=["POST"])
def api_validate_checkout():
    """Preview whether a cart would pass the pending limit; writes nothing."""
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    payload = request.get_json(silent=True) or {}
    if "order_total" not in payload:
        raise InvalidArgumentError("order_total is required")

    decision = _get_pending_limit_service().validate_checkout(
        session["user_id"],
        payload["order_total"],
        payload.get("paid_amount", 0),
    )
    return jsonify(decision.to_dict())


@credit_bp.route("/api/admin/users/<int:account_id>/pending-limit", methods=["GET"])
def api_get_account_limit(account_id: int):
    acting = _current_account()
    if acting is None:
        return jsonify({"error": "Not authenticated"}), 401
    if not _can_view_account(acting, account_id):
        raise UnauthorizedError("Not allowed to view this account")

    report = _get_pending_limit_service().compute_utilization(account_id)
    return jsonify(report.to_dict())


@credit_bp.route("/api/admin/users/<int:account_id>/pending-limit", methods=["PUT"])
def api_update_account_limit(account_id: int):
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    payload = request.get_json(silent=True) or {}
    if "pending_amount_limit" not in payload:
        raise InvalidArgumentError("pending_amount_limit is required")

    service = _get_pending_limit_service()
    account = service.update_limit(session["user_id"], account_id, payload["pending_amount_limit"])
    return jsonify({
        "success": True,
        "message": "Pending amount limit updated",
        "account": service.build_report(account).to_dict(),
    })


@credit_bp.route("/api/admin/users/<int:account_id>/financial-summary", methods=["GET"])
def api_financial_summary(account_id: int):
    acting = _current_account()
    if acting is None:
        return jsonify({"error": "Not authenticated"}), 401
    if not _can_view_account(acting, account_id):
        raise UnauthorizedError("Not allowed to view this account")

    return jsonify(_get_pending_limit_service().get_financial_summary(account_id))


@credit_bp.route("/api/admin/credit-exposure", methods=["GET"])
def api_credit_exposure():
    acting = _current_account()
    if acting is None:
        return jsonify({"error": "Not authenticated"}), 401
    if not has_permission(AccountRole(acting.role), Permission.VIEW_REPORTS):
        raise UnauthorizedError("Unauthorized: Admin access required")

    return jsonify(compute_credit_exposure(get_db()))
