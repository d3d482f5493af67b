from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request, session

from src.database import get_db
from src.errors import InvalidArgumentError, UnauthorizedError
from src.models import Payment, to_money
from src.services.checkout_service import CheckoutService
from src.services.order_service import OrderService, serialize_order
from src.services.payment_service import PaymentService

orders_bp = Blueprint("orders", __name__)


def _serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.paymentID,
        "order_id": payment.orderID,
        "amount": float(to_money(payment.amount)),
        "payment_method": payment.payment_method,
        "notes": payment.notes,
        "recorded_by": payment.recorded_by,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


def _parse_account_id(raw, default: int) -> int:
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError("account_id must be an integer") from exc


@orders_bp.route("/api/orders", methods=["GET"])
def api_list_orders():
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    acting_id = session["user_id"]
    account_id = _parse_account_id(request.args.get("account_id"), acting_id)
    include_cancelled = request.args.get("include_cancelled", "true").lower() != "false"

    service = OrderService(get_db())
    if not service.can_view_account(acting_id, account_id):
        raise UnauthorizedError("Not allowed to view orders for this account")

    orders = service.list_orders(account_id, include_cancelled=include_cancelled)
    return jsonify({"orders": [serialize_order(order) for order in orders]})


@orders_bp.route("/api/orders", methods=["POST"])
def api_place_order():
    """
    Place an order for the session account, or for ``account_id`` when a
    salesman or admin orders on a client's behalf.

    A pending-limit denial answers 409 with the numbers behind it.
    """
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    payload = request.get_json(silent=True) or {}
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise InvalidArgumentError("items must be a non-empty list")

    acting_id = session["user_id"]
    decision, order = CheckoutService(get_db()).place_order(
        acting_account_id=acting_id,
        customer_account_id=_parse_account_id(payload.get("account_id"), acting_id),
        items=items,
        paid_amount=payload.get("paid_amount", 0),
        payment_method=payload.get("payment_method") or "cash",
    )
    if order is None:
        body = decision.to_dict()
        body["code"] = "PENDING_LIMIT_EXCEEDED"
        return jsonify(body), 409

    return jsonify({
        "success": True,
        "order": serialize_order(order),
        "decision": decision.to_dict(),
    }), 201


@orders_bp.route("/api/admin/orders/<int:order_id>/payments", methods=["POST"])
def api_record_payment(order_id: int):
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    payload = request.get_json(silent=True) or {}
    if "amount" not in payload:
        raise InvalidArgumentError("amount is required")

    payment = PaymentService(get_db()).record_payment(
        session["user_id"],
        order_id,
        payload["amount"],
        payment_method=payload.get("payment_method") or "cash",
        notes=payload.get("notes"),
    )
    return jsonify({
        "success": True,
        "payment": _serialize_payment(payment),
        "order": serialize_order(payment.order),
    }), 201


@orders_bp.route("/api/admin/orders/<int:order_id>/status", methods=["POST"])
def api_update_order_status(order_id: int):
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401

    payload = request.get_json(silent=True) or {}
    if not payload.get("status"):
        raise InvalidArgumentError("status is required")

    order = OrderService(get_db()).update_status(session["user_id"], order_id, payload["status"])
    return jsonify({"success": True, "order": serialize_order(order)})
