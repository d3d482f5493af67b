from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.database import storage_guard
from src.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import AccountRole, Order, OrderStatus, Payment, User, to_money
from src.observability import increment_counter, record_event
from src.rbac import Permission, has_permission
from src.services.audit_service import AuditService
from src.services.notification_service import publish_payment_recorded
from src.services.pending_limit_service import coerce_amount


class PaymentService:
    """
    Records collections against credit orders.

    A payment shrinks the order's pending amount, which frees headroom under
    the owner's pending limit for the next checkout.
    """

    def __init__(self, db_session: Session, audit_service: Optional[AuditService] = None) -> None:
        self.db = db_session
        self.audit_service = audit_service or AuditService(db_session)
        self.logger = logging.getLogger(__name__)

    def record_payment(
        self,
        acting_account_id: int,
        order_id: int,
        amount,
        payment_method: str = "cash",
        notes: Optional[str] = None,
    ) -> Payment:
        amount = coerce_amount(amount, "amount")

        with storage_guard(self.db, "payment lookup"):
            acting = self.db.query(User).filter_by(userID=acting_account_id).first()
        if acting is None or not has_permission(AccountRole(acting.role), Permission.RECORD_PAYMENTS):
            increment_counter("payments_rejected_total", labels={"reason": "unauthorized"})
            raise UnauthorizedError("Unauthorized: payment recording requires staff access")

        if amount <= 0:
            raise InvalidArgumentError("Payment amount must be greater than zero")

        with storage_guard(self.db, "payment lookup"):
            order = self.db.query(Order).filter_by(orderID=order_id).with_for_update().first()
        if order is None:
            self.db.rollback()
            raise NotFoundError(f"Order {order_id} not found")

        if order.status == OrderStatus.CANCELLED:
            self.db.rollback()
            increment_counter("payments_rejected_total", labels={"reason": "cancelled"})
            raise InvalidArgumentError("Cannot record a payment against a cancelled order")

        pending = to_money(order.pending_amount)
        if amount > pending:
            self.db.rollback()
            increment_counter("payments_rejected_total", labels={"reason": "overpayment"})
            raise InvalidArgumentError(
                f"Payment amount cannot exceed pending amount of {pending}",
                details={"pending_amount": float(pending)},
            )

        old_values = {
            "paid_amount": to_money(order.paid_amount),
            "pending_amount": pending,
            "payment_status": order.payment_status,
        }
        with storage_guard(self.db, "payment recording"):
            payment = Payment(
                orderID=order.orderID,
                amount=amount,
                payment_method=payment_method or "cash",
                notes=notes,
                recorded_by=acting.userID,
            )
            self.db.add(payment)
            order.apply_payment(amount)
            self.audit_service.log(
                action="PAYMENT_RECORDED",
                entity_type="order",
                entity_id=order.orderID,
                actor_id=acting.userID,
                old_values=old_values,
                new_values={
                    "amount": amount,
                    "payment_method": payment.payment_method,
                    "paid_amount": order.paid_amount,
                    "pending_amount": order.pending_amount,
                    "payment_status": order.payment_status,
                },
            )
            self.db.commit()

        increment_counter("payments_recorded_total", labels={"method": payment.payment_method})
        record_event(
            "payment_applied",
            {"order_id": order.orderID, "amount": str(amount), "recorded_by": acting.userID},
        )
        publish_payment_recorded(
            order.userID,
            order.orderID,
            order.order_number,
            amount,
            to_money(order.pending_amount),
        )
        self.logger.info(
            "Payment of %s recorded for order %s",
            amount,
            order.order_number,
            extra={"payment_id": payment.paymentID, "recorded_by": acting.userID},
        )
        return payment

