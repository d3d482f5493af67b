from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.database import storage_guard
from src.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import AccountRole, Order, OrderStatus, User, to_money
from src.observability import increment_counter
from src.rbac import Permission, has_permission
from src.services.audit_service import AuditService
from src.services.inventory_service import InventoryService
from src.services.notification_service import publish_order_status_change


class OrderService:
    """Order lifecycle after checkout: status changes and listings."""

    def __init__(
        self,
        db_session: Session,
        inventory_service: Optional[InventoryService] = None,
        audit_service: Optional[AuditService] = None,
    ) -> None:
        self.db = db_session
        self.inventory_service = inventory_service or InventoryService(db_session)
        self.audit_service = audit_service or AuditService(db_session)
        self.logger = logging.getLogger(__name__)

    def update_status(self, acting_account_id: int, order_id: int, new_status) -> Order:
        """
        Move an order along the fulfilment pipeline.

        Cancelling puts the stock back and drops the order out of the
        owner's pending balance.
        """
        try:
            target_status = OrderStatus(new_status)
        except ValueError as exc:
            raise InvalidArgumentError(f"Unknown order status: {new_status}") from exc

        acting = self._find_user(acting_account_id)
        if acting is None or not has_permission(AccountRole(acting.role), Permission.EDIT_ORDERS):
            raise UnauthorizedError("Unauthorized: order management requires admin access")

        with storage_guard(self.db, "order lookup"):
            order = self.db.query(Order).filter_by(orderID=order_id).with_for_update().first()
        if order is None:
            self.db.rollback()
            raise NotFoundError(f"Order {order_id} not found")

        old_status = OrderStatus(order.status)
        try:
            order.transition_to(target_status)
        except ValueError as exc:
            self.db.rollback()
            increment_counter("order_status_rejected_total")
            raise InvalidArgumentError(
                f"Cannot move order from {old_status.value} to {target_status.value}",
                details={"current_status": old_status.value},
            ) from exc

        with storage_guard(self.db, "order status update"):
            if target_status == OrderStatus.CANCELLED:
                self.inventory_service.release_order_stock(order)
            self.audit_service.log(
                action="ORDER_STATUS_UPDATED",
                entity_type="order",
                entity_id=order.orderID,
                actor_id=acting.userID,
                old_values={"status": old_status},
                new_values={"status": target_status},
            )
            self.db.commit()

        publish_order_status_change(
            order.userID,
            order.orderID,
            order.order_number,
            old_status.value,
            target_status.value,
        )
        self.logger.info(
            "Order %s moved from %s to %s",
            order.order_number,
            old_status.value,
            target_status.value,
            extra={"acting_account_id": acting.userID},
        )
        return order

    def list_orders(self, account_id: int, include_cancelled: bool = True) -> List[Order]:
        with storage_guard(self.db, "order listing"):
            query = self.db.query(Order).filter(Order.userID == account_id)
            if not include_cancelled:
                query = query.filter(Order.status != OrderStatus.CANCELLED)
            return query.order_by(Order.created_at.desc(), Order.orderID.desc()).all()

    def can_view_account(self, acting_account_id: int, account_id: int) -> bool:
        """Own orders, an assigned client's orders, or anything with VIEW_ALL_ORDERS."""
        if acting_account_id == account_id:
            return True
        acting = self._find_user(acting_account_id)
        if acting is None:
            return False
        if has_permission(AccountRole(acting.role), Permission.VIEW_ALL_ORDERS):
            return True
        if not has_permission(AccountRole(acting.role), Permission.VIEW_ASSIGNED_ORDERS):
            return False
        account = self._find_user(account_id)
        return account is not None and account.assigned_salesman_id == acting.userID

    def _find_user(self, account_id: int) -> Optional[User]:
        with storage_guard(self.db, "account lookup"):
            return self.db.query(User).filter_by(userID=account_id).first()


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.orderID,
        "order_number": order.order_number,
        "account_id": order.userID,
        "placed_by": order.placed_by_id,
        "status": OrderStatus(order.status).value,
        "payment_status": order.payment_status.value if hasattr(order.payment_status, "value") else order.payment_status,
        "total_amount": float(to_money(order.total_amount)),
        "paid_amount": float(to_money(order.paid_amount)),
        "pending_amount": float(to_money(order.pending_amount)),
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "items": [
            {
                "product_id": item.productID,
                "quantity": item.quantity,
                "unit_price": float(to_money(item.unit_price)),
                "subtotal": float(to_money(item.subtotal)),
            }
            for item in order.items
        ],
    }
