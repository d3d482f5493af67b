from __future__ import annotations

import logging
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from src.config import Config
from src.database import storage_guard
from src.errors import CreditControlError, InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import (
    AccountRole,
    Order,
    OrderItem,
    Payment,
    Product,
    User,
    to_money,
)
from src.observability import increment_counter, observe_latency, record_event
from src.rbac import Permission, has_permission, is_credit_limited
from src.services.audit_service import AuditService
from src.services.inventory_service import InventoryService
from src.services.notification_service import publish_limit_warning
from src.services.pending_limit_service import (
    CheckoutDecision,
    LimitWarningState,
    PendingLimitService,
    UtilizationReport,
    coerce_amount,
)


class CheckoutService:
    """
    Turns a cart into a persisted order.

    The limit check and the order insert share one transaction, and the
    customer's account row is locked first, so two checkouts for the same
    account cannot both read the old balance and jointly overshoot the limit.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        pending_limit_service: Optional[PendingLimitService] = None,
        inventory_service: Optional[InventoryService] = None,
        audit_service: Optional[AuditService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.audit_service = audit_service or AuditService(db_session)
        self.pending_limit_service = pending_limit_service or PendingLimitService(
            db_session,
            config=config,
            audit_service=self.audit_service,
        )
        self.inventory_service = inventory_service or InventoryService(db_session)

    def place_order(
        self,
        acting_account_id: int,
        customer_account_id: int,
        items: Iterable[Dict[str, Any]],
        paid_amount=0,
        payment_method: str = "cash",
    ) -> Tuple[CheckoutDecision, Optional[Order]]:
        """
        Validate and persist an order for ``customer_account_id``.

        Returns ``(decision, order)``; ``order`` is None when the pending
        limit denied the checkout, in which case nothing was written.
        """
        started = time.perf_counter()
        quantities = self._normalize_items(items)
        paid = coerce_amount(paid_amount, "paid_amount")
        increment_counter("orders_submitted_total")

        try:
            with storage_guard(self.db, "checkout"):
                decision, order, report = self._place_locked(
                    acting_account_id,
                    customer_account_id,
                    quantities,
                    paid,
                    payment_method,
                )
        except CreditControlError:
            self.db.rollback()
            increment_counter("orders_rejected_total")
            raise
        finally:
            observe_latency("checkout_latency_ms", (time.perf_counter() - started) * 1000)

        if order is None:
            increment_counter("orders_denied_by_limit_total")
            record_event(
                "checkout_denied",
                {"account_id": customer_account_id, "total_after": str(decision.total_after)},
            )
            return decision, None

        increment_counter("orders_accepted_total")
        record_event(
            "order_placed",
            {"order_id": order.orderID, "account_id": customer_account_id, "placed_by": acting_account_id},
        )
        if report is not None and report.warning_state != LimitWarningState.NONE:
            publish_limit_warning(
                report.account_id,
                report.warning_state.value,
                report.current_pending,
                report.limit,
            )
        self.logger.info(
            "Order %s placed for account %s",
            order.order_number,
            customer_account_id,
            extra={"placed_by": acting_account_id, "total": str(order.total_amount)},
        )
        return decision, order

    def _place_locked(
        self,
        acting_account_id: int,
        customer_account_id: int,
        quantities: "OrderedDict[int, int]",
        paid: Decimal,
        payment_method: str,
    ) -> Tuple[CheckoutDecision, Optional[Order], Optional[UtilizationReport]]:
        customer = (
            self.db.query(User)
            .filter_by(userID=customer_account_id)
            .with_for_update()
            .first()
        )
        if customer is None:
            raise NotFoundError(f"Account {customer_account_id} not found")

        acting = customer if acting_account_id == customer.userID else (
            self.db.query(User).filter_by(userID=acting_account_id).first()
        )
        self._authorize(acting, customer)

        products = {
            product.productID: product
            for product in (
                self.db.query(Product)
                .filter(Product.productID.in_(list(quantities)))
                .with_for_update()
                .all()
            )
        }
        role = AccountRole(customer.role)
        lines: List[Tuple[Product, int, Decimal]] = []
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None or not product.is_active:
                raise InvalidArgumentError(f"Product {product_id} is not available")
            lines.append((product, quantity, product.price_for_role(role)))

        total = sum((unit_price * quantity for _, quantity, unit_price in lines), Decimal("0.00"))
        total = to_money(total)
        if paid < 0:
            raise InvalidArgumentError("Paid amount cannot be negative")
        if paid > total:
            raise InvalidArgumentError("Paid amount cannot exceed the order total")

        decision = self.pending_limit_service.evaluate_checkout(customer, total, paid)
        if not decision.valid:
            self.db.rollback()
            return decision, None, None

        order = Order(
            userID=customer.userID,
            placed_by_id=acting.userID,
            total_amount=total,
            paid_amount=Decimal("0.00"),
        )
        order.refresh_balances()
        for product, quantity, unit_price in lines:
            self.inventory_service.reserve_stock(product, quantity)
            order.items.append(
                OrderItem(
                    productID=product.productID,
                    quantity=quantity,
                    unit_price=unit_price,
                    subtotal=to_money(unit_price * quantity),
                )
            )
        self.db.add(order)
        self.db.flush()
        order.assign_order_number()

        if paid > 0:
            self.db.add(
                Payment(
                    orderID=order.orderID,
                    amount=paid,
                    payment_method=payment_method or "cash",
                    notes="Collected at checkout",
                    recorded_by=acting.userID,
                )
            )
            order.apply_payment(paid)

        self.audit_service.log(
            action="ORDER_PLACED",
            entity_type="order",
            entity_id=order.orderID,
            actor_id=acting.userID,
            new_values={
                "order_number": order.order_number,
                "customer_id": customer.userID,
                "total_amount": total,
                "paid_amount": paid,
            },
        )
        self.db.flush()

        report = None
        if is_credit_limited(role):
            report = self.pending_limit_service.build_report(customer)

        self.db.commit()
        return decision, order, report

    def _authorize(self, acting: Optional[User], customer: User) -> None:
        if acting is None:
            raise UnauthorizedError("Acting account not found")
        if acting.userID == customer.userID:
            return
        if customer.assigned_salesman_id is not None and customer.assigned_salesman_id == acting.userID:
            return
        if has_permission(AccountRole(acting.role), Permission.EDIT_ORDERS):
            return
        raise UnauthorizedError("Not allowed to place orders for this account")

    @staticmethod
    def _normalize_items(items: Iterable[Dict[str, Any]]) -> "OrderedDict[int, int]":
        quantities: "OrderedDict[int, int]" = OrderedDict()
        for payload in items or []:
            if not isinstance(payload, dict):
                raise InvalidArgumentError("Each item must be an object with product_id and quantity")
            try:
                product_id = int(payload.get("product_id"))
                quantity = int(payload.get("quantity", 0))
            except (TypeError, ValueError) as exc:
                raise InvalidArgumentError("Each item must include numeric product_id and quantity") from exc
            if quantity <= 0:
                raise InvalidArgumentError("Each item must have a positive quantity")
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        if not quantities:
            raise InvalidArgumentError("At least one item is required to place an order")
        return quantities
