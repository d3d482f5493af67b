from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from src.errors import InvalidArgumentError
from src.models import Order, Product
from src.observability import increment_counter, record_event


class InventoryService:
    """
    Stock adjustments for checkout and cancellation.

    Callers own the transaction: nothing here commits.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def reserve_stock(self, product: Product, quantity: int, reason: str = "order") -> int:
        """Take ``quantity`` units out of stock, refusing to go below zero."""
        old_stock = product.stock or 0
        if quantity > old_stock:
            raise InvalidArgumentError(
                f"Insufficient stock for {product.name}: requested {quantity}, available {old_stock}",
                details={"product_id": product.productID, "available": old_stock},
            )
        product.stock = old_stock - quantity
        publish_inventory_update_event(product.productID, old_stock, product.stock, reason)
        return product.stock

    def release_order_stock(self, order: Order, reason: str = "cancellation") -> None:
        """Put every line of ``order`` back on the shelf."""
        adjustments = []
        for item in order.items:
            product = item.product
            if product is None:
                continue
            old_stock = product.stock or 0
            product.stock = old_stock + item.quantity
            adjustments.append((product.productID, item.quantity))
            publish_inventory_update_event(product.productID, old_stock, product.stock, reason)

        if adjustments:
            self.logger.info(
                "Inventory restored for order %s",
                order.orderID,
                extra={"adjustments": adjustments},
            )


def publish_inventory_update_event(
    product_id: int,
    old_stock: int,
    new_stock: int,
    reason: str,
) -> None:
    record_event(
        "inventory_updated",
        {
            "product_id": product_id,
            "old_stock": old_stock,
            "new_stock": new_stock,
            "change": new_stock - old_stock,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    increment_counter(
        "inventory_updates_total",
        labels={"reason": reason, "direction": "decrease" if new_stock < old_stock else "increase"},
    )
