"""
Account notifications for credit, payment and order events.

Publishers at the bottom of this module are called by the services after
their transaction commits; the service keeps a bounded inbox per account
that the notifications API reads.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from threading import RLock
from typing import Any, Dict, List, Optional

from src.config import Config
from src.observability import increment_counter, record_event


@dataclass
class Notification:
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    severity: str = "info"
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class NotificationService:
    """
    Process-wide notification inbox.

    A single instance is shared so every request sees the same inboxes.
    Each account keeps at most ``Config.NOTIFICATIONS_MAX_PER_USER`` entries,
    newest first.
    """

    _instance: Optional["NotificationService"] = None
    _lock = RLock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._sequence = count(1)
        self._max_per_user: int = Config.NOTIFICATIONS_MAX_PER_USER
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        severity: str = "info",
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            notification = Notification(
                id=f"notif_{next(self._sequence)}",
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                severity=severity,
                reference_id=reference_id,
                reference_type=reference_type,
            )
            inbox = self._notifications[user_id]
            inbox.insert(0, notification)
            del inbox[self._max_per_user:]

        increment_counter("notifications_created_total", labels={"type": notification_type})
        self.logger.info("Notification created for user %d: %s", user_id, title)
        return notification

    def get_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            notifications = list(self._notifications.get(user_id, []))
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        with self._lock:
            return sum(1 for n in self._notifications.get(user_id, []) if not n.read)

    def mark_as_read(self, user_id: int, notification_id: str) -> bool:
        with self._lock:
            for notification in self._notifications.get(user_id, []):
                if notification.id == notification_id:
                    if not notification.read:
                        notification.read = True
                        notification.read_at = datetime.now(timezone.utc)
                    return True
        return False

    def mark_all_as_read(self, user_id: int) -> int:
        marked = 0
        now = datetime.now(timezone.utc)
        with self._lock:
            for notification in self._notifications.get(user_id, []):
                if not notification.read:
                    notification.read = True
                    notification.read_at = now
                    marked += 1
        return marked

    def clear_notifications(self, user_id: Optional[int] = None) -> None:
        """Drop one account's inbox, or every inbox when no id is given."""
        with self._lock:
            if user_id is None:
                self._notifications.clear()
            else:
                self._notifications.pop(user_id, None)


def _money(amount: Decimal | float | int) -> str:
    return f"{Config.CURRENCY_SYMBOL} {Decimal(str(amount)):,.2f}"


ORDER_STATUS_LABELS = {
    "pending": "Pending",
    "confirmed": "Confirmed",
    "processing": "Processing",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
}


def publish_pending_limit_updated(
    account_id: int,
    old_limit: Decimal,
    new_limit: Decimal,
) -> None:
    record_event(
        "pending_limit_updated",
        {"account_id": account_id, "old_limit": str(old_limit), "new_limit": str(new_limit)},
    )
    NotificationService().add_notification(
        user_id=account_id,
        notification_type="pending_limit",
        title="Credit Limit Updated",
        message=f"Your pending amount limit changed from {_money(old_limit)} to {_money(new_limit)}.",
        reference_id=account_id,
        reference_type="account",
    )


def publish_payment_recorded(
    account_id: int,
    order_id: int,
    order_number: Optional[str],
    amount: Decimal,
    remaining: Decimal,
) -> None:
    record_event(
        "payment_recorded",
        {"account_id": account_id, "order_id": order_id, "amount": str(amount), "remaining": str(remaining)},
    )
    order_display = order_number or f"#{order_id}"
    NotificationService().add_notification(
        user_id=account_id,
        notification_type="payment",
        title=f"Payment Received for {order_display}",
        message=f"We recorded a payment of {_money(amount)}. Outstanding balance: {_money(remaining)}.",
        severity="success",
        reference_id=order_id,
        reference_type="order",
    )


def publish_order_status_change(
    account_id: int,
    order_id: int,
    order_number: Optional[str],
    old_status: str,
    new_status: str,
) -> None:
    record_event(
        "order_status_changed",
        {"account_id": account_id, "order_id": order_id, "old_status": old_status, "new_status": new_status},
    )
    increment_counter(
        "order_status_transitions_total",
        labels={"from_status": old_status, "to_status": new_status},
    )
    old_label = ORDER_STATUS_LABELS.get(old_status, old_status)
    new_label = ORDER_STATUS_LABELS.get(new_status, new_status)
    order_display = order_number or f"#{order_id}"
    NotificationService().add_notification(
        user_id=account_id,
        notification_type="order_status",
        title=f"Order {order_display} Updated",
        message=f"Your order status changed from {old_label} to {new_label}.",
        severity="warning" if new_status == "cancelled" else "info",
        reference_id=order_id,
        reference_type="order",
    )


def publish_limit_warning(
    account_id: int,
    warning_state: str,
    current_pending: Decimal,
    limit: Decimal,
) -> None:
    """Tell a credit account it is approaching or has reached its limit."""
    record_event(
        "pending_limit_warning",
        {
            "account_id": account_id,
            "state": warning_state,
            "current_pending": str(current_pending),
            "limit": str(limit),
        },
    )
    if warning_state == "blocked":
        title = "Pending Limit Reached - New Credit Orders Blocked"
        message = (
            f"Your pending amount of {_money(current_pending)} has reached your limit of {_money(limit)}. "
            "New orders must be paid in full until you reduce your balance."
        )
        severity = "error"
    else:
        title = "Approaching Pending Limit"
        message = (
            f"Current pending: {_money(current_pending)} of {_money(limit)} limit. "
            "Consider making a payment soon to avoid order restrictions."
        )
        severity = "warning"
    NotificationService().add_notification(
        user_id=account_id,
        notification_type="pending_limit_warning",
        title=title,
        message=message,
        severity=severity,
        reference_id=account_id,
        reference_type="account",
    )
