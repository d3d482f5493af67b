from .audit_service import AuditService
from .inventory_service import InventoryService
from .notification_service import NotificationService
from .pending_limit_service import PendingLimitService
from .checkout_service import CheckoutService
from .payment_service import PaymentService
from .order_service import OrderService

__all__ = [
    "AuditService",
    "InventoryService",
    "NotificationService",
    "PendingLimitService",
    "CheckoutService",
    "PaymentService",
    "OrderService",
]
