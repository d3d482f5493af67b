from decimal import Decimal

import pytest

from src.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import AccountRole, AuditLog, OrderStatus, PaymentStatus
from src.services.notification_service import NotificationService
from src.services.payment_service import PaymentService
from src.services.pending_limit_service import PendingLimitService


@pytest.fixture
def payments(db_session):
    return PaymentService(db_session)


def test_payments_move_order_to_paid(payments, db_session, admin, make_account, make_order):
    retailer = make_account(limit="5000")
    order = make_order(retailer, total="1000")

    payments.record_payment(admin.userID, order.orderID, "400", payment_method="cash")
    db_session.refresh(order)
    assert order.payment_status == PaymentStatus.PARTIAL
    assert order.pending_amount == Decimal("600.00")

    payments.record_payment(admin.userID, order.orderID, "600", payment_method="bank_transfer")
    db_session.refresh(order)
    assert order.payment_status == PaymentStatus.PAID
    assert order.pending_amount == Decimal("0.00")
    assert len(order.payments) == 2
    assert db_session.query(AuditLog).filter_by(action="PAYMENT_RECORDED").count() == 2


def test_payment_frees_limit_headroom(payments, db_session, admin, make_account, make_order):
    retailer = make_account(limit="1000")
    order = make_order(retailer, total="1000")
    limits = PendingLimitService(db_session)
    assert limits.validate_checkout(retailer.userID, 500, 0).valid is False

    payments.record_payment(admin.userID, order.orderID, "500")

    assert limits.validate_checkout(retailer.userID, 500, 0).valid is True


def test_owner_is_notified(payments, admin, make_account, make_order):
    retailer = make_account(limit="5000")
    order = make_order(retailer, total="1000")

    payments.record_payment(admin.userID, order.orderID, "250")

    inbox = NotificationService().get_notifications(retailer.userID)
    assert inbox[0]["type"] == "payment"
    assert "Rs. 750.00" in inbox[0]["message"]


def test_salesman_may_record_payment(payments, make_account, make_order):
    salesman = make_account(role=AccountRole.SALESMAN)
    retailer = make_account(limit="5000", salesman=salesman)
    order = make_order(retailer, total="300")

    payment = payments.record_payment(salesman.userID, order.orderID, "300")

    assert payment.recorded_by == salesman.userID


def test_customer_cannot_record_payment(payments, make_account, make_order):
    retailer = make_account(limit="5000")
    order = make_order(retailer, total="300")

    with pytest.raises(UnauthorizedError) as excinfo:
        payments.record_payment(retailer.userID, order.orderID, "300")

    assert "staff access" in str(excinfo.value)


@pytest.mark.parametrize("amount", ["0", "-5", "1000.01"])
def test_amount_bounds(payments, admin, make_account, make_order, amount):
    retailer = make_account(limit="5000")
    order = make_order(retailer, total="1000")

    with pytest.raises(InvalidArgumentError):
        payments.record_payment(admin.userID, order.orderID, amount)


def test_cancelled_order_rejects_payment(payments, admin, make_account, make_order):
    retailer = make_account(limit="5000")
    order = make_order(retailer, total="1000", status=OrderStatus.CANCELLED)

    with pytest.raises(InvalidArgumentError):
        payments.record_payment(admin.userID, order.orderID, "100")


def test_unknown_order(payments, admin):
    with pytest.raises(NotFoundError):
        payments.record_payment(admin.userID, 123456, "100")
