import threading
from decimal import Decimal

import pytest

from src.database import SessionLocal
from src.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import AccountRole, AuditLog, Order, Payment, PaymentStatus, Product
from src.observability.metrics import get_counter_value
from src.services.checkout_service import CheckoutService
from src.services.notification_service import NotificationService
from src.services.pending_limit_service import PendingLimitService


@pytest.fixture
def checkout(db_session):
    return CheckoutService(db_session)


@pytest.fixture
def serum(make_product):
    return make_product(price="120.00", retailer_price="100.00", beauty_parlor_price="90.00", stock=50)


def test_admitted_order_is_persisted(checkout, db_session, make_account, serum):
    retailer = make_account(role=AccountRole.RETAILER, limit="1000")

    decision, order = checkout.place_order(
        retailer.userID,
        retailer.userID,
        [{"product_id": serum.productID, "quantity": 3}],
    )

    assert decision.valid is True
    assert order is not None
    assert order.order_number.startswith("ORD-")
    assert order.total_amount == Decimal("300.00")
    assert order.pending_amount == Decimal("300.00")
    assert order.payment_status == PaymentStatus.UNPAID
    assert order.items[0].unit_price == Decimal("100.00")

    db_session.expire_all()
    assert db_session.get(Product, serum.productID).stock == 47
    assert db_session.query(AuditLog).filter_by(action="ORDER_PLACED").count() == 1
    assert get_counter_value("orders_accepted_total") == 1


def test_role_pricing_applies_to_customer(checkout, make_account, serum):
    parlor = make_account(role=AccountRole.BEAUTY_PARLOR, limit="1000")
    shopper = make_account(role=AccountRole.LOCAL_CUSTOMER)

    _, parlor_order = checkout.place_order(parlor.userID, parlor.userID, [{"product_id": serum.productID, "quantity": 1}])
    _, shopper_order = checkout.place_order(shopper.userID, shopper.userID, [{"product_id": serum.productID, "quantity": 1}])

    assert parlor_order.total_amount == Decimal("90.00")
    assert shopper_order.total_amount == Decimal("120.00")


def test_denied_order_writes_nothing(checkout, db_session, make_account, make_order, serum):
    retailer = make_account(role=AccountRole.RETAILER, limit="10000")
    make_order(retailer, total="9000")

    decision, order = checkout.place_order(
        retailer.userID,
        retailer.userID,
        [{"product_id": serum.productID, "quantity": 20}],
    )

    assert order is None
    assert decision.valid is False
    assert decision.total_after == Decimal("11000.00")

    db_session.expire_all()
    assert db_session.query(Order).filter_by(userID=retailer.userID).count() == 1
    assert db_session.get(Product, serum.productID).stock == 50
    assert db_session.query(AuditLog).count() == 0
    assert get_counter_value("orders_denied_by_limit_total") == 1


def test_paying_in_full_bypasses_limit(checkout, db_session, make_account, serum):
    retailer = make_account(role=AccountRole.RETAILER, limit="0")

    decision, order = checkout.place_order(
        retailer.userID,
        retailer.userID,
        [{"product_id": serum.productID, "quantity": 2}],
        paid_amount="200",
        payment_method="upi",
    )

    assert decision.valid is True
    assert order.payment_status == PaymentStatus.PAID
    assert order.pending_amount == Decimal("0.00")
    payment = db_session.query(Payment).filter_by(orderID=order.orderID).one()
    assert payment.amount == Decimal("200.00")
    assert payment.payment_method == "upi"


def test_sequential_checkouts_cannot_overshoot(checkout, make_account, serum):
    retailer = make_account(role=AccountRole.RETAILER, limit="500")
    items = [{"product_id": serum.productID, "quantity": 3}]

    first, first_order = checkout.place_order(retailer.userID, retailer.userID, items)
    second, second_order = checkout.place_order(retailer.userID, retailer.userID, items)

    assert first.valid is True and first_order is not None
    assert second.valid is False and second_order is None
    assert second.current_pending == Decimal("300.00")


def test_warning_notification_when_approaching(checkout, make_account, serum):
    retailer = make_account(role=AccountRole.RETAILER, limit="1000")

    checkout.place_order(retailer.userID, retailer.userID, [{"product_id": serum.productID, "quantity": 9}])

    inbox = NotificationService().get_notifications(retailer.userID)
    assert inbox[0]["type"] == "pending_limit_warning"
    assert inbox[0]["severity"] == "warning"


def test_assigned_salesman_can_order_for_client(checkout, make_account, serum):
    salesman = make_account(role=AccountRole.SALESMAN)
    client = make_account(role=AccountRole.RETAILER, limit="1000", salesman=salesman)

    _, order = checkout.place_order(salesman.userID, client.userID, [{"product_id": serum.productID, "quantity": 1}])

    assert order.userID == client.userID
    assert order.placed_by_id == salesman.userID


def test_unassigned_salesman_is_refused(checkout, make_account, serum):
    salesman = make_account(role=AccountRole.SALESMAN)
    client = make_account(role=AccountRole.RETAILER, limit="1000")

    with pytest.raises(UnauthorizedError):
        checkout.place_order(salesman.userID, client.userID, [{"product_id": serum.productID, "quantity": 1}])


def test_admin_can_order_for_anyone(checkout, admin, make_account, serum):
    client = make_account(role=AccountRole.BEAUTY_PARLOR, limit="1000")

    _, order = checkout.place_order(admin.userID, client.userID, [{"product_id": serum.productID, "quantity": 1}])

    assert order.placed_by_id == admin.userID


def test_unknown_customer(checkout, admin, serum):
    with pytest.raises(NotFoundError):
        checkout.place_order(admin.userID, 999999, [{"product_id": serum.productID, "quantity": 1}])


def test_insufficient_stock_rolls_back(checkout, db_session, make_account, make_product, serum):
    retailer = make_account(role=AccountRole.RETAILER, limit="100000")
    scarce = make_product(price="10.00", stock=1, name="Limited Lipstick")

    with pytest.raises(InvalidArgumentError) as excinfo:
        checkout.place_order(
            retailer.userID,
            retailer.userID,
            [
                {"product_id": serum.productID, "quantity": 5},
                {"product_id": scarce.productID, "quantity": 2},
            ],
        )

    assert excinfo.value.details["available"] == 1
    db_session.expire_all()
    assert db_session.get(Product, serum.productID).stock == 50
    assert db_session.query(Order).count() == 0


@pytest.mark.parametrize("items", [
    [],
    [{"product_id": 1, "quantity": 0}],
    [{"product_id": "abc", "quantity": 1}],
    ["not-a-dict"],
])
def test_malformed_items_rejected(checkout, make_account, items):
    retailer = make_account()
    with pytest.raises(InvalidArgumentError):
        checkout.place_order(retailer.userID, retailer.userID, items)


def test_overpayment_rejected(checkout, make_account, serum):
    retailer = make_account(limit="1000")
    with pytest.raises(InvalidArgumentError):
        checkout.place_order(
            retailer.userID,
            retailer.userID,
            [{"product_id": serum.productID, "quantity": 1}],
            paid_amount="500",
        )


def test_concurrent_checkouts_cannot_overshoot_limit(db_session, make_account, serum, monkeypatch):
    retailer = make_account(role=AccountRole.RETAILER, limit="500")
    cart = [{"product_id": serum.productID, "quantity": 3}]
    first_session, second_session = SessionLocal(), SessionLocal()
    first = CheckoutService(first_session)
    outcome = {}

    def second_checkout():
        try:
            outcome["result"] = CheckoutService(second_session).place_order(retailer.userID, retailer.userID, cart)
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=second_checkout)
    evaluate = first.pending_limit_service.evaluate_checkout

    def evaluate_while_second_checkout_starts(*args, **kwargs):
        decision = evaluate(*args, **kwargs)
        worker.start()
        worker.join(timeout=0.5)
        # the second checkout has to wait for this transaction to finish
        outcome["second_was_blocked"] = worker.is_alive()
        return decision

    monkeypatch.setattr(first.pending_limit_service, "evaluate_checkout", evaluate_while_second_checkout_starts)
    try:
        _, first_order = first.place_order(retailer.userID, retailer.userID, cart)
        worker.join(timeout=10)
    finally:
        first_session.close()
        second_session.close()

    assert "error" not in outcome
    assert outcome["second_was_blocked"] is True
    assert first_order is not None
    second_decision, second_order = outcome["result"]
    assert second_decision.valid is False
    assert second_decision.total_after == Decimal("600.00")
    assert second_order is None

    report = PendingLimitService(db_session).compute_utilization(retailer.userID)
    assert report.current_pending == Decimal("300.00")
    assert report.current_pending <= report.limit
