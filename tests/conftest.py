# tests/conftest.py
"""
Pytest configuration and shared fixtures.

The database URL is pointed at a throwaway SQLite file before ``src`` is
imported, since the engine is built from ``Config`` at import time.
"""

import itertools
import os
import tempfile
from decimal import Decimal

_TEST_DB_DIR = tempfile.mkdtemp(prefix="credit_control_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}")
os.environ.setdefault("BOOTSTRAP_SUPER_ADMIN", "false")
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")

import pytest
from werkzeug.security import generate_password_hash

from src.database import Base, SessionLocal, engine, init_schema
from src.models import AccountRole, Order, OrderStatus, Product, User
from src.observability.metrics import reset_metrics
from src.services.notification_service import NotificationService

TEST_PASSWORD = "password123"
_PASSWORD_HASH = generate_password_hash(TEST_PASSWORD)


@pytest.fixture(scope="session", autouse=True)
def test_db():
    """Create the schema once for the whole run."""
    init_schema()
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_process_state():
    reset_metrics()
    NotificationService().clear_notifications()
    yield
    NotificationService().clear_notifications()


@pytest.fixture
def db_session(test_db):
    """
    Fresh session per test; every table is emptied afterwards.

    Objects stay loaded after commit, so reading a factory-made row
    does not open a transaction (and take the SQLite write lock) while
    another session is working.
    """
    session = SessionLocal(expire_on_commit=False)
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture
def make_account(db_session):
    sequence = itertools.count(1)

    def _make(role=AccountRole.RETAILER, limit="0", salesman=None, email=None):
        n = next(sequence)
        role = AccountRole(role)
        account = User(
            email=email or f"{role.value}_{n}@example.com",
            full_name=f"Test {role.value} {n}",
            passwordHash=_PASSWORD_HASH,
            role=role,
            pending_amount_limit=Decimal(str(limit)),
            assigned_salesman_id=salesman.userID if salesman is not None else None,
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def admin(make_account):
    return make_account(role=AccountRole.ADMIN)


@pytest.fixture
def make_product(db_session):
    def _make(price="100.00", stock=100, retailer_price=None, beauty_parlor_price=None, name="Rose Face Serum"):
        product = Product(
            name=name,
            description="Test product",
            price=Decimal(price),
            retailer_price=Decimal(retailer_price) if retailer_price is not None else None,
            beauty_parlor_price=Decimal(beauty_parlor_price) if beauty_parlor_price is not None else None,
            stock=stock,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def make_order(db_session):
    """Insert an order row directly, bypassing checkout."""

    def _make(account, total, paid="0", status=OrderStatus.PENDING):
        order = Order(
            userID=account.userID,
            placed_by_id=account.userID,
            total_amount=Decimal(str(total)),
            paid_amount=Decimal(str(paid)),
            status=status,
        )
        order.refresh_balances()
        db_session.add(order)
        db_session.flush()
        order.assign_order_number()
        db_session.commit()
        return order

    return _make
