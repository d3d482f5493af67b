# src/models.py
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    CheckConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from src.database import Base

_CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce ints, floats, strings and Decimals to a 2-place Decimal."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class AccountRole(str, Enum):
    ADMIN = "admin"
    SUB_ADMIN = "sub_admin"
    SALESMAN = "salesman"
    RETAILER = "retailer"
    BEAUTY_PARLOR = "beauty_parlor"
    LOCAL_CUSTOMER = "local_customer"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class User(Base):
    __tablename__ = 'User'
    __table_args__ = (
        CheckConstraint('pending_amount_limit >= 0', name='ck_user_pending_limit_non_negative'),
    )

    userID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    _passwordHash = Column('passwordHash', String(255), nullable=False)
    role = Column(
        SAEnum(AccountRole, name="account_role", native_enum=False, validate_strings=True,
               values_callable=_enum_values),
        default=AccountRole.LOCAL_CUSTOMER,
        nullable=False,
    )
    pending_amount_limit = Column(Numeric(12, 2), nullable=False, default=0)
    assigned_salesman_id = Column(Integer, ForeignKey('User.userID'))
    _created_at = Column('created_at', DateTime, default=lambda: datetime.now(timezone.utc))

    orders = relationship("Order", back_populates="customer", foreign_keys="Order.userID")
    assigned_salesman = relationship("User", remote_side=[userID])

    @property
    def passwordHash(self):
        return self._passwordHash

    @passwordHash.setter
    def passwordHash(self, value):
        self._passwordHash = value

    @property
    def created_at(self):
        return self._created_at


class Product(Base):
    __tablename__ = 'Product'
    __table_args__ = (
        CheckConstraint('stock >= 0', name='ck_product_stock_non_negative'),
    )

    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(String)
    price = Column(Numeric(12, 2), nullable=False)
    retailer_price = Column(Numeric(12, 2))
    beauty_parlor_price = Column(Numeric(12, 2))
    stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    def price_for_role(self, role: AccountRole) -> Decimal:
        role_prices = {
            AccountRole.RETAILER: self.retailer_price,
            AccountRole.BEAUTY_PARLOR: self.beauty_parlor_price,
        }
        price = role_prices.get(role)
        return to_money(price if price is not None else self.price)


class Order(Base):
    __tablename__ = 'SalesOrder'
    __table_args__ = (
        CheckConstraint('total_amount >= 0', name='ck_order_total_non_negative'),
        CheckConstraint('paid_amount >= 0', name='ck_order_paid_non_negative'),
        CheckConstraint('paid_amount <= total_amount', name='ck_order_paid_within_total'),
        CheckConstraint('pending_amount >= 0', name='ck_order_pending_non_negative'),
    )

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), unique=True)
    userID = Column(Integer, ForeignKey('User.userID'), nullable=False, index=True)
    placed_by_id = Column(Integer, ForeignKey('User.userID'))
    total_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    pending_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True,
               values_callable=_enum_values),
        default=PaymentStatus.UNPAID,
        nullable=False,
        index=True,
    )
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True,
               values_callable=_enum_values),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    customer = relationship("User", back_populates="orders", foreign_keys=[userID])
    placed_by = relationship("User", foreign_keys=[placed_by_id])
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order", order_by="Payment.paymentID")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid order status transition from {self.status} to {new_status}")
        self.status = new_status

    def apply_payment(self, amount) -> None:
        self.paid_amount = to_money(self.paid_amount) + to_money(amount)
        self.refresh_balances()

    def refresh_balances(self) -> None:
        total = to_money(self.total_amount)
        paid = to_money(self.paid_amount)
        self.pending_amount = max(total - paid, Decimal("0.00"))
        if paid >= total:
            self.payment_status = PaymentStatus.PAID
        elif paid > 0:
            self.payment_status = PaymentStatus.PARTIAL
        else:
            self.payment_status = PaymentStatus.UNPAID

    def assign_order_number(self) -> None:
        if not self.order_number and self.orderID is not None:
            self.order_number = f"ORD-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{self.orderID:05d}"


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_order_item_quantity_positive'),
    )

    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('SalesOrder.orderID'), nullable=False)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Payment(Base):
    __tablename__ = 'Payment'
    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
    )

    paymentID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('SalesOrder.orderID'), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(50), nullable=False, default='cash')
    notes = Column(Text)
    recorded_by = Column(Integer, ForeignKey('User.userID'))
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    order = relationship("Order", back_populates="payments")
    recorder = relationship("User")


class AuditLog(Base):
    __tablename__ = 'AuditLog'

    auditID = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer)
    user_id = Column(Integer, ForeignKey('User.userID'))
    action = Column(String(100), nullable=False)
    old_values = Column(Text)  # JSON
    new_values = Column(Text)  # JSON
    timestamp = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    success = Column(Boolean, default=True)
    error_message = Column(String)

    user = relationship("User")
