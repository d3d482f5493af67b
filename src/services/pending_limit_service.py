"""
Pending amount limit policy for credit accounts.

Retailers and beauty parlors may order on credit. The unpaid part of their
active orders (not paid, not cancelled) is their pending balance, and an
admin-set ``pending_amount_limit`` caps it. This module computes that
balance, decides whether a prospective checkout is admitted, and lets an
admin move the ceiling. Every call re-reads persisted balances; nothing is
cached between calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.config import Config
from src.database import storage_guard
from src.errors import InvalidArgumentError, NotFoundError, UnauthorizedError
from src.models import AccountRole, Order, OrderStatus, PaymentStatus, User, to_money
from src.observability import increment_counter, record_event
from src.rbac import Permission, has_permission, is_credit_limited
from src.services.audit_service import AuditService
from src.services.notification_service import publish_pending_limit_updated

# Display thresholds, as a fraction of the limit
APPROACHING_THRESHOLD = Decimal("0.80")
BLOCKED_THRESHOLD = Decimal("1.00")

_ZERO = Decimal("0.00")


class LimitWarningState(str, Enum):
    NONE = "none"
    APPROACHING = "approaching"
    BLOCKED = "blocked"


# Labels used by the client financial summary
_SUMMARY_STATUS = {
    LimitWarningState.NONE: "safe",
    LimitWarningState.APPROACHING: "warning",
    LimitWarningState.BLOCKED: "exceeded",
}


def classify_utilization(current_pending, limit) -> LimitWarningState:
    """Map a balance against its ceiling to the warning shown to the account."""
    current_pending = to_money(current_pending)
    limit = to_money(limit)
    if limit <= 0:
        return LimitWarningState.BLOCKED if current_pending > 0 else LimitWarningState.NONE
    ratio = current_pending / limit
    if ratio >= BLOCKED_THRESHOLD:
        return LimitWarningState.BLOCKED
    if ratio >= APPROACHING_THRESHOLD:
        return LimitWarningState.APPROACHING
    return LimitWarningState.NONE


@dataclass(frozen=True)
class UtilizationReport:
    account_id: int
    role: AccountRole
    limit: Decimal
    current_pending: Decimal
    remaining_allowed: Decimal

    @property
    def usage_ratio(self) -> Decimal:
        if self.limit <= 0:
            return Decimal("0")
        return self.current_pending / self.limit

    @property
    def usage_percentage(self) -> float:
        return round(float(self.usage_ratio * 100), 2)

    @property
    def warning_state(self) -> LimitWarningState:
        return classify_utilization(self.current_pending, self.limit)

    @property
    def is_limited(self) -> bool:
        return is_credit_limited(self.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "role": self.role.value,
            "limit_applies": self.is_limited,
            "pending_amount_limit": float(self.limit),
            "current_pending": float(self.current_pending),
            "remaining_allowed": float(self.remaining_allowed),
            "usage_ratio": float(self.usage_ratio),
            "usage_percentage": self.usage_percentage,
            "warning_state": self.warning_state.value,
        }


@dataclass(frozen=True)
class CheckoutDecision:
    """Outcome of checking one prospective order against the limit."""

    valid: bool
    reason: Optional[str] = None
    exempt: bool = False
    current_pending: Optional[Decimal] = None
    new_pending: Optional[Decimal] = None
    limit: Optional[Decimal] = None
    total_after: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"valid": self.valid, "exempt": self.exempt}
        if self.reason:
            body["error"] = self.reason
        for name in ("current_pending", "new_pending", "limit", "total_after"):
            value = getattr(self, name)
            if value is not None:
                body[name] = float(value)
        return body


def coerce_amount(value, field_name: str) -> Decimal:
    try:
        amount = to_money(value)
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidArgumentError(f"{field_name} must be a number") from exc
    if not amount.is_finite():
        raise InvalidArgumentError(f"{field_name} must be a finite number")
    return amount


class PendingLimitService:
    """Computes utilization, gates checkouts and updates per-account limits."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        audit_service: Optional[AuditService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.audit_service = audit_service or AuditService(db_session)
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def compute_utilization(self, account_id: int) -> UtilizationReport:
        account = self._get_account(account_id)
        return self.build_report(account)

    def build_report(self, account: User) -> UtilizationReport:
        """Report for an account row the caller already holds (possibly locked)."""
        limit = to_money(account.pending_amount_limit)
        current_pending = self._sum_pending(account.userID)
        return UtilizationReport(
            account_id=account.userID,
            role=AccountRole(account.role),
            limit=limit,
            current_pending=current_pending,
            remaining_allowed=max(_ZERO, limit - current_pending),
        )

    def validate_checkout(self, account_id: int, order_total, paid_amount) -> CheckoutDecision:
        account = self._get_account(account_id)
        return self.evaluate_checkout(account, order_total, paid_amount)

    def evaluate_checkout(self, account: User, order_total, paid_amount) -> CheckoutDecision:
        """Decide admission for ``account``; performs reads only."""
        order_total = coerce_amount(order_total, "order_total")
        paid_amount = coerce_amount(paid_amount, "paid_amount")

        if not is_credit_limited(AccountRole(account.role)):
            return self._record_decision(CheckoutDecision(valid=True, exempt=True), account)

        new_pending = order_total - paid_amount
        if new_pending <= 0:
            return self._record_decision(CheckoutDecision(valid=True, new_pending=_ZERO), account)

        report = self.build_report(account)
        total_after = report.current_pending + new_pending

        if total_after > report.limit:
            reason = (
                "Pending amount limit exceeded. "
                f"Current pending: {self._format_money(report.current_pending)}, "
                f"New order pending: {self._format_money(new_pending)}, "
                f"Limit: {self._format_money(report.limit)}. "
                "Please pay the full amount or reduce pending orders."
            )
            decision = CheckoutDecision(
                valid=False,
                reason=reason,
                current_pending=report.current_pending,
                new_pending=new_pending,
                limit=report.limit,
                total_after=total_after,
            )
        else:
            decision = CheckoutDecision(
                valid=True,
                current_pending=report.current_pending,
                new_pending=new_pending,
                limit=report.limit,
                total_after=total_after,
            )
        return self._record_decision(decision, account)

    def get_financial_summary(self, account_id: int) -> Dict[str, Any]:
        account = self._get_account(account_id)
        report = self.build_report(account)
        with storage_guard(self.db, "financial summary"):
            lifetime_value, total_paid, order_count = (
                self.db.query(
                    func.coalesce(func.sum(Order.total_amount), 0),
                    func.coalesce(func.sum(Order.paid_amount), 0),
                    func.count(Order.orderID),
                )
                .filter(Order.userID == account.userID)
                .filter(Order.status != OrderStatus.CANCELLED)
                .one()
            )
        return {
            "account_id": account.userID,
            "full_name": account.full_name,
            "role": report.role.value,
            "order_count": int(order_count or 0),
            "total_lifetime_value": float(to_money(lifetime_value)),
            "total_paid": float(to_money(total_paid)),
            "current_pending": float(report.current_pending),
            "pending_limit": float(report.limit),
            "remaining_limit": float(report.remaining_allowed),
            "limit_usage_percentage": report.usage_percentage,
            "status": _SUMMARY_STATUS[report.warning_state],
        }

    # ------------------------------------------------------------------
    # Privileged writes
    # ------------------------------------------------------------------
    def update_limit(self, acting_account_id: int, target_account_id: int, new_limit) -> User:
        acting = self._find_account(acting_account_id)
        if acting is None or not has_permission(AccountRole(acting.role), Permission.MANAGE_CREDIT_LIMITS):
            increment_counter("pending_limit_update_denied_total")
            self.logger.warning(
                "Pending limit update refused for account %s",
                acting_account_id,
                extra={"target_account_id": target_account_id},
            )
            raise UnauthorizedError("Unauthorized: Admin access required")

        limit = coerce_amount(new_limit, "new_limit")
        if limit < 0:
            raise InvalidArgumentError("Limit cannot be negative")

        target = self._get_account(target_account_id)
        old_limit = to_money(target.pending_amount_limit)

        with storage_guard(self.db, "pending limit update"):
            target.pending_amount_limit = limit
            self.audit_service.log(
                action="PENDING_LIMIT_UPDATED",
                entity_type="user",
                entity_id=target.userID,
                actor_id=acting.userID,
                old_values={"pending_amount_limit": old_limit},
                new_values={"pending_amount_limit": limit},
            )
            self.db.commit()

        increment_counter("pending_limit_updates_total")
        record_event(
            "pending_limit_update",
            {"acting_account_id": acting.userID, "target_account_id": target.userID},
        )
        publish_pending_limit_updated(target.userID, old_limit, limit)
        self.logger.info(
            "Pending limit for account %s changed from %s to %s",
            target.userID,
            old_limit,
            limit,
            extra={"acting_account_id": acting.userID},
        )
        return target

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _find_account(self, account_id: int) -> Optional[User]:
        with storage_guard(self.db, "account lookup"):
            return self.db.query(User).filter_by(userID=account_id).first()

    def _get_account(self, account_id: int) -> User:
        account = self._find_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _sum_pending(self, account_id: int) -> Decimal:
        with storage_guard(self.db, "pending balance query"):
            total = (
                self.db.query(func.coalesce(func.sum(Order.pending_amount), 0))
                .filter(Order.userID == account_id)
                .filter(Order.payment_status != PaymentStatus.PAID)
                .filter(Order.status != OrderStatus.CANCELLED)
                .scalar()
            )
        return to_money(total)

    def _format_money(self, amount: Decimal) -> str:
        return f"{self.config.CURRENCY_SYMBOL} {amount:,.2f}"

    def _record_decision(self, decision: CheckoutDecision, account: User) -> CheckoutDecision:
        outcome = "admitted" if decision.valid else "denied"
        increment_counter(
            "checkout_decisions_total",
            labels={"outcome": outcome, "role": AccountRole(account.role).value},
        )
        if not decision.valid:
            self.logger.info(
                "Checkout denied for account %s: pending would reach %s of %s",
                account.userID,
                decision.total_after,
                decision.limit,
            )
        return decision
