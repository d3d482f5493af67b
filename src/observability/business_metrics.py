from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.database import storage_guard
from src.models import AccountRole, Order, OrderStatus, PaymentStatus, User, to_money
from src.observability.metrics import set_gauge
from src.rbac import LIMITED_ROLES
from src.services.pending_limit_service import LimitWarningState, classify_utilization


@dataclass(frozen=True)
class AccountExposure:
    account_id: int
    full_name: str
    role: AccountRole
    limit: Decimal
    current_pending: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(Decimal("0.00"), self.limit - self.current_pending)

    @property
    def warning_state(self) -> LimitWarningState:
        return classify_utilization(self.current_pending, self.limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "full_name": self.full_name,
            "role": self.role.value,
            "pending_amount_limit": float(self.limit),
            "current_pending": float(self.current_pending),
            "remaining_allowed": float(self.remaining),
            "warning_state": self.warning_state.value,
        }


def compute_credit_exposure(session: Session) -> Dict[str, Any]:
    """
    Ledger of every credit-limited account: ceiling, open balance and band.

    Totals are also pushed to the ``credit_exposure_*`` gauges so the metrics
    endpoint reflects the last time the ledger was built.
    """
    with storage_guard(session, "credit exposure"):
        pending_by_account = dict(
            session.query(Order.userID, func.coalesce(func.sum(Order.pending_amount), 0))
            .filter(Order.payment_status != PaymentStatus.PAID)
            .filter(Order.status != OrderStatus.CANCELLED)
            .group_by(Order.userID)
            .all()
        )
        accounts = (
            session.query(User)
            .filter(User.role.in_(sorted(LIMITED_ROLES, key=lambda role: role.value)))
            .order_by(User.userID.asc())
            .all()
        )

    rows: List[AccountExposure] = [
        AccountExposure(
            account_id=account.userID,
            full_name=account.full_name,
            role=AccountRole(account.role),
            limit=to_money(account.pending_amount_limit),
            current_pending=to_money(pending_by_account.get(account.userID, 0)),
        )
        for account in accounts
    ]

    states: Counter = Counter(row.warning_state.value for row in rows)
    total_pending = sum((row.current_pending for row in rows), Decimal("0.00"))
    total_limit = sum((row.limit for row in rows), Decimal("0.00"))

    set_gauge("credit_exposure_pending_total", float(total_pending))
    for state in LimitWarningState:
        set_gauge("credit_accounts_by_state", states.get(state.value, 0), labels={"state": state.value})

    return {
        "accounts": [row.to_dict() for row in rows],
        "total_pending": float(total_pending),
        "total_limit": float(total_limit),
        "counts": {state.value: states.get(state.value, 0) for state in LimitWarningState},
    }


__all__ = [
    "AccountExposure",
    "compute_credit_exposure",
]
