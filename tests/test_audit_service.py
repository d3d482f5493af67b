from datetime import datetime, timedelta, timezone
from decimal import Decimal

from src.models import OrderStatus
from src.services.audit_service import AuditService


def test_entries_ride_the_callers_transaction(db_session, admin):
    audit = AuditService(db_session)
    audit.log("PENDING_LIMIT_UPDATED", "user", 9, admin.userID)
    db_session.rollback()

    assert audit.list_entries() == []


def test_values_are_stored_as_json(db_session, admin):
    audit = AuditService(db_session)
    audit.log(
        "ORDER_STATUS_UPDATED",
        "order",
        3,
        admin.userID,
        old_values={"status": OrderStatus.PENDING},
        new_values={"status": OrderStatus.CANCELLED, "refund": Decimal("12.50")},
    )
    db_session.commit()

    decoded = AuditService.decode(audit.list_entries()[0])

    assert decoded["old_values"] == {"status": "pending"}
    assert decoded["new_values"] == {"refund": "12.50", "status": "cancelled"}
    assert decoded["success"] is True


def test_list_entries_filters(db_session, admin, make_account):
    other = make_account()
    audit = AuditService(db_session)
    audit.log("PENDING_LIMIT_UPDATED", "user", other.userID, admin.userID)
    audit.log("PAYMENT_RECORDED", "order", 1, admin.userID)
    audit.log("ORDER_PLACED", "order", 2, other.userID)
    db_session.commit()

    assert len(audit.list_entries(actor_id=admin.userID)) == 2
    assert [e.action for e in audit.list_entries(entity_type="order", entity_id=2)] == ["ORDER_PLACED"]
    assert [e.action for e in audit.list_entries(action="limit")] == ["PENDING_LIMIT_UPDATED"]
    assert len(audit.list_entries(limit=1)) == 1
    assert audit.list_entries(start=datetime.now(timezone.utc) + timedelta(days=1)) == []
