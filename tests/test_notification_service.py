from decimal import Decimal

from src.services.notification_service import (
    NotificationService,
    publish_limit_warning,
    publish_order_status_change,
    publish_pending_limit_updated,
)


def test_service_is_a_singleton():
    assert NotificationService() is NotificationService()


def test_inbox_is_newest_first_and_bounded():
    service = NotificationService()
    cap = service._max_per_user
    for n in range(cap + 5):
        service.add_notification(7, "test", f"title {n}", "body")

    inbox = service.get_notifications(7, limit=cap + 10)

    assert len(inbox) == cap
    assert inbox[0]["title"] == f"title {cap + 4}"


def test_read_tracking():
    service = NotificationService()
    first = service.add_notification(3, "test", "one", "body")
    service.add_notification(3, "test", "two", "body")

    assert service.get_unread_count(3) == 2
    assert service.mark_as_read(3, first.id) is True
    assert service.mark_as_read(3, "notif_missing") is False
    assert service.get_unread_count(3) == 1
    assert [n["title"] for n in service.get_notifications(3, unread_only=True)] == ["two"]
    assert service.mark_all_as_read(3) == 1
    assert service.get_unread_count(3) == 0


def test_limit_warning_severity():
    publish_limit_warning(11, "approaching", Decimal("850"), Decimal("1000"))
    publish_limit_warning(11, "blocked", Decimal("1000"), Decimal("1000"))

    inbox = NotificationService().get_notifications(11)

    assert inbox[0]["severity"] == "error"
    assert inbox[1]["severity"] == "warning"
    assert "Rs. 850.00" in inbox[1]["message"]


def test_publishers_reference_their_entities():
    publish_pending_limit_updated(5, Decimal("0"), Decimal("15000"))
    publish_order_status_change(5, 42, "ORD-20260101-00042", "pending", "cancelled")

    cancelled, limit_change = NotificationService().get_notifications(5)

    assert cancelled["reference_type"] == "order"
    assert cancelled["reference_id"] == 42
    assert cancelled["severity"] == "warning"
    assert "Rs. 15,000.00" in limit_change["message"]
