import json

import events
import services
from models import VisitStatus


def test_subscribers_receive_messages(received):
    message = events.publish(events.VISIT_UPDATED, {"id": "v1"})
    assert received == [message]
    assert message["type"] == "visit_updated"
    assert message["data"] == {"id": "v1"}
    assert "timestamp" in message


def test_unsubscribe():
    messages = []
    unsubscribe = events.subscribe(messages.append)
    unsubscribe()
    unsubscribe()
    events.publish(events.VISIT_UPDATED, {})
    assert messages == []


def test_failing_subscriber_does_not_stop_delivery(received):
    def broken(message):
        raise RuntimeError("viewer went away")

    unsubscribe = events.subscribe(broken)
    try:
        events.publish(events.SUMMARY_UPDATED, {"day": "2026-03-02"})
    finally:
        unsubscribe()
    assert [m["type"] for m in received] == ["summary_updated"]


def test_no_redis_without_url():
    assert events.get_redis() is None


def test_booking_publishes_visit_and_summary(book, received):
    visit = book("Asha Rao", phone="555-0101")
    types = [m["type"] for m in received]
    assert types == ["summary_updated", "visit_created"]

    created = received[-1]["data"]
    assert created["id"] == visit.id
    assert created["uid"] == "XC-001"
    assert created["visit_status"] == "upcoming"
    assert created["visit_date"] == "2026-03-02"

    summary = received[0]["data"]
    assert summary["day"] == "2026-03-02"
    assert summary["total_appointments"] == 1


def test_change_messages_leave_out_patient_details(session, book, received):
    visit = book("Asha Rao", phone="555-0101")
    services.change_visit_status(session, visit.id, VisitStatus.arrived)
    services.delete_visit(session, visit.id)

    wire = json.dumps(received)
    assert "Asha" not in wire
    assert "555-0101" not in wire
    assert {m["type"] for m in received} == {
        "visit_created",
        "visit_updated",
        "visit_deleted",
        "summary_updated",
    }
