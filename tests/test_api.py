import json

from sqlalchemy.exc import OperationalError
from sqlmodel import Session

import services
from tests.conftest import ADMIN


def book(client, name="Asha", payment_method="clinic", **extra):
    response = client.post("/api/visits", json={"name": name, "payment_method": payment_method, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "sqlite"
    assert body["redis"] is False


def test_public_settings_hide_passcode(client):
    body = client.get("/api/settings").json()
    assert body["clinic_name"] == "X Clinic"
    assert body["consultation_fee"] == 500.0
    assert "admin_passcode" not in body


def test_booking_returns_visit_and_qr(client):
    body = book(client, "Asha", phone="555-0101", age=34)
    visit = body["visit"]
    assert visit["uid"] == "XC-001"
    assert visit["token_number"] == 1
    assert visit["estimated_time"] == "15 minutes"
    assert visit["visit_status"] == "upcoming"

    qr = json.loads(body["qr_payload"])
    assert qr["uid"] == "XC-001"
    assert qr["visitId"] == visit["id"]
    assert qr["clinicCode"] == "XC"


def test_booking_validation(client):
    assert client.post("/api/visits", json={"payment_method": "clinic"}).status_code == 422
    assert client.post("/api/visits", json={"name": "Asha", "payment_method": "cash"}).status_code == 422
    assert client.post("/api/visits", json={"name": "  ", "payment_method": "clinic"}).status_code == 400
    assert (
        client.post("/api/visits", json={"name": "Asha", "payment_method": "clinic", "age": 200}).status_code
        == 422
    )


def test_lookup_and_track(client):
    book(client, "Asha")
    book(client, "Ravi")

    assert client.get("/api/visits/xc-002").json()["name"] == "Ravi"
    assert client.get("/api/visits/XC-404").status_code == 404

    tracking = client.get("/api/track/XC-002").json()
    assert tracking["patients_ahead"] == 1
    assert tracking["queue_summary"]["total_waiting"] == 2


def test_queue_summary_endpoint(client):
    book(client)
    summary = client.get("/api/queue/summary").json()
    assert summary["total_appointments"] == 1
    assert summary["estimated_wait_time"] == 15
    empty = client.get("/api/queue/summary", params={"day": "2030-01-01"}).json()
    assert empty["total_appointments"] == 0


def test_admin_requires_passcode(client):
    assert client.get("/admin/queue").status_code == 422
    assert client.get("/admin/queue", params={"passcode": "wrong"}).status_code == 401
    assert client.get("/admin/queue", params=ADMIN).status_code == 200


def test_admin_queue(client):
    book(client, "Asha")
    book(client, "Ravi")
    body = client.get("/admin/queue", params=ADMIN).json()
    assert [v["uid"] for v in body["visits"]] == ["XC-001", "XC-002"]
    assert body["queue_summary"]["total_appointments"] == 2

    filtered = client.get("/admin/queue", params={**ADMIN, "search": "rav"}).json()
    assert [v["name"] for v in filtered["visits"]] == ["Ravi"]


def test_admin_actions(client):
    visit_id = book(client)["visit"]["id"]

    def act(action, **extra):
        return client.post("/admin/action", params=ADMIN, json={"action": action, "visit_id": visit_id, **extra})

    arrived = act("check_in")
    assert arrived.status_code == 200
    assert arrived.json()["visit_status"] == "arrived"
    assert arrived.json()["arrived_at"] is not None

    assert act("complete").status_code == 409
    assert act("start_consultation").json()["visit_status"] == "in_consultation"
    completed = act("complete").json()
    assert completed["visit_status"] == "completed"
    assert completed["completed_at"] is not None

    assert act("teleport").status_code == 400
    assert act("no_show").status_code == 409


def test_cancel_needs_confirm(client):
    visit_id = book(client)["visit"]["id"]
    unconfirmed = client.post("/admin/action", params=ADMIN, json={"action": "cancel", "visit_id": visit_id})
    assert unconfirmed.status_code == 400
    confirmed = client.post(
        "/admin/action", params=ADMIN, json={"action": "cancel", "visit_id": visit_id, "confirm": True}
    )
    assert confirmed.json()["visit_status"] == "cancelled"
    assert client.get("/api/queue/summary").json()["total_cancelled"] == 1


def test_action_on_missing_visit(client):
    response = client.post("/admin/action", params=ADMIN, json={"action": "check_in", "visit_id": "nope"})
    assert response.status_code == 404


def test_payment(client):
    visit_id = book(client, payment_method="online")["visit"]["id"]
    paid = client.post("/admin/payment", params=ADMIN, json={"visit_id": visit_id, "payment_status": "paid"})
    assert paid.status_code == 200
    assert paid.json()["payment_id"].startswith("pay_")

    report = client.get("/admin/payments", params=ADMIN).json()
    assert report["total_revenue"] == 500.0
    assert report["paid_count"] == 1
    assert report["online_count"] == 1


def test_notes_and_prescription_download(client):
    visit_id = book(client)["visit"]["id"]
    notes = client.patch(
        f"/admin/visits/{visit_id}/notes", params=ADMIN, json={"diagnosis": "Migraine", "doctor_rating": 4}
    )
    assert notes.json()["diagnosis"] == "Migraine"
    assert client.patch(
        f"/admin/visits/{visit_id}/notes", params=ADMIN, json={"doctor_rating": 6}
    ).status_code == 422

    created = client.post(
        f"/admin/visits/{visit_id}/prescription",
        params=ADMIN,
        json={"instructions": "Rest in a dark room", "medications": ["Ibuprofen 400mg"]},
    )
    assert created.status_code == 201
    prescription_id = created.json()["id"]

    download = client.get(f"/api/prescriptions/{prescription_id}/download")
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/plain")
    assert "prescription_XC-001.txt" in download.headers["content-disposition"]
    assert "Ibuprofen 400mg" in download.text

    assert client.get("/api/prescriptions/missing/download").status_code == 404


def test_delete_visit(client):
    visit_id = book(client)["visit"]["id"]
    response = client.delete(f"/admin/visits/{visit_id}", params=ADMIN)
    assert response.json() == {"deleted": visit_id}
    assert client.get("/api/visits/XC-001").status_code == 404
    assert client.delete(f"/admin/visits/{visit_id}", params=ADMIN).status_code == 404


def test_search_and_patient_profile(client):
    book(client, "Asha Rao", phone="555-0101")
    book(client, "Ravi", phone="555-0202")

    found = client.get("/admin/search", params={**ADMIN, "q": "asha"}).json()
    assert [v["uid"] for v in found] == ["XC-001"]

    profile = client.get("/admin/patients/XC-001", params=ADMIN).json()
    assert profile["visit"]["name"] == "Asha Rao"
    assert profile["past_visits"] == []


def test_settings_update(client):
    response = client.put(
        "/admin/settings",
        params=ADMIN,
        json={"consultation_fee": 650, "average_consultation_time": 20, "holiday_dates": ["2026-12-25"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["consultation_fee"] == 650
    assert body["holiday_dates"] == ["2026-12-25"]
    assert "admin_passcode" not in body

    visit = book(client)["visit"]
    assert visit["payment_amount"] == 650
    assert visit["estimated_time"] == "20 minutes"

    assert client.put("/admin/settings", params=ADMIN, json={"consultation_fee": -1}).status_code == 422


def test_online_payment_toggle(client):
    client.put("/admin/settings", params=ADMIN, json={"online_payment_enabled": False})
    response = client.post("/api/visits", json={"name": "Asha", "payment_method": "online"})
    assert response.status_code == 400


def test_passcode_change(client):
    client.put("/admin/settings", params=ADMIN, json={"admin_passcode": "n3wpass"})
    assert client.get("/admin/queue", params=ADMIN).status_code == 401
    assert client.get("/admin/queue", params={"passcode": "n3wpass"}).status_code == 200


def test_scan_check_in(client):
    body = book(client)
    scanned = client.post("/admin/scan", params=ADMIN, json={"payload": body["qr_payload"]})
    assert scanned.status_code == 200
    assert scanned.json()["visit_status"] == "arrived"
    assert client.post("/admin/scan", params=ADMIN, json={"payload": "garbage"}).status_code == 400


def test_recompute_summary(client):
    book(client)
    response = client.post("/admin/summary/recompute", params=ADMIN)
    assert response.status_code == 200
    assert response.json()["total_appointments"] == 1


def test_settings_reject_empty_required_fields(client):
    response = client.put("/admin/settings", params=ADMIN, json={"clinic_name": None})
    assert response.status_code == 400
    assert client.get("/api/settings").json()["clinic_name"] == "X Clinic"


def test_storage_failure_on_booking_is_503(client, monkeypatch):
    def commit(self):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(Session, "commit", commit)
    response = client.post("/api/visits", json={"name": "Asha", "payment_method": "clinic"})
    assert response.status_code == 503
    assert "try again" in response.json()["detail"]


def test_unexpected_storage_error_is_503(client, monkeypatch):
    def lookup(session, uid, day=None):
        raise OperationalError("SELECT", {}, Exception("server closed the connection"))

    monkeypatch.setattr(services, "get_visit_by_uid", lookup)
    response = client.get("/api/visits/XC-001")
    assert response.status_code == 503
    assert response.json() == {"detail": "Something went wrong, please try again"}
