import csv
import io

import pytest

from sparks.models import ROLE_MANAGER, Payment, TherapySession
from sparks.routes.admin import TRANSACTION_HEADERS
from sparks.services.booking_service import create_booked_session


@pytest.fixture
def payments(db, patient, therapist, slot):
    completed = Payment(order_id="ORDER_A", patient_id=patient.id, amount=5000, status="COMPLETED", payment_method="VISA")
    pending = Payment(order_id="ORDER_B", patient_id=patient.id, amount=3000, status="PENDING")
    failed = Payment(order_id="ORDER_C", patient_id=patient.id, amount=2000, status="FAILED")
    db.add_all([completed, pending, failed])
    db.commit()
    create_booked_session(
        db,
        patient_id=patient.id,
        therapist_id=therapist.id,
        slot_id=slot.id,
        scheduled_at=slot.date.replace(hour=10),
        session_type="Individual",
        meeting_type="IN_PERSON",
        booked_rate=5000,
        payment=completed,
    )
    return completed, pending, failed


def test_list_payments_with_summary(client, payments, admin_user, auth_headers):
    response = client.get("/api/admin/payments", headers=auth_headers(admin_user))

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"] == {"total": 3, "limit": 50, "offset": 0, "hasMore": False}
    assert body["summary"]["totalAmount"] == 10000.0
    assert body["summary"]["byStatus"]["COMPLETED"] == {"count": 1, "amount": 5000.0}

    completed = next(p for p in body["payments"] if p["orderId"] == "ORDER_A")
    assert completed["patient"]["name"] == "Nimal Silva"
    assert completed["session"]["therapist"]["name"] == "Dr. Perera"


def test_list_payments_filtered_by_status(client, payments, make_user, auth_headers):
    manager = make_user(role=ROLE_MANAGER)

    response = client.get("/api/admin/payments", params={"status": "PENDING"}, headers=auth_headers(manager))

    body = response.json()
    assert [p["orderId"] for p in body["payments"]] == ["ORDER_B"]
    assert body["summary"]["totalAmount"] == 3000.0


def test_list_payments_pagination(client, payments, admin_user, auth_headers):
    response = client.get("/api/admin/payments", params={"limit": 2}, headers=auth_headers(admin_user))

    body = response.json()
    assert len(body["payments"]) == 2
    assert body["pagination"]["hasMore"] is True


def test_payments_are_staff_only(client, payments, patient_user, auth_headers):
    response = client.get("/api/admin/payments", headers=auth_headers(patient_user))

    assert response.status_code == 403
    assert response.json() == {"error": "Forbidden - insufficient permissions"}


def test_transaction_history_csv(client, payments, admin_user, auth_headers):
    response = client.get(
        "/api/admin/reports/transaction-history", params={"status": "COMPLETED"}, headers=auth_headers(admin_user)
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0] == TRANSACTION_HEADERS
    assert len(rows) == 2
    assert rows[1][0] == "ORDER_A"
    assert rows[1][3] == "5000.00"
    assert rows[1][7] == "Nimal Silva"
    assert rows[1][8] == "Dr. Perera"


def test_meeting_link_backfill(client, db, patient, therapist, admin_user, auth_headers, make_slot):
    for hour, meeting_type in ((9, "ONLINE"), (11, "HYBRID"), (13, "IN_PERSON")):
        slot = make_slot(start_time=f"{hour}:00", end_time=f"{hour}:45")
        create_booked_session(
            db,
            patient_id=patient.id,
            therapist_id=therapist.id,
            slot_id=slot.id,
            scheduled_at=slot.date.replace(hour=hour),
            session_type="Individual",
            meeting_type=meeting_type,
            booked_rate=0,
        )
    headers = auth_headers(admin_user)

    stats = client.get("/api/admin/backfill-meeting-links", headers=headers).json()["statistics"]
    assert stats == {
        "totalSessions": 3,
        "onlineHybridSessions": 2,
        "sessionsWithLinks": 0,
        "sessionsWithoutLinks": 2,
        "needsBackfill": True,
    }

    result = client.post("/api/admin/backfill-meeting-links", headers=headers).json()
    assert result["updated"] == 2

    db.expire_all()
    links = {s.meeting_type: s.meeting_link for s in db.query(TherapySession).all()}
    assert links["ONLINE"].startswith("https://sparks.test/meeting/")
    assert links["HYBRID"].startswith("https://sparks.test/meeting/")
    assert links["IN_PERSON"] is None

    stats = client.get("/api/admin/backfill-meeting-links", headers=headers).json()["statistics"]
    assert stats["needsBackfill"] is False


def test_backfill_is_admin_only(client, make_user, auth_headers):
    manager = make_user(role=ROLE_MANAGER)

    response = client.post("/api/admin/backfill-meeting-links", headers=auth_headers(manager))

    assert response.status_code == 403
