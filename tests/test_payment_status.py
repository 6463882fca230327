import pytest

from sparks.models import Notification, Payment, TherapistAvailability, TherapySession


@pytest.fixture
def order_id(client, patient_user, patient, slot, auth_headers, booking_request):
    response = client.post(
        "/api/patient/payment/initiate", json=booking_request(), headers=auth_headers(patient_user)
    )
    return response.json()["orderId"]


@pytest.fixture
def paid_order(client, order_id, sign_notification):
    client.post("/api/payment/notify", data=sign_notification(order_id, "5000.00"))
    return order_id


def test_owner_sees_pending_payment(client, order_id, patient_user, auth_headers):
    response = client.get("/api/payment/status", params={"orderId": order_id}, headers=auth_headers(patient_user))

    assert response.status_code == 200
    body = response.json()
    assert body["orderId"] == order_id
    assert body["amount"] == "5000.00"
    assert body["currency"] == "LKR"
    assert body["status"] == "PENDING"
    assert body["session"] is None


def test_status_includes_booked_session(client, paid_order, patient_user, therapist, auth_headers):
    response = client.get("/api/payment/status", params={"orderId": paid_order}, headers=auth_headers(patient_user))

    body = response.json()
    assert body["status"] == "COMPLETED"
    assert body["paymentMethod"] == "VISA"
    assert body["session"]["status"] == "SCHEDULED"
    assert body["session"]["therapist"] == {"id": therapist.id, "name": "Dr. Perera", "email": "therapist@sparks.test"}


def test_other_user_cannot_see_payment(client, order_id, make_user, auth_headers):
    stranger = make_user()

    response = client.get("/api/payment/status", params={"orderId": order_id}, headers=auth_headers(stranger))

    assert response.status_code == 403


def test_staff_can_see_any_payment(client, order_id, admin_user, auth_headers):
    response = client.get("/api/payment/status", params={"orderId": order_id}, headers=auth_headers(admin_user))

    assert response.status_code == 200


def test_guardian_sees_child_payment(
    client, guardian_user, child_patient, slot, auth_headers, booking_request
):
    headers = auth_headers(guardian_user)
    order_id = client.post(
        "/api/patient/payment/initiate", json=booking_request(patientId=child_patient.id), headers=headers
    ).json()["orderId"]

    response = client.get("/api/payment/status", params={"orderId": order_id}, headers=headers)

    assert response.status_code == 200


def test_unknown_order(client, patient_user, auth_headers):
    response = client.get("/api/payment/status", params={"orderId": "ORDER_X"}, headers=auth_headers(patient_user))

    assert response.status_code == 404
    assert response.json() == {"error": "Payment not found"}


def test_verify_by_session_id(client, db, paid_order, patient_user, auth_headers):
    session_id = db.query(Payment).filter(Payment.order_id == paid_order).one().session_id

    response = client.post(
        "/api/payment/verify", json={"sessionId": session_id}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 200
    assert response.json()["orderId"] == paid_order


def test_verify_requires_a_reference(client, patient_user, auth_headers):
    response = client.post("/api/payment/verify", json={}, headers=auth_headers(patient_user))

    assert response.status_code == 422


def test_complete_booking_requires_completed_payment(client, order_id, patient_user, auth_headers):
    response = client.post(
        "/api/payment/complete-booking", json={"orderId": order_id}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Payment is not completed. Current status: PENDING"}


def test_complete_booking_is_idempotent(client, db, paid_order, patient_user, auth_headers):
    response = client.post(
        "/api/payment/complete-booking", json={"orderId": paid_order}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Session already booked"
    assert db.query(TherapySession).count() == 1


def test_complete_booking_recovers_failed_reconciliation(
    client, db, order_id, slot, patient_user, therapist, sign_notification, auth_headers
):
    # Slot held elsewhere when PayHere confirmed, released later by staff
    db.get(TherapistAvailability, slot.id).is_booked = True
    db.commit()
    client.post("/api/payment/notify", data=sign_notification(order_id, "5000.00"))
    db.expire_all()
    db.get(TherapistAvailability, slot.id).is_booked = False
    db.commit()

    response = client.post(
        "/api/payment/complete-booking", json={"orderId": order_id}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 200
    assert response.json()["message"] == "Session booked successfully"
    db.expire_all()
    payment = db.query(Payment).filter(Payment.order_id == order_id).one()
    assert payment.session is not None
    assert db.get(TherapistAvailability, slot.id).is_booked is True
    titles = {(n.receiver_id, n.title) for n in db.query(Notification).all()}
    assert (therapist.user_id, "New Session Booked") in titles
    assert (patient_user.id, "Booking Confirmed") in titles


def test_complete_booking_conflict_when_slot_still_taken(
    client, db, order_id, slot, patient_user, sign_notification, auth_headers
):
    db.get(TherapistAvailability, slot.id).is_booked = True
    db.commit()
    client.post("/api/payment/notify", data=sign_notification(order_id, "5000.00"))

    response = client.post(
        "/api/payment/complete-booking", json={"orderId": order_id}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 409
    assert response.json() == {"error": "This time slot has already been booked"}
