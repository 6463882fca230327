from datetime import datetime

import pytest

from sparks.models import Notification
from sparks.services import notification_service


@pytest.fixture
def inbox(db, patient_user, therapist):
    notification_service.create_notifications(
        db,
        [
            {
                "receiver_id": patient_user.id,
                "sender_id": therapist.user_id,
                "notification_type": notification_service.TYPE_APPOINTMENT,
                "title": "Session Approved",
                "message": "Approved",
            },
            {
                "receiver_id": patient_user.id,
                "notification_type": notification_service.TYPE_PAYMENT,
                "title": "Payment Successful",
                "message": "Paid",
                "is_urgent": True,
            },
            {
                "receiver_id": therapist.user_id,
                "notification_type": notification_service.TYPE_SYSTEM,
                "title": "Maintenance",
                "message": "Tonight",
            },
        ],
    )
    return db.query(Notification).filter(Notification.receiver_id == patient_user.id).order_by(Notification.id).all()


def test_list_own_notifications(client, inbox, patient_user, auth_headers):
    response = client.get("/api/notifications", headers=auth_headers(patient_user))

    assert response.status_code == 200
    body = response.json()
    assert [n["title"] for n in body["notifications"]] == ["Payment Successful", "Session Approved"]
    assert body["unreadCount"] is None
    approved = body["notifications"][1]
    assert approved["sender"] == {"name": "Dr. Perera", "email": "therapist@sparks.test"}
    assert body["notifications"][0]["isUrgent"] is True


def test_unread_only(client, db, inbox, patient_user, auth_headers):
    inbox[0].is_read = True
    db.commit()

    response = client.get("/api/notifications", params={"unreadOnly": True}, headers=auth_headers(patient_user))

    body = response.json()
    assert [n["title"] for n in body["notifications"]] == ["Payment Successful"]
    assert body["unreadCount"] == 1


def test_mark_read(client, db, inbox, patient_user, auth_headers):
    response = client.post(
        "/api/notifications/mark-read", json={"notificationId": inbox[0].id}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 200
    db.expire_all()
    assert db.get(Notification, inbox[0].id).is_read is True
    assert db.get(Notification, inbox[1].id).is_read is False


def test_cannot_mark_someone_elses_notification(client, inbox, therapist, auth_headers):
    response = client.post(
        "/api/notifications/mark-read", json={"notificationId": inbox[0].id}, headers=auth_headers(therapist.user)
    )

    assert response.status_code == 403


def test_mark_missing_notification(client, inbox, patient_user, auth_headers):
    response = client.post(
        "/api/notifications/mark-read", json={"notificationId": 9999}, headers=auth_headers(patient_user)
    )

    assert response.status_code == 404


def test_mark_all_read(client, db, inbox, patient_user, therapist, auth_headers):
    response = client.post("/api/notifications/mark-all-read", headers=auth_headers(patient_user))

    assert response.json() == {"success": True, "updated": 2}
    db.expire_all()
    assert db.query(Notification).filter(Notification.is_read.is_(False)).one().receiver_id == therapist.user_id


def test_bulk_create_skips_missing_receivers(db, patient_user):
    created = notification_service.create_notifications(
        db,
        [
            {"receiver_id": None, "notification_type": "PAYMENT", "title": "t", "message": "m"},
            {"receiver_id": patient_user.id, "notification_type": "PAYMENT", "title": "t", "message": "m"},
        ],
    )

    assert len(created) == 1
    assert notification_service.create_notifications(db, []) == []


def test_unknown_notification_type(db, patient_user):
    with pytest.raises(ValueError):
        notification_service.create_notification(db, patient_user.id, "GOSSIP", "t", "m")


def test_patient_recipients(patient, patient_user, child_patient, guardian_user):
    assert notification_service.patient_recipient_ids(patient) == [patient_user.id]
    assert notification_service.patient_recipient_ids(child_patient) == [guardian_user.id]


def test_workflow_helpers(db, patient_user, therapist):
    when = datetime(2030, 5, 14, 10, 30)

    approved = notification_service.notify_session_approved(db, patient_user.id, therapist.user_id, when)
    requested = notification_service.notify_session_requested(db, therapist.user_id, patient_user.id)
    reminder = notification_service.notify_session_reminder(db, patient_user.id, when)
    system = notification_service.notify_system_message(db, patient_user.id, "Welcome", "Hello")

    assert (approved.type, approved.title) == ("APPOINTMENT", "Session Approved")
    assert "2030-05-14" in approved.message
    assert approved.sender_id == therapist.user_id
    assert (requested.receiver_id, requested.title) == (therapist.user_id, "New Session Request")
    assert (reminder.type, reminder.message) == ("REMINDER", "Your therapy session is scheduled for tomorrow at 10:30.")
    assert (system.type, system.title) == ("SYSTEM", "Welcome")
