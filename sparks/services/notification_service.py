"""
Notification Service
Creates in-app notification rows for workflow events (payments, bookings, cancellations).
Every helper writes through create_notification/create_notifications so all events
share one shape.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ..models import Notification, Patient

logger = logging.getLogger(__name__)

TYPE_PAYMENT = "PAYMENT"
TYPE_APPOINTMENT = "APPOINTMENT"
TYPE_REMINDER = "REMINDER"
TYPE_SYSTEM = "SYSTEM"
TYPE_TASK = "TASK"
TYPE_EMERGENCY = "EMERGENCY"

NOTIFICATION_TYPES = (TYPE_PAYMENT, TYPE_APPOINTMENT, TYPE_REMINDER, TYPE_SYSTEM, TYPE_TASK, TYPE_EMERGENCY)


def _build(
    receiver_id: int,
    notification_type: str,
    title: str,
    message: str,
    sender_id: Optional[int] = None,
    is_urgent: bool = False,
) -> Notification:
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")
    return Notification(
        receiver_id=receiver_id,
        sender_id=sender_id,
        type=notification_type,
        title=title,
        message=message,
        is_read=False,
        is_urgent=is_urgent,
    )


def create_notification(
    db: Session,
    receiver_id: int,
    notification_type: str,
    title: str,
    message: str,
    sender_id: Optional[int] = None,
    is_urgent: bool = False,
    commit: bool = True,
) -> Notification:
    """Create a single notification"""
    notification = _build(receiver_id, notification_type, title, message, sender_id, is_urgent)
    db.add(notification)
    if commit:
        db.commit()
        db.refresh(notification)
    logger.info(f"🔔 {notification_type} notification '{title}' queued for user {receiver_id}")
    return notification


def create_notifications(db: Session, entries: Iterable[dict], commit: bool = True) -> list[Notification]:
    """
    Bulk-create notifications.

    Each entry takes the keyword arguments of create_notification
    (receiver_id, notification_type, title, message, sender_id, is_urgent).
    Entries without a receiver are skipped.
    """
    notifications = [_build(**entry) for entry in entries if entry.get("receiver_id")]
    if not notifications:
        return []

    db.add_all(notifications)
    if commit:
        db.commit()
    logger.info(f"🔔 Created {len(notifications)} notifications")
    return notifications


def patient_recipient_ids(patient: Patient) -> list[int]:
    """
    Users who should hear about a patient's bookings and payments:
    the patient's own login, or every linked guardian when the patient has none (children).
    """
    if patient.user_id:
        return [patient.user_id]
    return [g.user_id for g in patient.guardians]


def format_session_time(scheduled_at: datetime) -> tuple[str, str]:
    return scheduled_at.strftime("%Y-%m-%d"), scheduled_at.strftime("%H:%M")


def notify_session_approved(db: Session, patient_user_id: int, therapist_user_id: int, scheduled_at: datetime):
    date_str, _ = format_session_time(scheduled_at)
    return create_notification(
        db,
        receiver_id=patient_user_id,
        sender_id=therapist_user_id,
        notification_type=TYPE_APPOINTMENT,
        title="Session Approved",
        message=f"Your therapy session has been approved and scheduled for {date_str}.",
    )


def notify_session_requested(db: Session, therapist_user_id: int, patient_user_id: int):
    return create_notification(
        db,
        receiver_id=therapist_user_id,
        sender_id=patient_user_id,
        notification_type=TYPE_APPOINTMENT,
        title="New Session Request",
        message="You have received a new session request that requires your review.",
    )


def notify_session_reminder(db: Session, user_id: int, scheduled_at: datetime):
    _, time_str = format_session_time(scheduled_at)
    return create_notification(
        db,
        receiver_id=user_id,
        notification_type=TYPE_REMINDER,
        title="Session Reminder",
        message=f"Your therapy session is scheduled for tomorrow at {time_str}.",
    )


def notify_system_message(db: Session, user_id: int, title: str, message: str):
    return create_notification(
        db, receiver_id=user_id, notification_type=TYPE_SYSTEM, title=title, message=message
    )
