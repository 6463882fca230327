"""
Booking Service
Turns an availability slot into a scheduled therapy session.

Slot claim, session insert and payment link run in one transaction. The claim is a
conditional UPDATE on is_booked so two concurrent bookings can never both win a slot.
Meeting links are provisioned after the commit; Google failures never undo a booking.
"""

import logging
import re
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config import SESSION_DURATION_MINUTES
from ..models import (
    REMOTE_MEETING_TYPES,
    Payment,
    TherapistAvailability,
    TherapySession,
    User,
)
from .google_meet_service import provision_meeting_link

logger = logging.getLogger(__name__)

TIME_SLOT_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})\s*(?:-\s*(\d{1,2}):(\d{2}))?$")


class BookingError(Exception):
    """A session could not be created from the booking request"""

    pass


class SlotAlreadyBookedError(BookingError):
    def __init__(self, slot_id: Optional[int] = None):
        super().__init__("This time slot has already been booked")
        self.slot_id = slot_id


def parse_session_start(date_str: str, time_slot: str) -> tuple[datetime, str]:
    """
    Parse "YYYY-MM-DD" + "HH:MM-HH:MM" into the session start and its "HH:MM" label.
    Raises ValueError for malformed input.
    """
    day = datetime.strptime(str(date_str).strip()[:10], "%Y-%m-%d")
    match = TIME_SLOT_PATTERN.match(str(time_slot).strip())
    if not match:
        raise ValueError(f'Invalid time format: "{time_slot}"')

    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise ValueError("Invalid time values")

    return day.replace(hour=hours, minute=minutes), f"{hours:02d}:{minutes:02d}"


def claim_slot(db: Session, slot_id: int) -> bool:
    """Mark a slot booked only if nobody else has; True when this caller won it"""
    updated = (
        db.query(TherapistAvailability)
        .filter(TherapistAvailability.id == slot_id, TherapistAvailability.is_booked.is_(False))
        .update({TherapistAvailability.is_booked: True}, synchronize_session=False)
    )
    return updated == 1


def create_booked_session(
    db: Session,
    patient_id: int,
    therapist_id: int,
    slot_id: Optional[int],
    scheduled_at: datetime,
    session_type: str,
    meeting_type: str,
    booked_rate: float,
    payment: Optional[Payment] = None,
) -> TherapySession:
    """
    Claim the slot, create the session and link the payment in a single transaction.
    Raises SlotAlreadyBookedError (after rolling back) when the slot is taken.
    """
    try:
        if slot_id is not None and not claim_slot(db, slot_id):
            raise SlotAlreadyBookedError(slot_id)

        session = TherapySession(
            patient_id=patient_id,
            therapist_id=therapist_id,
            availability_slot_id=slot_id,
            scheduled_at=scheduled_at,
            duration=SESSION_DURATION_MINUTES,
            status="SCHEDULED",
            type=session_type or "Individual",
            booked_rate=booked_rate,
            meeting_type=meeting_type,
        )
        db.add(session)
        db.flush()

        if payment is not None:
            payment.session_id = session.id

        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(session)
    logger.info(f"✅ Session {session.id} booked for patient {patient_id} at {scheduled_at.isoformat()}")
    return session


async def attach_meeting_link(db: Session, session: TherapySession, booking_user_id: Optional[int]) -> TherapySession:
    """
    Provision a meeting link for an online or hybrid session.
    The therapist's Google account is tried first, then the booking user's.
    """
    if session.meeting_type not in REMOTE_MEETING_TYPES:
        return session

    therapist_user = session.therapist.user
    booking_user = db.get(User, booking_user_id) if booking_user_id else None
    patient_name = session.patient.full_name
    therapist_name = therapist_user.name or "Therapist"

    attendees = [u.email for u in (booking_user, therapist_user) if u is not None and u.email]
    description = (
        f"Online therapy session\n"
        f"Session Type: {session.type}\n"
        f"Patient: {patient_name}\n"
        f"Therapist: {therapist_name}"
    )

    link, event_id, owner_user_id = await provision_meeting_link(
        db,
        session,
        organizer_user_ids=[therapist_user.id, booking_user_id],
        attendee_emails=attendees,
        summary=f"Therapy Session - {patient_name}",
        description=description,
    )

    session.meeting_link = link
    session.calendar_event_id = event_id
    session.calendar_owner_user_id = owner_user_id
    db.commit()
    db.refresh(session)
    return session

