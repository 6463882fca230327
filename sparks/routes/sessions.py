"""
Session Cancellation Routes
Refund quotes and cancellation of booked therapy sessions.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import can_access_patient, get_current_user
from ..database import get_db
from ..models import TherapySession, User, practice_now, utc_now
from ..services import notification_service
from ..services.google_meet_service import cancel_session_event
from ..services.refund_policy import REFUND_POLICY, calculate_refund

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


class RefundQuoteRequest(BaseModel):
    sessionId: int


class CancelSessionRequest(BaseModel):
    sessionId: int
    cancelReason: Optional[str] = None


def get_accessible_session(db: Session, user: User, session_id: int) -> TherapySession:
    session = db.query(TherapySession).filter(TherapySession.id == session_id).first()
    if not session or not can_access_patient(db, user, session.patient):
        raise HTTPException(status_code=404, detail="Session not found or unauthorized")
    return session


@router.post("/calculate-refund")
async def calculate_session_refund(
    data: RefundQuoteRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Refund the user would receive if the session were cancelled now"""
    session = get_accessible_session(db, current_user, data.sessionId)
    return {
        "sessionId": session.id,
        "scheduledAt": session.scheduled_at,
        "refund": calculate_refund(session.scheduled_at, session.booked_rate),
        "policy": REFUND_POLICY,
    }


@router.post("/cancel")
async def cancel_session(
    data: CancelSessionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Cancel a scheduled session.

    Releases the availability slot, removes the calendar event and tells the
    therapist. The refund owed under the cancellation policy is recorded on the payment.
    """
    session = get_accessible_session(db, current_user, data.sessionId)

    if session.status == "CANCELLED":
        raise HTTPException(status_code=400, detail="Session is already cancelled")
    if session.status == "COMPLETED":
        raise HTTPException(status_code=400, detail="Cannot cancel a completed session")

    cancelled_at = practice_now()
    refund = calculate_refund(session.scheduled_at, session.booked_rate, cancelled_at)

    session.status = "CANCELLED"
    session.session_notes = (
        f"Cancelled by {current_user.name or current_user.email}. Reason: {data.cancelReason}"
        if data.cancelReason
        else f"Cancelled by {current_user.name or current_user.email}"
    )
    if session.availability_slot is not None:
        session.availability_slot.is_booked = False

    if session.payment is not None:
        session.payment.payment_metadata = {
            **(session.payment.payment_metadata or {}),
            "cancellationRefund": {**refund, "cancelledAt": utc_now().isoformat(), "cancelledBy": current_user.id},
        }

    db.commit()
    logger.info(
        f"🚫 Session {session.id} cancelled by user {current_user.id} "
        f"({refund['refundPercentage']}% refund, LKR {refund['refundAmount']:.2f})"
    )

    if session.calendar_event_id:
        if not await cancel_session_event(db, session):
            logger.error(f"❌ Could not remove calendar event {session.calendar_event_id} for session {session.id}")

    date_str, time_str = notification_service.format_session_time(session.scheduled_at)
    notification_service.create_notification(
        db,
        receiver_id=session.therapist.user_id,
        sender_id=current_user.id,
        notification_type=notification_service.TYPE_APPOINTMENT,
        title="Session Cancelled",
        message=f"A therapy session scheduled for {date_str} at {time_str} has been cancelled.",
        is_urgent=True,
    )

    return {
        "success": True,
        "message": "Session cancelled successfully",
        "session": {"id": session.id, "status": session.status, "updatedAt": session.updated_at},
        "refund": refund,
    }
