"""
Admin Routes
Payment oversight, transaction report export and meeting-link backfill.
"""

import logging
from datetime import date, datetime, time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import payhere
from ..auth import require_roles
from ..database import get_db
from ..domain.payments.repository import PaymentRepository
from ..models import REMOTE_MEETING_TYPES, ROLE_ADMIN, ROLE_MANAGER, Payment, TherapySession, User
from ..services.google_meet_service import generate_simple_meeting_link
from ..shared.csv_export import csv_response, format_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])

require_admin = require_roles(ROLE_ADMIN)
require_staff = require_roles(ROLE_ADMIN, ROLE_MANAGER)

TRANSACTION_HEADERS = [
    "Order ID",
    "PayHere Payment ID",
    "Date",
    "Amount (LKR)",
    "Currency",
    "Status",
    "Payment Method",
    "Patient",
    "Therapist",
    "Session ID",
    "Session Date",
    "Card Holder",
    "Card Number",
]


class PaymentFilters:
    """Query filters shared by the payment list and the transaction report"""

    def __init__(
        self,
        status: Optional[str] = Query(None),
        patientId: Optional[int] = Query(None),
        startDate: Optional[date] = Query(None),
        endDate: Optional[date] = Query(None),
    ):
        self.status = status
        self.patient_id = patientId
        self.start_date = datetime.combine(startDate, time.min) if startDate else None
        # Include the entire end date
        self.end_date = datetime.combine(endDate, time.max) if endDate else None

    def as_kwargs(self) -> dict:
        return {
            "status": self.status,
            "patient_id": self.patient_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }


def _payment_row(payment: Payment) -> dict:
    session = payment.session
    therapist_user = session.therapist.user if session else None
    return {
        "id": payment.id,
        "orderId": payment.order_id,
        "paymentId": payment.payment_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "paymentMethod": payment.payment_method,
        "statusMessage": payment.status_message,
        "cardHolderName": payment.card_holder_name,
        "maskedCardNumber": payment.masked_card_number,
        "sessionId": payment.session_id,
        "patientId": payment.patient_id,
        "patient": {"id": payment.patient.id, "name": payment.patient.full_name} if payment.patient else None,
        "session": {
            "id": session.id,
            "type": session.type,
            "scheduledAt": session.scheduled_at,
            "status": session.status,
            "therapist": {"name": therapist_user.name, "email": therapist_user.email},
        }
        if session
        else None,
        "sessionCreationError": (payment.payment_metadata or {}).get("sessionCreationError"),
        "createdAt": payment.created_at,
        "updatedAt": payment.updated_at,
    }


@router.get("/payments")
async def list_payments(
    filters: PaymentFilters = Depends(),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """All payments with filters, plus count and amount per status"""
    payments, total = PaymentRepository.list_payments(db, limit=limit, offset=offset, **filters.as_kwargs())
    summary = PaymentRepository.status_summary(db, **filters.as_kwargs())

    return {
        "payments": [_payment_row(p) for p in payments],
        "pagination": {"total": total, "limit": limit, "offset": offset, "hasMore": offset + len(payments) < total},
        "summary": {
            "totalAmount": round(sum(s["amount"] for s in summary.values()), 2),
            "byStatus": summary,
        },
    }


@router.get("/reports/transaction-history")
async def export_transaction_history(
    filters: PaymentFilters = Depends(),
    staff: User = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """Download payments matching the filters as CSV"""
    payments, _ = PaymentRepository.list_payments(db, limit=None, **filters.as_kwargs())
    logger.info(f"📊 Transaction history export by user {staff.id}: {len(payments)} rows")

    rows = (
        [
            p.order_id,
            p.payment_id,
            format_timestamp(p.created_at),
            payhere.format_amount(p.amount),
            p.currency,
            p.status,
            p.payment_method,
            p.patient.full_name if p.patient else "",
            p.session.therapist.user.name if p.session else "",
            p.session_id,
            format_timestamp(p.session.scheduled_at) if p.session else "",
            p.card_holder_name,
            p.masked_card_number,
        ]
        for p in payments
    )
    return csv_response(TRANSACTION_HEADERS, rows, "transaction_history")


def _remote_sessions(db: Session):
    return db.query(TherapySession).filter(TherapySession.meeting_type.in_(REMOTE_MEETING_TYPES))


@router.get("/backfill-meeting-links")
async def meeting_link_statistics(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Counts of online/hybrid sessions with and without meeting links"""
    total_sessions = db.query(TherapySession).count()
    remote_sessions = _remote_sessions(db).count()
    with_links = _remote_sessions(db).filter(TherapySession.meeting_link.isnot(None)).count()
    without_links = remote_sessions - with_links

    return {
        "success": True,
        "statistics": {
            "totalSessions": total_sessions,
            "onlineHybridSessions": remote_sessions,
            "sessionsWithLinks": with_links,
            "sessionsWithoutLinks": without_links,
            "needsBackfill": without_links > 0,
        },
    }


@router.post("/backfill-meeting-links")
async def backfill_meeting_links(
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Give every online/hybrid session without a link a simple meeting link"""
    sessions = _remote_sessions(db).filter(TherapySession.meeting_link.is_(None)).all()
    logger.info(f"🔧 Backfilling meeting links for {len(sessions)} sessions (admin {admin.id})")

    updated = []
    for session in sessions:
        session.meeting_link = generate_simple_meeting_link(str(session.id))
        updated.append(
            {
                "sessionId": session.id,
                "meetingLink": session.meeting_link,
                "patient": session.patient.full_name,
                "scheduledAt": session.scheduled_at,
            }
        )
    db.commit()

    logger.info(f"✅ Backfilled {len(updated)} session meeting links")
    return {
        "success": True,
        "message": f"Successfully backfilled {len(updated)} meeting links",
        "updated": len(updated),
        "sessions": updated,
    }
