"""Payment repository - Database operations for payments and booking lookups"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models import ParentGuardian, Patient, Payment, Therapist, TherapistAvailability, TherapySession


class PaymentRepository:
    """Repository for payment database operations"""

    @staticmethod
    def get_by_order_id(db: Session, order_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.order_id == order_id).first()

    @staticmethod
    def get_by_session_id(db: Session, session_id: int) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.session_id == session_id).first()

    @staticmethod
    def claim_completion(db: Session, payment_id: int) -> bool:
        """Move a payment to COMPLETED unless it already is; True for the one caller that made the change"""
        updated = (
            db.query(Payment)
            .filter(Payment.id == payment_id, Payment.status != "COMPLETED")
            .update({Payment.status: "COMPLETED"}, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def create_payment(db: Session, **payment_data) -> Payment:
        payment = Payment(**payment_data)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    @staticmethod
    def get_patient_for_user(db: Session, user_id: int) -> Optional[Patient]:
        return db.query(Patient).filter(Patient.user_id == user_id).first()

    @staticmethod
    def get_guardian_link(db: Session, user_id: int, patient_id: int) -> Optional[ParentGuardian]:
        return (
            db.query(ParentGuardian)
            .filter(ParentGuardian.user_id == user_id, ParentGuardian.patient_id == patient_id)
            .first()
        )

    @staticmethod
    def get_therapist(db: Session, therapist_id: int) -> Optional[Therapist]:
        return (
            db.query(Therapist).options(joinedload(Therapist.user)).filter(Therapist.id == therapist_id).first()
        )

    @staticmethod
    def find_open_slot(db: Session, therapist_id: int, day: datetime, start_time: str) -> Optional[TherapistAvailability]:
        """Unbooked slot for a therapist starting at start_time on the given day"""
        day_start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        return (
            db.query(TherapistAvailability)
            .filter(
                TherapistAvailability.therapist_id == therapist_id,
                TherapistAvailability.start_time == start_time,
                TherapistAvailability.is_booked.is_(False),
                TherapistAvailability.date >= day_start,
                TherapistAvailability.date < day_start + timedelta(days=1),
            )
            .first()
        )

    @staticmethod
    def _apply_filters(
        query,
        status: Optional[str] = None,
        patient_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ):
        if status:
            query = query.filter(Payment.status == status)
        if patient_id:
            query = query.filter(Payment.patient_id == patient_id)
        if start_date:
            query = query.filter(Payment.created_at >= start_date)
        if end_date:
            query = query.filter(Payment.created_at <= end_date)
        return query

    @staticmethod
    def list_payments(
        db: Session,
        status: Optional[str] = None,
        patient_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> tuple[list[Payment], int]:
        """Filtered payments, newest first, with the unpaginated total"""
        query = PaymentRepository._apply_filters(db.query(Payment), status, patient_id, start_date, end_date)
        total = query.count()

        query = query.options(
            joinedload(Payment.patient),
            joinedload(Payment.session).joinedload(TherapySession.therapist).joinedload(Therapist.user),
        ).order_by(Payment.created_at.desc(), Payment.id.desc())
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all(), total

    @staticmethod
    def status_summary(
        db: Session,
        status: Optional[str] = None,
        patient_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict[str, dict]:
        """Count and summed amount per payment status"""
        query = db.query(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
        query = PaymentRepository._apply_filters(query, status, patient_id, start_date, end_date)
        rows = query.group_by(Payment.status).all()
        return {row[0]: {"count": row[1], "amount": float(row[2])} for row in rows}
