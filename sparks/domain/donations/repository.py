"""Donation repository - Database operations for donations"""

from datetime import datetime, time, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from ...models import ROLE_ADMIN, Donation, User
from .schemas import DonationFilters


def _naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class DonationRepository:
    """Repository for donation database operations"""

    @staticmethod
    def create_donation(db: Session, **donation_data) -> Donation:
        donation = Donation(**donation_data)
        db.add(donation)
        db.commit()
        db.refresh(donation)
        return donation

    @staticmethod
    def get_by_id(db: Session, donation_id: int) -> Optional[Donation]:
        return db.query(Donation).filter(Donation.id == donation_id).first()

    @staticmethod
    def get_by_order_id(db: Session, order_id: str) -> Optional[Donation]:
        return db.query(Donation).filter(Donation.payhere_order_id == order_id).first()

    @staticmethod
    def claim_completion(db: Session, donation_id: int) -> bool:
        """Conditional COMPLETED transition; False when the donation was already completed"""
        updated = (
            db.query(Donation)
            .filter(Donation.id == donation_id, Donation.payment_status != "COMPLETED")
            .update({Donation.payment_status: "COMPLETED"}, synchronize_session=False)
        )
        return updated == 1

    @staticmethod
    def get_first_admin(db: Session) -> Optional[User]:
        return db.query(User).filter(User.role == ROLE_ADMIN).order_by(User.id).first()

    @staticmethod
    def filtered_query(db: Session, filters: DonationFilters):
        query = db.query(Donation)

        if filters.status:
            query = query.filter(Donation.payment_status == filters.status)
        if filters.dateFrom:
            query = query.filter(Donation.created_at >= _naive_utc(filters.dateFrom))
        if filters.dateTo:
            # Include the whole end day
            end = datetime.combine(filters.dateTo.date(), time.max)
            query = query.filter(Donation.created_at <= end)
        if filters.donorEmail:
            query = query.filter(Donation.donor_email.ilike(f"%{filters.donorEmail}%"))
        if filters.donorName:
            query = query.filter(Donation.donor_name.ilike(f"%{filters.donorName}%"))
        if filters.minAmount is not None:
            query = query.filter(Donation.amount >= filters.minAmount)
        if filters.maxAmount is not None:
            query = query.filter(Donation.amount <= filters.maxAmount)
        if filters.anonymousOnly:
            query = query.filter(Donation.is_anonymous.is_(True))

        return query

    @staticmethod
    def list_donations(
        db: Session,
        filters: DonationFilters,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[Donation], int]:
        query = DonationRepository.filtered_query(db, filters)
        total = query.count()

        column = Donation.amount if sort_by == "amount" else Donation.created_at
        ordering = column.asc() if sort_order == "asc" else column.desc()
        query = query.options(joinedload(Donation.user)).order_by(ordering, Donation.id.desc())

        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all(), total

    @staticmethod
    def get_completed(db: Session) -> list[Donation]:
        return db.query(Donation).filter(Donation.payment_status == "COMPLETED").all()

    @staticmethod
    def status_counts(db: Session) -> dict[str, int]:
        rows = db.query(Donation.payment_status, func.count(Donation.id)).group_by(Donation.payment_status).all()
        return {status: count for status, count in rows}
