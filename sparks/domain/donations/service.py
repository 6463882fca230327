"""Donation service - Donation checkout, PayHere reconciliation and admin management"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ... import payhere
from ...config import PAYHERE_MERCHANT_ID, PAYHERE_MERCHANT_SECRET
from ...models import Donation, User, utc_now
from ...services import notification_service
from ...shared.csv_export import csv_response, format_timestamp
from .repository import DonationRepository
from .schemas import (
    DonationCompleteRequest,
    DonationFilters,
    DonationInitiateRequest,
    DonationRefundRequest,
    DonationResponse,
    DonationUser,
)

logger = logging.getLogger(__name__)

ANONYMOUS_EMAIL = "donor@sparks.lk"

EXPORT_HEADERS = [
    "Donation ID",
    "Date",
    "Amount (LKR)",
    "Status",
    "Payment Method",
    "Donor Name",
    "Donor Email",
    "Donor Phone",
    "Is Anonymous",
    "Message",
    "Receipt Sent",
    "Receipt Sent Date",
    "PayHere Order ID",
    "PayHere Payment ID",
    "User ID",
    "User Name",
    "User Email",
    "Source",
    "IP Address",
]


def _round(value: float) -> float:
    return round(value, 2)


def serialize_donation(donation: Donation) -> DonationResponse:
    """Admin view of a donation; anonymous donors stay anonymous"""
    anonymous = donation.is_anonymous
    return DonationResponse(
        id=donation.id,
        amount=donation.amount,
        currency=donation.currency,
        paymentStatus=donation.payment_status,
        paymentMethod=donation.payment_method,
        donorName="Anonymous" if anonymous else donation.donor_name,
        donorEmail=None if anonymous else donation.donor_email,
        donorPhone=None if anonymous else donation.donor_phone,
        isAnonymous=anonymous,
        message=donation.message,
        receiptSent=donation.receipt_sent,
        receiptSentAt=donation.receipt_sent_at,
        payHereOrderId=donation.payhere_order_id,
        payHerePaymentId=donation.payhere_payment_id,
        payHereStatusCode=donation.payhere_status_code,
        userId=donation.user_id,
        user=DonationUser(id=donation.user.id, name=donation.user.name, email=donation.user.email)
        if donation.user
        else None,
        source=donation.source,
        ipAddress=donation.ip_address,
        createdAt=donation.created_at,
        updatedAt=donation.updated_at,
    )


class DonationService:
    """Service layer for donations"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = DonationRepository()

    # ------------------------------------------------------------------
    # Public checkout
    # ------------------------------------------------------------------

    def initiate_donation(self, data: DonationInitiateRequest, ip_address: str, user: Optional[User] = None) -> dict:
        """Create a PENDING donation and the PayHere checkout fields for it"""
        if not PAYHERE_MERCHANT_ID or not PAYHERE_MERCHANT_SECRET:
            logger.error("❌ PayHere credentials not configured")
            raise HTTPException(status_code=500, detail="Payment gateway not configured")

        anonymous = data.isAnonymous
        order_id = payhere.generate_donation_order_id()
        donation = self.repo.create_donation(
            self.db,
            amount=data.amount,
            currency="LKR",
            frequency="ONE_TIME",
            payment_status="PENDING",
            payhere_order_id=order_id,
            donor_name=None if anonymous else data.donorName,
            donor_email=None if anonymous else data.donorEmail,
            donor_phone=None if anonymous else data.donorPhone,
            is_anonymous=anonymous,
            message=data.message,
            user_id=user.id if user else None,
            source="WEB",
            ip_address=ip_address,
            receipt_sent=False,
        )
        logger.info(f"💝 Donation {donation.id} created: {order_id}, LKR {data.amount:.2f}, anonymous={anonymous}")

        if anonymous:
            first_name, last_name = "Anonymous", "Donor"
        else:
            first_name, last_name = payhere.split_name(data.donorName)
            first_name = first_name or "Donor"

        payment_details = payhere.build_checkout_fields(
            order_id=order_id,
            amount=data.amount,
            items="Donation to SPARKS Platform",
            first_name=first_name,
            last_name=last_name,
            email=ANONYMOUS_EMAIL if anonymous else (data.donorEmail or ANONYMOUS_EMAIL),
            phone="" if anonymous else (data.donorPhone or ""),
            return_path="/donate/success",
            cancel_path="/donate/cancel",
            notify_path="/api/donation/notify",
            custom_1=str(donation.id),
            custom_2="anonymous" if anonymous else "public",
        )

        return {
            "success": True,
            "donationId": donation.id,
            "paymentDetails": payment_details,
            "payhereUrl": payhere.get_checkout_url(),
        }

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def handle_notification(self, notification: payhere.PayHereNotification) -> dict:
        """Apply a PayHere notification to its donation"""
        rejection = payhere.check_notification(notification, PAYHERE_MERCHANT_ID, PAYHERE_MERCHANT_SECRET)
        if rejection:
            raise HTTPException(status_code=400, detail=rejection)

        donation = self.repo.get_by_order_id(self.db, notification.order_id)
        if not donation:
            logger.error(f"❌ Donation not found for order ID: {notification.order_id}")
            raise HTTPException(status_code=404, detail="Donation not found")

        new_status = payhere.map_donation_status(notification.status_code)
        if new_status == "COMPLETED" and not self.repo.claim_completion(self.db, donation.id):
            self.db.rollback()
            logger.info(f"ℹ️ Duplicate completion notification for donation {notification.order_id}")
            return {"status": "success", "duplicate": True}

        donation.payhere_payment_id = notification.payment_id or donation.payhere_payment_id
        donation.payment_status = new_status
        donation.payment_method = payhere.parse_payment_method(notification.method)
        donation.payhere_status_code = notification.status_code
        self.db.commit()
        logger.info(f"💝 Donation {donation.payhere_order_id} updated: {new_status}")

        if new_status == "COMPLETED":
            self._notify_donation_completed(donation, payhere.format_amount(notification.payhere_amount))

        return {"status": "success"}

    def _notify_donation_completed(self, donation: Donation, amount: str):
        entries = []
        if donation.user_id and not donation.is_anonymous:
            entries.append(
                {
                    "receiver_id": donation.user_id,
                    "notification_type": notification_service.TYPE_PAYMENT,
                    "title": "Donation Successful",
                    "message": (
                        f"Thank you for your generous donation of LKR {amount}. Your support makes a difference!"
                    ),
                }
            )

        admin = self.repo.get_first_admin(self.db)
        if admin:
            donor_display = (
                "Anonymous" if donation.is_anonymous else donation.donor_name or donation.donor_email or "A donor"
            )
            message = f"{donor_display} donated LKR {amount}."
            if donation.message:
                message += f' Message: "{donation.message}"'
            entries.append(
                {
                    "receiver_id": admin.id,
                    "notification_type": notification_service.TYPE_PAYMENT,
                    "title": "New Donation Received",
                    "message": message,
                }
            )

        notification_service.create_notifications(self.db, entries)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def list_donations(
        self, filters: DonationFilters, page: int, limit: int, sort_by: str = "createdAt", sort_order: str = "desc"
    ) -> dict:
        limit = max(1, min(limit, 100))
        page = max(1, page)
        donations, total = self.repo.list_donations(
            self.db, filters, sort_by=sort_by, sort_order=sort_order, offset=(page - 1) * limit, limit=limit
        )
        return {
            "success": True,
            "data": [serialize_donation(d) for d in donations],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        }

    def get_metrics(self) -> dict:
        """Completed-donation KPIs, status breakdown, six-month trend and top donors"""
        now = utc_now()
        completed = self.repo.get_completed(self.db)

        def window(since):
            items = [d for d in completed if d.created_at >= since]
            return {"totalAmount": _round(sum(d.amount for d in items)), "totalCount": len(items)}

        total_amount = sum(d.amount for d in completed)
        total_count = len(completed)

        # First day of the month five months back, so the trend covers six calendar months
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        for _ in range(5):
            month_start = (month_start - timedelta(days=1)).replace(day=1)

        trend: dict[str, dict] = {}
        for d in completed:
            if d.created_at < month_start:
                continue
            bucket = trend.setdefault(d.created_at.strftime("%Y-%m"), {"count": 0, "total": 0.0})
            bucket["count"] += 1
            bucket["total"] += d.amount

        donors: dict[str, dict] = {}
        for d in completed:
            if d.is_anonymous or not d.donor_email:
                continue
            donor = donors.setdefault(
                d.donor_email, {"name": d.donor_name or "Unknown", "email": d.donor_email, "total": 0.0, "count": 0}
            )
            donor["total"] += d.amount
            donor["count"] += 1

        top_donors = sorted(donors.values(), key=lambda x: x["total"], reverse=True)[:5]

        return {
            "success": True,
            "data": {
                "allTime": {
                    "totalAmount": _round(total_amount),
                    "totalCount": total_count,
                    "averageAmount": _round(total_amount / total_count) if total_count else 0,
                },
                "last7Days": window(now - timedelta(days=7)),
                "last30Days": window(now - timedelta(days=30)),
                "statusBreakdown": self.repo.status_counts(self.db),
                "monthlyTrend": [
                    {"month": month, "count": data["count"], "total": _round(data["total"])}
                    for month, data in sorted(trend.items())
                ],
                "topDonors": [
                    {
                        "name": donor["name"],
                        "email": donor["email"],
                        "totalAmount": _round(donor["total"]),
                        "donationCount": donor["count"],
                    }
                    for donor in top_donors
                ],
            },
        }

    def export_csv(self, filters: DonationFilters, admin: User):
        donations, _ = self.repo.list_donations(self.db, filters)
        logger.info(f"📊 Donation CSV export by admin {admin.id}: {len(donations)} rows")

        rows = (
            [
                d.id,
                format_timestamp(d.created_at),
                payhere.format_amount(d.amount),
                d.payment_status,
                d.payment_method,
                "Anonymous" if d.is_anonymous else d.donor_name,
                "" if d.is_anonymous else d.donor_email,
                "" if d.is_anonymous else d.donor_phone,
                "Yes" if d.is_anonymous else "No",
                d.message,
                "Yes" if d.receipt_sent else "No",
                format_timestamp(d.receipt_sent_at),
                d.payhere_order_id,
                d.payhere_payment_id,
                d.user_id,
                d.user.name if d.user else "",
                d.user.email if d.user else "",
                d.source,
                d.ip_address,
            ]
            for d in donations
        )
        return csv_response(EXPORT_HEADERS, rows, "donations_export")

    def _get_donation(self, donation_id: int) -> Donation:
        donation = self.repo.get_by_id(self.db, donation_id)
        if not donation:
            raise HTTPException(status_code=404, detail="Donation not found")
        return donation

    def _notify_donor(self, donation: Donation, title: str, message: str):
        """Donor notifications from admin actions never fail the action"""
        if not donation.user_id:
            return
        try:
            notification_service.create_notification(
                self.db,
                receiver_id=donation.user_id,
                notification_type=notification_service.TYPE_PAYMENT,
                title=title,
                message=message,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to create donation notification for {donation.id}: {e}")

    def complete_donation(self, donation_id: int, data: DonationCompleteRequest, admin: User) -> dict:
        donation = self._get_donation(donation_id)
        if donation.payment_status not in ("PENDING", "PROCESSING"):
            raise HTTPException(
                status_code=400,
                detail=(
                    f"Cannot complete a donation with status {donation.payment_status}. "
                    "Only PENDING or PROCESSING can be completed."
                ),
            )

        donation.payment_status = "COMPLETED"
        donation.payhere_payment_id = data.paymentId or donation.payhere_payment_id
        donation.payment_method = data.method or donation.payment_method
        self.db.commit()
        logger.info(f"✅ Donation {donation.id} marked COMPLETED by admin {admin.email}")

        self._notify_donor(
            donation,
            "Donation Confirmed",
            f"Your donation of LKR {payhere.format_amount(donation.amount)} has been confirmed. Thank you!",
        )
        return {
            "success": True,
            "data": {"id": donation.id, "paymentStatus": donation.payment_status, "amount": donation.amount},
        }

    def refund_donation(self, donation_id: int, data: DonationRefundRequest, admin: User) -> dict:
        donation = self._get_donation(donation_id)
        if donation.payment_status != "COMPLETED":
            raise HTTPException(
                status_code=400,
                detail=(
                    f"Cannot refund donation with status {donation.payment_status}. "
                    "Only COMPLETED donations can be refunded."
                ),
            )

        donation.payment_status = "REFUNDED"
        self.db.commit()
        logger.info(
            f"💸 Donation {donation.id} marked REFUNDED by admin {admin.email} "
            f"(reason: {data.reason or 'No reason provided'}, notes: {data.notes or 'No notes'})"
        )

        message = f"Your donation of LKR {payhere.format_amount(donation.amount)} has been refunded."
        if data.reason:
            message += f" Reason: {data.reason}"
        self._notify_donor(donation, "Donation Refunded", message)

        return {
            "success": True,
            "message": "Donation marked as refunded. Please process the actual refund through PayHere dashboard.",
            "data": {"id": donation.id, "paymentStatus": donation.payment_status, "amount": donation.amount},
        }

    def void_donation(self, donation_id: int, admin: User) -> dict:
        donation = self._get_donation(donation_id)
        if donation.payment_status != "PENDING":
            raise HTTPException(
                status_code=400,
                detail=(
                    f"Cannot void donation with status {donation.payment_status}. "
                    "Only PENDING donations can be voided."
                ),
            )

        donation.payment_status = "CANCELLED"
        self.db.commit()
        logger.info(f"🚫 Donation {donation.id} voided by admin {admin.email}")
        return {
            "success": True,
            "message": "Donation voided successfully",
            "data": {"id": donation.id, "paymentStatus": donation.payment_status},
        }

    def toggle_receipt(self, donation_id: int) -> dict:
        donation = self._get_donation(donation_id)
        donation.receipt_sent = not donation.receipt_sent
        donation.receipt_sent_at = utc_now() if donation.receipt_sent else None
        self.db.commit()
        logger.info(f"🧾 Receipt status for donation {donation.id}: sent={donation.receipt_sent}")
        return {
            "success": True,
            "data": {
                "id": donation.id,
                "receiptSent": donation.receipt_sent,
                "receiptSentAt": donation.receipt_sent_at,
            },
        }
