"""Payment service - Booking initiation, PayHere reconciliation and payment status"""

import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ... import payhere
from ...auth import can_access_patient
from ...config import PAYHERE_MERCHANT_ID, PAYHERE_MERCHANT_SECRET
from ...models import (
    ROLE_NORMAL_USER,
    ROLE_PARENT_GUARDIAN,
    Patient,
    Payment,
    TherapySession,
    User,
    utc_now,
)
from ...services import notification_service
from ...services.booking_service import (
    BookingError,
    SlotAlreadyBookedError,
    attach_meeting_link,
    create_booked_session,
    parse_session_start,
)
from .repository import PaymentRepository
from .schemas import PaymentInitiateRequest, PaymentStatusResponse, SessionSummary, TherapistSummary

logger = logging.getLogger(__name__)


def serialize_session(session: Optional[TherapySession]) -> Optional[SessionSummary]:
    if session is None:
        return None
    therapist_user = session.therapist.user if session.therapist else None
    return SessionSummary(
        id=session.id,
        scheduledAt=session.scheduled_at,
        duration=session.duration,
        status=session.status,
        bookedRate=session.booked_rate,
        meetingType=session.meeting_type,
        meetingLink=session.meeting_link,
        therapist=TherapistSummary(
            id=session.therapist_id,
            name=therapist_user.name if therapist_user else None,
            email=therapist_user.email if therapist_user else None,
        ),
    )


def serialize_payment(payment: Payment) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        orderId=payment.order_id,
        paymentId=payment.payment_id,
        amount=payhere.format_amount(payment.amount),
        currency=payment.currency,
        status=payment.status,
        statusMessage=payment.status_message,
        paymentMethod=payment.payment_method,
        session=serialize_session(payment.session),
        createdAt=payment.created_at,
        updatedAt=payment.updated_at,
    )


class PaymentService:
    """Service layer for session payments"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = PaymentRepository()

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def resolve_patient(self, user: User, patient_id: Optional[int] = None) -> Patient:
        """Patient a user may book for: their own profile, or a linked child for guardians"""
        if user.role == ROLE_NORMAL_USER:
            patient = self.repo.get_patient_for_user(self.db, user.id)
            if not patient:
                raise HTTPException(
                    status_code=404, detail="Patient profile not found. Please create a profile first."
                )
            return patient

        if user.role == ROLE_PARENT_GUARDIAN:
            if not patient_id:
                raise HTTPException(status_code=400, detail="patientId is required")
            link = self.repo.get_guardian_link(self.db, user.id, patient_id)
            if not link:
                raise HTTPException(status_code=404, detail="Patient not found or not linked to your account")
            return link.patient

        raise HTTPException(status_code=403, detail="Only patients and guardians can book sessions")

    def _get_owned_payment(self, user: User, order_id: Optional[str] = None, session_id: Optional[int] = None) -> Payment:
        if order_id:
            payment = self.repo.get_by_order_id(self.db, order_id)
        elif session_id:
            payment = self.repo.get_by_session_id(self.db, session_id)
        else:
            raise HTTPException(status_code=400, detail="Either orderId or sessionId is required")

        if not payment:
            raise HTTPException(status_code=404, detail="Payment not found")

        if not can_access_patient(self.db, user, payment.patient):
            logger.warning(f"🚫 User {user.id} tried to access payment {payment.order_id}")
            raise HTTPException(status_code=403, detail="Unauthorized - payment does not belong to you")

        return payment

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_booking(self, user: User, data: PaymentInitiateRequest) -> dict:
        """
        Start a booking. Free slots are booked immediately; paid slots get a PENDING
        payment carrying the booking details and the PayHere checkout fields.
        """
        patient = self.resolve_patient(user, data.patientId)
        if not patient.primary_therapist_id:
            raise HTTPException(status_code=400, detail="No assigned therapist. Please select a therapist first.")

        therapist = self.repo.get_therapist(self.db, patient.primary_therapist_id)
        if not therapist:
            raise HTTPException(status_code=404, detail="Assigned therapist not found")

        scheduled_at, start_time = parse_session_start(data.date, data.timeSlot)
        logger.info(
            f"📥 Booking request for patient {patient.id}: {data.date} {start_time} ({data.meetingType})"
        )

        slot = self.repo.find_open_slot(self.db, therapist.id, scheduled_at, start_time)
        if not slot:
            raise HTTPException(
                status_code=400, detail="This time slot is not available or has already been booked"
            )

        session_rate = 0.0 if slot.is_free else float(therapist.session_rate or 0)
        if session_rate <= 0:
            return await self._book_free_session(user, patient, therapist, slot.id, scheduled_at, start_time, data)

        return self._create_pending_payment(user, patient, therapist, slot.id, session_rate, data)

    async def _book_free_session(self, user, patient, therapist, slot_id, scheduled_at, start_time, data) -> dict:
        try:
            session = create_booked_session(
                self.db,
                patient_id=patient.id,
                therapist_id=therapist.id,
                slot_id=slot_id,
                scheduled_at=scheduled_at,
                session_type=data.sessionType,
                meeting_type=data.meetingType,
                booked_rate=0,
            )
        except SlotAlreadyBookedError as e:
            raise HTTPException(status_code=409, detail=str(e)) from None

        session = await attach_meeting_link(self.db, session, user.id)

        day = scheduled_at.strftime("%Y-%m-%d")
        notification_service.create_notifications(
            self.db,
            [
                {
                    "receiver_id": user.id,
                    "notification_type": notification_service.TYPE_APPOINTMENT,
                    "title": "Session Booked",
                    "message": f"Your free therapy session has been booked for {day} at {start_time}",
                },
                {
                    "receiver_id": therapist.user_id,
                    "sender_id": user.id,
                    "notification_type": notification_service.TYPE_APPOINTMENT,
                    "title": "New Session Booked",
                    "message": f"New free session booked with {patient.full_name} on {day} at {start_time}",
                },
            ],
        )

        return {
            "message": "Free session booked successfully",
            "requiresPayment": False,
            "session": serialize_session(session).model_dump(mode="json"),
        }

    def _create_pending_payment(self, user, patient, therapist, slot_id, session_rate, data) -> dict:
        order_id = payhere.generate_session_order_id()
        portal = "parent" if user.role == ROLE_PARENT_GUARDIAN else "patient"

        try:
            payment_data = payhere.build_checkout_fields(
                order_id=order_id,
                amount=session_rate,
                items=f"Therapy Session - {data.sessionType}",
                first_name=patient.first_name,
                last_name=patient.last_name,
                email=user.email or "",
                return_path=f"/{portal}/appointments?payment=success",
                cancel_path=f"/{portal}/appointments?payment=cancelled",
                notify_path="/api/payment/notify",
            )
        except RuntimeError as e:
            logger.error(f"❌ Cannot initiate payment: {e}")
            raise HTTPException(status_code=500, detail="Payment gateway not configured") from None

        payment = self.repo.create_payment(
            self.db,
            order_id=order_id,
            patient_id=patient.id,
            amount=session_rate,
            currency=payment_data["currency"],
            status="PENDING",
            payment_metadata={
                "initiatedBy": {"userId": user.id, "userName": user.name, "userEmail": user.email},
                "bookingDetails": {
                    "date": data.date,
                    "timeSlot": data.timeSlot,
                    "therapistId": therapist.id,
                    "sessionType": data.sessionType,
                    "meetingType": data.meetingType,
                    "availabilitySlotId": slot_id,
                    "patientId": patient.id,
                },
            },
        )
        logger.info(f"💳 Created pending payment {payment.order_id} for patient {patient.id}: LKR {session_rate:.2f}")

        return {
            "requiresPayment": True,
            "orderId": order_id,
            "checkoutUrl": payhere.get_checkout_url(),
            "paymentData": payment_data,
            "message": "Payment initiated successfully",
        }

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def create_session_from_payment(self, payment: Payment) -> TherapySession:
        """
        Create the session described by a completed payment's booking details.
        Returns the linked session unchanged when one already exists.
        """
        if payment.session_id:
            return payment.session

        metadata = payment.payment_metadata or {}
        details = metadata.get("bookingDetails")
        if not details:
            raise BookingError("No booking details found in payment")

        try:
            scheduled_at, _ = parse_session_start(details["date"], details["timeSlot"])
            therapist_id = int(details["therapistId"])
        except (KeyError, TypeError, ValueError) as e:
            raise BookingError(f"Invalid booking details: {e}") from e

        patient_id = payment.patient_id or details.get("patientId")
        if not patient_id:
            raise BookingError("Payment has no patient")

        slot_id = details.get("availabilitySlotId")
        return create_booked_session(
            self.db,
            patient_id=patient_id,
            therapist_id=therapist_id,
            slot_id=int(slot_id) if slot_id is not None else None,
            scheduled_at=scheduled_at,
            session_type=details.get("sessionType") or "Individual",
            meeting_type=details.get("meetingType") or "IN_PERSON",
            booked_rate=payment.amount,
            payment=payment,
        )

    @staticmethod
    def _booking_user_id(payment: Payment) -> Optional[int]:
        return ((payment.payment_metadata or {}).get("initiatedBy") or {}).get("userId")

    async def book_session_from_payment(self, payment: Payment) -> TherapySession:
        """Create the session for a completed payment and give it a meeting link"""
        session = self.create_session_from_payment(payment)
        return await attach_meeting_link(self.db, session, self._booking_user_id(payment))

    async def handle_notification(self, notification: payhere.PayHereNotification) -> dict:
        """Apply a PayHere server-to-server notification to its payment"""
        rejection = payhere.check_notification(notification, PAYHERE_MERCHANT_ID, PAYHERE_MERCHANT_SECRET)
        if rejection:
            raise HTTPException(status_code=400, detail=rejection)

        payment = self.repo.get_by_order_id(self.db, notification.order_id)
        if not payment:
            logger.error(f"❌ Payment not found for order ID: {notification.order_id}")
            raise HTTPException(status_code=404, detail="Payment not found")

        new_status = payhere.map_payment_status(notification.status_code)

        # Only one delivery may move a payment to COMPLETED
        if new_status == "COMPLETED" and not self.repo.claim_completion(self.db, payment.id):
            self.db.rollback()
            logger.info(f"ℹ️ Duplicate completion notification for {notification.order_id}, ignoring")
            return {"status": "success", "duplicate": True}

        payment.payment_id = notification.payment_id or payment.payment_id
        payment.status = new_status
        payment.payment_method = payhere.parse_payment_method(notification.method)
        payment.status_message = notification.status_message or payhere.get_status_message(notification.status_code)
        payment.payhere_status_code = notification.status_code
        payment.card_holder_name = notification.card_holder_name
        payment.masked_card_number = notification.card_no
        payment.card_expiry = notification.card_expiry
        payment.payment_metadata = {
            **(payment.payment_metadata or {}),
            "notificationReceivedAt": utc_now().isoformat(),
            "payhereResponse": {
                "merchant_id": notification.merchant_id,
                "payment_id": notification.payment_id,
                "status_code": notification.status_code,
                "status_message": notification.status_message,
                "method": notification.method,
            },
        }
        self.db.commit()
        logger.info(f"💰 Payment {payment.order_id} updated: {new_status} (PayHere id {notification.payment_id})")

        if new_status == "COMPLETED":
            await self._reconcile_completed_payment(payment, notification)

        return {"status": "success"}

    async def _reconcile_completed_payment(self, payment: Payment, notification: payhere.PayHereNotification):
        session = None
        if not payment.session_id and (payment.payment_metadata or {}).get("bookingDetails"):
            try:
                session = self.create_session_from_payment(payment)
            except (BookingError, SQLAlchemyError) as e:
                self.db.rollback()
                self.db.refresh(payment)
                if payment.session_id:
                    # A concurrent notification already booked it
                    logger.info(f"ℹ️ Session for {payment.order_id} was created by another notification")
                else:
                    logger.error(f"❌ Session creation failed for paid order {payment.order_id}: {e}")
                    payment.payment_metadata = {
                        **(payment.payment_metadata or {}),
                        "sessionCreationError": {"message": str(e), "at": utc_now().isoformat()},
                    }
                    self.db.commit()

        if session is not None:
            try:
                await attach_meeting_link(self.db, session, self._booking_user_id(payment))
            except SQLAlchemyError as e:
                # The booking is committed; only the link is missing
                self.db.rollback()
                logger.error(f"❌ Could not save meeting link for session {session.id} ({payment.order_id}): {e}")

        self._notify_payment_completed(payment, notification)

    def _notify_payment_completed(self, payment: Payment, notification: payhere.PayHereNotification):
        patient = payment.patient
        if patient is None:
            return

        amount = payhere.format_amount(notification.payhere_amount)
        therapist_user_id = None
        if payment.session is not None:
            therapist_user_id = payment.session.therapist.user_id
        else:
            therapist_id = ((payment.payment_metadata or {}).get("bookingDetails") or {}).get("therapistId")
            therapist = self.repo.get_therapist(self.db, therapist_id) if therapist_id else None
            therapist_user_id = therapist.user_id if therapist else None

        entries = [
            {
                "receiver_id": receiver_id,
                "notification_type": notification_service.TYPE_PAYMENT,
                "title": "Payment Successful",
                "message": f"Your payment of LKR {amount} for the therapy session has been confirmed.",
            }
            for receiver_id in notification_service.patient_recipient_ids(patient)
        ]
        entries.append(
            {
                "receiver_id": therapist_user_id,
                "notification_type": notification_service.TYPE_PAYMENT,
                "title": "Payment Received",
                "message": f"Payment of LKR {amount} received for session with {patient.full_name}.",
            }
        )
        notification_service.create_notifications(self.db, entries)

    # ------------------------------------------------------------------
    # Status / completion
    # ------------------------------------------------------------------

    def get_payment_status(self, user: User, order_id: Optional[str] = None, session_id: Optional[int] = None):
        return serialize_payment(self._get_owned_payment(user, order_id, session_id))

    async def complete_booking(self, user: User, order_id: str) -> dict:
        """Create the session for a completed payment whose webhook could not book it"""
        payment = self._get_owned_payment(user, order_id=order_id)

        if payment.status != "COMPLETED":
            raise HTTPException(
                status_code=400, detail=f"Payment is not completed. Current status: {payment.status}"
            )

        if payment.session_id:
            return {"message": "Session already booked", "session": serialize_session(payment.session)}

        try:
            session = await self.book_session_from_payment(payment)
        except SlotAlreadyBookedError as e:
            raise HTTPException(status_code=409, detail=str(e)) from None
        except BookingError as e:
            raise HTTPException(status_code=400, detail=str(e)) from None

        day, start_time = notification_service.format_session_time(session.scheduled_at)
        therapist_user = session.therapist.user
        notification_service.create_notifications(
            self.db,
            [
                {
                    "receiver_id": therapist_user.id,
                    "sender_id": user.id,
                    "notification_type": notification_service.TYPE_APPOINTMENT,
                    "title": "New Session Booked",
                    "message": (
                        f"New therapy session scheduled for {session.patient.full_name} on {day} at {start_time}"
                    ),
                },
                {
                    "receiver_id": user.id,
                    "notification_type": notification_service.TYPE_APPOINTMENT,
                    "title": "Booking Confirmed",
                    "message": f"Your session with {therapist_user.name} has been confirmed for {day} at {start_time}",
                },
            ],
        )

        return {"message": "Session booked successfully", "session": serialize_session(session)}
