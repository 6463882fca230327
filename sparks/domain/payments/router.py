"""Payment router - Booking initiation, PayHere notify webhook and payment status endpoints"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ... import payhere
from ...auth import get_current_user
from ...database import get_db
from ...models import User
from .schemas import CompleteBookingRequest, PaymentInitiateRequest, PaymentStatusResponse, PaymentVerifyRequest
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Payments"])


def get_payment_service(db: Session = Depends(get_db)) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db)


@router.post("/payment/notify")
async def payhere_notify(request: Request, service: PaymentService = Depends(get_payment_service)):
    """
    PayHere server-to-server notification for session payments.

    Verifies the md5sig, updates the payment and, on success, creates the booked
    session and notifies the patient (or guardians) and therapist.
    Replayed completions are acknowledged without side effects.
    """
    try:
        notification = await payhere.parse_notification(request)
        logger.info(
            f"📥 PayHere notification: order={notification.order_id}, status={notification.status_code}, "
            f"amount={notification.payhere_amount} {notification.payhere_currency}"
        )
        return await service.handle_notification(notification)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Error processing PayHere notification: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from None


@router.post("/patient/payment/initiate")
async def initiate_payment(
    data: PaymentInitiateRequest,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Book a slot with the patient's primary therapist, returning PayHere checkout data when payment is due"""
    return await service.initiate_booking(current_user, data)


@router.get("/payment/status", response_model=PaymentStatusResponse)
async def get_payment_status(
    orderId: str = Query(...),
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Payment and session details for the payment's owner"""
    return service.get_payment_status(current_user, order_id=orderId)


@router.post("/payment/verify", response_model=PaymentStatusResponse)
async def verify_payment(
    data: PaymentVerifyRequest,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Look up a payment by order id or by the session it paid for"""
    return service.get_payment_status(current_user, order_id=data.orderId, session_id=data.sessionId)


@router.post("/payment/complete-booking")
async def complete_booking(
    data: CompleteBookingRequest,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return await service.complete_booking(current_user, data.orderId)
