"""Donation router - Public donation checkout, PayHere notify webhook and admin management"""

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ... import payhere
from ...auth import get_optional_user, require_roles
from ...database import get_db
from ...models import ROLE_ADMIN, User
from .schemas import DonationCompleteRequest, DonationFilters, DonationInitiateRequest, DonationRefundRequest
from .service import DonationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Donations"])

require_admin = require_roles(ROLE_ADMIN)


def get_donation_service(db: Session = Depends(get_db)) -> DonationService:
    """Dependency injection for DonationService"""
    return DonationService(db)


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def get_donation_filters(
    status: Optional[str] = Query(None),
    dateFrom: Optional[datetime] = Query(None),
    dateTo: Optional[datetime] = Query(None),
    donorEmail: Optional[str] = Query(None),
    donorName: Optional[str] = Query(None),
    minAmount: Optional[float] = Query(None),
    maxAmount: Optional[float] = Query(None),
    anonymousOnly: bool = Query(False),
) -> DonationFilters:
    try:
        return DonationFilters(
            status=status,
            dateFrom=dateFrom,
            dateTo=dateTo,
            donorEmail=donorEmail,
            donorName=donorName,
            minAmount=minAmount,
            maxAmount=maxAmount,
            anonymousOnly=anonymousOnly,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid status filter") from e


# ============================================================================
# PUBLIC
# ============================================================================


@router.post("/donation/initiate")
async def initiate_donation(
    data: DonationInitiateRequest,
    request: Request,
    current_user: Optional[User] = Depends(get_optional_user),
    service: DonationService = Depends(get_donation_service),
):
    """Create a pending donation and return the PayHere checkout form fields (no login required)"""
    return service.initiate_donation(data, get_client_ip(request), current_user)


@router.post("/donation/notify")
async def donation_notify(request: Request, service: DonationService = Depends(get_donation_service)):
    """PayHere server-to-server notification for donations"""
    try:
        notification = await payhere.parse_notification(request)
        logger.info(
            f"📥 PayHere donation notification: order={notification.order_id}, status={notification.status_code}"
        )
        return service.handle_notification(notification)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Error processing PayHere donation notification: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from None


# ============================================================================
# ADMIN
# ============================================================================


@router.get("/admin/donations")
async def list_donations(
    filters: DonationFilters = Depends(get_donation_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    sortBy: Literal["createdAt", "amount"] = Query("createdAt"),
    sortOrder: Literal["asc", "desc"] = Query("desc"),
    _admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    return service.list_donations(filters, page, limit, sortBy, sortOrder)


@router.get("/admin/donations/metrics")
async def donation_metrics(
    _admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    return service.get_metrics()


@router.get("/admin/donations/export")
async def export_donations(
    filters: DonationFilters = Depends(get_donation_filters),
    admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    """Download donations matching the list filters as CSV"""
    return service.export_csv(filters, admin)


@router.post("/admin/donations/{donation_id}/complete")
async def complete_donation(
    donation_id: int,
    data: Optional[DonationCompleteRequest] = Body(None),
    admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    """Manually confirm a donation whose notification never arrived"""
    return service.complete_donation(donation_id, data or DonationCompleteRequest(), admin)


@router.post("/admin/donations/{donation_id}/refund")
async def refund_donation(
    donation_id: int,
    data: Optional[DonationRefundRequest] = Body(None),
    admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    return service.refund_donation(donation_id, data or DonationRefundRequest(), admin)


@router.post("/admin/donations/{donation_id}/void")
async def void_donation(
    donation_id: int,
    admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    return service.void_donation(donation_id, admin)


@router.post("/admin/donations/{donation_id}/receipt")
async def toggle_receipt(
    donation_id: int,
    _admin: User = Depends(require_admin),
    service: DonationService = Depends(get_donation_service),
):
    return service.toggle_receipt(donation_id)
