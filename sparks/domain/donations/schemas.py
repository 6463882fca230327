"""Donation domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...shared.validators import validate_email, validate_lk_phone

DONATION_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED", "REFUNDED", "CANCELLED")


class DonationInitiateRequest(BaseModel):
    """Schema for starting a donation checkout"""

    amount: float
    donorName: Optional[str] = None
    donorEmail: Optional[str] = None
    donorPhone: Optional[str] = None
    isAnonymous: bool = False
    message: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("Valid donation amount is required")
        return v

    @field_validator("donorName", "donorEmail", "donorPhone", "message")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None:
            v = v.strip()
        return v or None

    @field_validator("donorEmail")
    @classmethod
    def validate_donor_email(cls, v):
        return validate_email(v)

    @field_validator("donorPhone")
    @classmethod
    def validate_donor_phone(cls, v):
        return validate_lk_phone(v)

    @model_validator(mode="after")
    def require_donor_identity(self):
        if not self.isAnonymous and not self.donorName and not self.donorEmail:
            raise ValueError("Donor name or email is required for non-anonymous donations")
        return self


class DonationCompleteRequest(BaseModel):
    paymentId: Optional[str] = None
    method: Optional[str] = None


class DonationRefundRequest(BaseModel):
    reason: Optional[str] = None
    notes: Optional[str] = None


class DonationFilters(BaseModel):
    """Shared filters of the admin list and CSV export"""

    status: Optional[str] = None
    dateFrom: Optional[datetime] = None
    dateTo: Optional[datetime] = None
    donorEmail: Optional[str] = None
    donorName: Optional[str] = None
    minAmount: Optional[float] = None
    maxAmount: Optional[float] = None
    anonymousOnly: bool = False

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v and v not in DONATION_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(DONATION_STATUSES)}")
        return v


class DonationUser(BaseModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class DonationResponse(BaseModel):
    id: int
    amount: float
    currency: str
    paymentStatus: str
    paymentMethod: Optional[str] = None
    donorName: Optional[str] = None
    donorEmail: Optional[str] = None
    donorPhone: Optional[str] = None
    isAnonymous: bool
    message: Optional[str] = None
    receiptSent: bool
    receiptSentAt: Optional[datetime] = None
    payHereOrderId: str
    payHerePaymentId: Optional[str] = None
    payHereStatusCode: Optional[str] = None
    userId: Optional[int] = None
    user: Optional[DonationUser] = None
    source: Optional[str] = None
    ipAddress: Optional[str] = None
    createdAt: datetime
    updatedAt: Optional[datetime] = None
