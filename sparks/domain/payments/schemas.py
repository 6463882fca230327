"""Payment domain schemas - Pydantic models for booking and payment requests"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...models import MEETING_IN_PERSON, MEETING_TYPES
from ...services.booking_service import parse_session_start


class PaymentInitiateRequest(BaseModel):
    """Schema for starting a session booking"""

    date: str
    timeSlot: str
    sessionType: str = "Individual"
    meetingType: str = MEETING_IN_PERSON
    patientId: Optional[int] = None  # Required for guardians booking for a child

    @field_validator("meetingType")
    @classmethod
    def validate_meeting_type(cls, v):
        if v not in MEETING_TYPES:
            raise ValueError("Invalid meetingType. Must be IN_PERSON, ONLINE, or HYBRID")
        return v

    @field_validator("sessionType")
    @classmethod
    def validate_session_type(cls, v):
        return v.strip() or "Individual"

    @model_validator(mode="after")
    def validate_date_and_slot(self):
        try:
            parse_session_start(self.date, self.timeSlot)
        except ValueError as e:
            raise ValueError(f"Invalid date or time provided: {e}") from e
        return self


class PaymentVerifyRequest(BaseModel):
    orderId: Optional[str] = None
    sessionId: Optional[int] = None

    @model_validator(mode="after")
    def require_reference(self):
        if not self.orderId and not self.sessionId:
            raise ValueError("Either orderId or sessionId is required")
        return self


class CompleteBookingRequest(BaseModel):
    orderId: str


class TherapistSummary(BaseModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class SessionSummary(BaseModel):
    id: int
    scheduledAt: datetime
    duration: int
    status: str
    bookedRate: float
    meetingType: str
    meetingLink: Optional[str] = None
    therapist: Optional[TherapistSummary] = None


class PaymentStatusResponse(BaseModel):
    orderId: str
    paymentId: Optional[str] = None
    amount: str
    currency: str
    status: str
    statusMessage: Optional[str] = None
    paymentMethod: Optional[str] = None
    session: Optional[SessionSummary] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
