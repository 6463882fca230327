from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .config import CALENDAR_TIMEZONE
from .database import Base

# Roles
ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_THERAPIST = "THERAPIST"
ROLE_PARENT_GUARDIAN = "PARENT_GUARDIAN"
ROLE_NORMAL_USER = "NORMAL_USER"

# Meeting types
MEETING_IN_PERSON = "IN_PERSON"
MEETING_ONLINE = "ONLINE"
MEETING_HYBRID = "HYBRID"
MEETING_TYPES = (MEETING_IN_PERSON, MEETING_ONLINE, MEETING_HYBRID)
REMOTE_MEETING_TYPES = (MEETING_ONLINE, MEETING_HYBRID)


def utc_now() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def practice_now() -> datetime:
    """Naive wall-clock time in the practice timezone, the clock session times are kept in"""
    return datetime.now(ZoneInfo(CALENDAR_TIMEZONE)).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(30), default=ROLE_NORMAL_USER, nullable=False)
    password_hash = Column(String(255), nullable=True)  # Null for Google-only accounts
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    oauth_accounts = relationship("OAuthAccount", back_populates="user", cascade="all, delete-orphan")
    patient = relationship("Patient", back_populates="user", uselist=False)
    therapist = relationship("Therapist", back_populates="user", uselist=False)
    guardianships = relationship("ParentGuardian", back_populates="user")


class OAuthAccount(Base):
    """Linked third-party login. Tokens are Fernet-encrypted at rest."""

    __tablename__ = "oauth_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String(50), nullable=False)  # "google"
    provider_account_id = Column(String(255), nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="oauth_accounts")


class Therapist(Base):
    __tablename__ = "therapists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    specialization = Column(String(255), nullable=True)
    session_rate = Column(Float, default=0, nullable=False)  # LKR per session
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="therapist")
    availability = relationship("TherapistAvailability", back_populates="therapist")
    sessions = relationship("TherapySession", back_populates="therapist")


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=True)  # Null for children
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    date_of_birth = Column(DateTime, nullable=True)
    primary_therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="patient")
    primary_therapist = relationship("Therapist")
    guardians = relationship("ParentGuardian", back_populates="patient")
    sessions = relationship("TherapySession", back_populates="patient")
    payments = relationship("Payment", back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class ParentGuardian(Base):
    __tablename__ = "parent_guardians"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    relationship_type = Column(String(50), nullable=True)  # mother, father, guardian
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="guardianships")
    patient = relationship("Patient", back_populates="guardians")


class TherapistAvailability(Base):
    __tablename__ = "therapist_availability"

    id = Column(Integer, primary_key=True, index=True)
    therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=False, index=True)
    date = Column(DateTime, nullable=False)  # Midnight of the slot's day
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)  # "HH:MM"
    is_booked = Column(Boolean, default=False, nullable=False)
    is_free = Column(Boolean, default=False, nullable=False)

    therapist = relationship("Therapist", back_populates="availability")


class TherapySession(Base):
    __tablename__ = "therapy_sessions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("therapists.id"), nullable=False, index=True)
    availability_slot_id = Column(Integer, ForeignKey("therapist_availability.id"), nullable=True)
    scheduled_at = Column(DateTime, nullable=False)
    duration = Column(Integer, default=45, nullable=False)  # Minutes
    status = Column(String(20), default="SCHEDULED", nullable=False)  # SCHEDULED, COMPLETED, CANCELLED, NO_SHOW
    type = Column(String(50), default="Individual", nullable=False)
    booked_rate = Column(Float, default=0, nullable=False)
    meeting_type = Column(String(20), default=MEETING_IN_PERSON, nullable=False)
    meeting_link = Column(String(500), nullable=True)
    calendar_event_id = Column(String(255), nullable=True)
    calendar_owner_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # Whose calendar holds the event
    session_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("Patient", back_populates="sessions")
    therapist = relationship("Therapist", back_populates="sessions")
    availability_slot = relationship("TherapistAvailability")
    payment = relationship("Payment", back_populates="session", uselist=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(100), unique=True, index=True, nullable=False)
    session_id = Column(Integer, ForeignKey("therapy_sessions.id"), unique=True, nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="LKR", nullable=False)
    # PENDING, COMPLETED, FAILED, CANCELLED, CHARGEDBACK, UNKNOWN
    status = Column(String(20), default="PENDING", nullable=False, index=True)
    payment_id = Column(String(100), nullable=True)  # PayHere payment reference
    payment_method = Column(String(50), nullable=True)
    status_message = Column(String(255), nullable=True)
    payhere_status_code = Column(String(5), nullable=True)
    card_holder_name = Column(String(255), nullable=True)
    masked_card_number = Column(String(30), nullable=True)
    card_expiry = Column(String(10), nullable=True)
    # Booking details, gateway echoes and reconciliation errors. Always reassign, never mutate in place.
    payment_metadata = Column("metadata", JSON, default=dict, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    session = relationship("TherapySession", back_populates="payment")
    patient = relationship("Patient", back_populates="payments")


class Donation(Base):
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), default="LKR", nullable=False)
    frequency = Column(String(20), default="ONE_TIME", nullable=False)
    # PENDING, PROCESSING, COMPLETED, FAILED, REFUNDED, CANCELLED
    payment_status = Column(String(20), default="PENDING", nullable=False, index=True)
    payhere_order_id = Column(String(100), unique=True, index=True, nullable=False)
    payhere_payment_id = Column(String(100), nullable=True)
    payhere_status_code = Column(String(100), nullable=True)
    payment_method = Column(String(50), nullable=True)
    donor_name = Column(String(255), nullable=True)
    donor_email = Column(String(255), nullable=True)
    donor_phone = Column(String(50), nullable=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    message = Column(Text, nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    source = Column(String(20), default="WEB", nullable=True)
    ip_address = Column(String(64), nullable=True)
    receipt_sent = Column(Boolean, default=False, nullable=False)
    receipt_sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    user = relationship("User")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # PAYMENT, APPOINTMENT, REMINDER, SYSTEM, TASK, EMERGENCY
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    is_urgent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    sender = relationship("User", foreign_keys=[sender_id])
    receiver = relationship("User", foreign_keys=[receiver_id])
