import os

# Settings are read at import time, so they must be in place before sparks is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-sparks"
os.environ["PAYHERE_MERCHANT_ID"] = "1211149"
os.environ["PAYHERE_MERCHANT_SECRET"] = "test-merchant-secret"
os.environ["PAYHERE_MODE"] = "sandbox"
os.environ["APP_URL"] = "https://sparks.test"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

from datetime import timedelta  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from sparks.auth import create_access_token, hash_password  # noqa: E402
from sparks.database import Base, SessionLocal, engine  # noqa: E402
from sparks.main import app  # noqa: E402
from sparks.models import (  # noqa: E402
    ROLE_ADMIN,
    ROLE_NORMAL_USER,
    ROLE_PARENT_GUARDIAN,
    ROLE_THERAPIST,
    OAuthAccount,
    ParentGuardian,
    Patient,
    Therapist,
    TherapistAvailability,
    User,
    practice_now,
    utc_now,
)
from sparks.payhere import format_amount, md5_upper  # noqa: E402
from sparks.services import google_meet_service  # noqa: E402

MERCHANT_ID = os.environ["PAYHERE_MERCHANT_ID"]
MERCHANT_SECRET = os.environ["PAYHERE_MERCHANT_SECRET"]

REAL_ASYNC_CLIENT = httpx.AsyncClient


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    return TestClient(app)


@pytest.fixture
def make_user(db):
    def _make_user(role=ROLE_NORMAL_USER, email=None, name=None, password="password123"):
        count = db.query(User).count() + 1
        user = User(
            email=email or f"user{count}@sparks.test",
            name=name or f"User {count}",
            role=role,
            password_hash=hash_password(password),
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    return _auth_headers


@pytest.fixture
def admin_user(make_user):
    return make_user(role=ROLE_ADMIN, email="admin@sparks.test", name="Admin")


@pytest.fixture
def therapist(db, make_user):
    user = make_user(role=ROLE_THERAPIST, email="therapist@sparks.test", name="Dr. Perera")
    therapist = Therapist(user_id=user.id, specialization="Speech Therapy", session_rate=5000)
    db.add(therapist)
    db.commit()
    db.refresh(therapist)
    return therapist


@pytest.fixture
def patient_user(make_user):
    return make_user(role=ROLE_NORMAL_USER, email="nimal@sparks.test", name="Nimal Silva")


@pytest.fixture
def patient(db, patient_user, therapist):
    patient = Patient(
        user_id=patient_user.id, first_name="Nimal", last_name="Silva", primary_therapist_id=therapist.id
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


@pytest.fixture
def guardian_user(make_user):
    return make_user(role=ROLE_PARENT_GUARDIAN, email="guardian@sparks.test", name="Kamala Fernando")


@pytest.fixture
def child_patient(db, guardian_user, therapist):
    child = Patient(first_name="Sahan", last_name="Fernando", primary_therapist_id=therapist.id)
    db.add(child)
    db.flush()
    db.add(ParentGuardian(user_id=guardian_user.id, patient_id=child.id, relationship_type="mother"))
    db.commit()
    db.refresh(child)
    return child


@pytest.fixture
def google_api(monkeypatch):
    """Route every httpx.AsyncClient in the Meet service through a handler; returns (routes, requests seen)"""
    seen = []
    routes = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"error": "not mocked"})
        return routes[key](request)

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return REAL_ASYNC_CLIENT(*args, **kwargs)

    monkeypatch.setattr(google_meet_service.httpx, "AsyncClient", factory)
    return routes, seen


@pytest.fixture
def google_account(db, therapist):
    account = OAuthAccount(
        user_id=therapist.user_id,
        provider="google",
        access_token=google_meet_service.encrypt_token("cached-access-token"),
        refresh_token=google_meet_service.encrypt_token("refresh-token"),
        token_expires_at=utc_now() + timedelta(hours=1),
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def session_day():
    """Midnight three days from now in practice time"""
    return (practice_now() + timedelta(days=3)).replace(hour=0, minute=0, second=0, microsecond=0)


@pytest.fixture
def make_slot(db, therapist, session_day):
    def _make_slot(start_time="10:00", end_time="10:45", day=None, is_free=False, is_booked=False):
        slot = TherapistAvailability(
            therapist_id=therapist.id,
            date=day or session_day,
            start_time=start_time,
            end_time=end_time,
            is_free=is_free,
            is_booked=is_booked,
        )
        db.add(slot)
        db.commit()
        db.refresh(slot)
        return slot

    return _make_slot


@pytest.fixture
def slot(make_slot):
    return make_slot()


@pytest.fixture
def booking_request(session_day):
    def _booking_request(time_slot="10:00-10:45", meeting_type="IN_PERSON", **extra):
        body = {
            "date": session_day.strftime("%Y-%m-%d"),
            "timeSlot": time_slot,
            "sessionType": "Individual",
            "meetingType": meeting_type,
        }
        body.update(extra)
        return body

    return _booking_request


@pytest.fixture
def sign_notification():
    """Build the form body PayHere posts to a notify_url, signed with the test merchant secret"""

    def _sign(order_id, amount, status_code="2", currency="LKR", merchant_id=MERCHANT_ID, **extra):
        fields = {
            "merchant_id": merchant_id,
            "order_id": order_id,
            "payment_id": "320025071278",
            "payhere_amount": amount,
            "payhere_currency": currency,
            "status_code": status_code,
            "status_message": "Successfully completed the payment.",
            "method": "VISA",
            "card_holder_name": "N SILVA",
            "card_no": "************1292",
            "card_expiry": "12/27",
        }
        fields.update(extra)
        fields["md5sig"] = md5_upper(
            merchant_id + order_id + format_amount(amount) + currency + status_code + md5_upper(MERCHANT_SECRET)
        )
        return fields

    return _sign
