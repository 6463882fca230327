"""
Google Meet Service
Creates and deletes Google Calendar events with Meet conferencing for online therapy sessions.
Falls back to a locally generated meeting link whenever Google is unavailable.
"""
import base64
import hashlib
import logging
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Optional, Sequence

import httpx
from cryptography.fernet import Fernet
from sqlalchemy.orm import Session

from ..config import APP_URL, CALENDAR_TIMEZONE, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, SECRET_KEY
from ..models import OAuthAccount, TherapySession, utc_now

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_PROVIDER = "google"

_BASE36 = string.digits + string.ascii_lowercase


class MeetingProvisionError(Exception):
    """Raised when Google refuses or cannot create a Meet event"""

    pass


def _cipher() -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest())
    return Fernet(key)


def encrypt_token(token: str) -> str:
    return _cipher().encrypt(token.encode()).decode()


def decrypt_token(token: str) -> str:
    return _cipher().decrypt(token.encode()).decode()


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_simple_meeting_link(session_ref: str) -> str:
    """
    Generate a unique meeting room link on our own domain.
    Used when no Google account is linked or Meet creation fails.
    """
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"{APP_URL}/meeting/{timestamp}-{random_part}?session={session_ref}"


def get_google_account(db: Session, user_id: Optional[int]) -> Optional[OAuthAccount]:
    """Google account with a refresh token for this user, if any"""
    if not user_id:
        return None
    return (
        db.query(OAuthAccount)
        .filter(
            OAuthAccount.user_id == user_id,
            OAuthAccount.provider == GOOGLE_PROVIDER,
            OAuthAccount.refresh_token.isnot(None),
        )
        .first()
    )


async def get_valid_access_token(account: OAuthAccount, db: Session) -> Optional[str]:
    """
    Get a valid access token, refreshing if necessary
    Returns None if refresh fails
    """
    try:
        expires_at = account.token_expires_at
        if account.access_token and expires_at and expires_at > utc_now() + timedelta(minutes=5):
            return decrypt_token(account.access_token)

        logger.info(f"🔄 Google token for user {account.user_id} expired, refreshing...")
        refresh_token = decrypt_token(account.refresh_token)

        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": GOOGLE_CLIENT_ID,
                    "client_secret": GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )

        if response.status_code != 200:
            logger.error(f"❌ Token refresh failed: {response.text}")
            return None

        tokens = response.json()
        new_access_token = tokens.get("access_token")
        if not new_access_token:
            logger.error("❌ No access token in refresh response")
            return None

        account.access_token = encrypt_token(new_access_token)
        account.token_expires_at = utc_now() + timedelta(seconds=tokens.get("expires_in", 3600))
        db.commit()

        logger.info("✅ Google token refreshed successfully")
        return new_access_token

    except Exception as e:
        logger.error(f"❌ Error getting valid access token: {str(e)}")
        db.rollback()
        return None


async def create_meet_event(
    access_token: str,
    summary: str,
    description: str,
    start: datetime,
    end: datetime,
    attendee_emails: Sequence[str],
    timezone: str = CALENDAR_TIMEZONE,
) -> dict:
    """
    Create a calendar event with a Google Meet conference.
    Returns {"event_id", "meeting_link", "calendar_link"}; raises MeetingProvisionError on failure.
    """
    event_data = {
        "summary": summary,
        "description": description,
        # Session times are wall-clock times in the practice's timezone
        "start": {"dateTime": start.replace(tzinfo=None).isoformat(), "timeZone": timezone},
        "end": {"dateTime": end.replace(tzinfo=None).isoformat(), "timeZone": timezone},
        "attendees": [{"email": email} for email in attendee_emails if email],
        "conferenceData": {
            "createRequest": {
                "requestId": f"{int(time.time() * 1000)}-{secrets.token_hex(4)}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        },
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60},
                {"method": "popup", "minutes": 30},
            ],
        },
    }

    try:
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/calendars/primary/events",
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                headers={"Authorization": f"Bearer {access_token}"},
                json=event_data,
            )
    except httpx.HTTPError as e:
        raise MeetingProvisionError(f"Calendar API unreachable: {e}") from e

    if response.status_code not in (200, 201):
        raise MeetingProvisionError(f"Calendar API returned {response.status_code}: {response.text}")

    try:
        event = response.json()
    except ValueError as e:
        raise MeetingProvisionError(f"Calendar API returned a non-JSON body: {response.text[:200]}") from e

    if not isinstance(event, dict) or not event.get("id") or not event.get("hangoutLink"):
        raise MeetingProvisionError("Calendar event created without conference data")

    logger.info(f"✅ Google Meet event created: {event['id']}")
    return {
        "event_id": event["id"],
        "meeting_link": event["hangoutLink"],
        "calendar_link": event.get("htmlLink", ""),
    }


async def delete_meet_event(access_token: str, event_id: str) -> bool:
    """Delete a calendar event and notify attendees. Returns True if successful."""
    try:
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.delete(
                f"{GOOGLE_CALENDAR_API}/calendars/primary/events/{event_id}",
                params={"sendUpdates": "all"},
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.HTTPError as e:
        logger.error(f"❌ Error deleting calendar event {event_id}: {str(e)}")
        return False

    # 410 Gone: already deleted on Google's side
    if response.status_code not in (200, 204, 410):
        logger.error(f"❌ Failed to delete calendar event: {response.text}")
        return False

    logger.info(f"✅ Google Calendar event deleted: {event_id}")
    return True


async def provision_meeting_link(
    db: Session,
    session: TherapySession,
    organizer_user_ids: Sequence[Optional[int]],
    attendee_emails: Sequence[str],
    summary: str,
    description: str,
) -> tuple[str, Optional[str], Optional[int]]:
    """
    Create a Meet link for a session using the first organizer with a linked Google account.

    Returns (meeting_link, calendar_event_id, calendar_owner_user_id). Never raises for
    Google failures: the simple meeting link is returned instead with no event id.
    """
    start = session.scheduled_at
    end = start + timedelta(minutes=session.duration or 45)

    for user_id in organizer_user_ids:
        account = get_google_account(db, user_id)
        if not account:
            continue

        access_token = await get_valid_access_token(account, db)
        if not access_token:
            logger.warning(f"⚠️ Could not obtain Google access token for user {user_id}")
            continue

        try:
            event = await create_meet_event(access_token, summary, description, start, end, attendee_emails)
            return event["meeting_link"], event["event_id"], user_id
        except Exception as e:
            logger.error(f"❌ Failed to create Google Meet event for session {session.id}: {e}")
            break

    logger.info(f"⚠️ Using fallback meeting link for session {session.id}")
    return generate_simple_meeting_link(str(session.id)), None, None


async def cancel_session_event(db: Session, session: TherapySession) -> bool:
    """Remove a session's calendar event from the organizer's calendar"""
    if not session.calendar_event_id:
        return False

    account = get_google_account(db, session.calendar_owner_user_id)
    if not account:
        logger.warning(f"⚠️ No Google account to delete event {session.calendar_event_id}")
        return False

    access_token = await get_valid_access_token(account, db)
    if not access_token:
        return False

    return await delete_meet_event(access_token, session.calendar_event_id)
