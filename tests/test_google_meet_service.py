import asyncio
import json
import re
from datetime import datetime, timedelta

import httpx
import pytest

from sparks.models import TherapySession, utc_now
from sparks.services import google_meet_service
from sparks.services.google_meet_service import MeetingProvisionError


@pytest.fixture
def online_session(db, patient, therapist):
    session = TherapySession(
        patient_id=patient.id,
        therapist_id=therapist.id,
        scheduled_at=datetime(2030, 5, 14, 10, 0),
        duration=45,
        booked_rate=5000,
        meeting_type="ONLINE",
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


EVENTS_PATH = "/calendar/v3/calendars/primary/events"


def test_token_encryption_is_reversible_and_opaque():
    encrypted = google_meet_service.encrypt_token("ya29.secret")
    assert "ya29" not in encrypted
    assert google_meet_service.decrypt_token(encrypted) == "ya29.secret"


def test_simple_meeting_link_format():
    link = google_meet_service.generate_simple_meeting_link("17")
    assert re.fullmatch(r"https://sparks\.test/meeting/[0-9a-z]+-[0-9a-z]{5}\?session=17", link)


def test_base36():
    assert google_meet_service._to_base36(0) == "0"
    assert google_meet_service._to_base36(35) == "z"
    assert google_meet_service._to_base36(36) == "10"


def test_google_account_requires_refresh_token(db, google_account, therapist):
    assert google_meet_service.get_google_account(db, therapist.user_id).id == google_account.id
    assert google_meet_service.get_google_account(db, None) is None

    google_account.refresh_token = None
    db.commit()
    assert google_meet_service.get_google_account(db, therapist.user_id) is None


def test_fresh_access_token_is_used_without_refresh(db, google_account, google_api):
    _, seen = google_api

    token = asyncio.run(google_meet_service.get_valid_access_token(google_account, db))

    assert token == "cached-access-token"
    assert seen == []


def test_expiring_access_token_is_refreshed(db, google_account, google_api):
    routes, seen = google_api
    routes[("POST", "/token")] = lambda request: httpx.Response(
        200, json={"access_token": "new-access-token", "expires_in": 3599}
    )
    google_account.token_expires_at = utc_now() + timedelta(minutes=2)
    db.commit()

    token = asyncio.run(google_meet_service.get_valid_access_token(google_account, db))

    assert token == "new-access-token"
    assert "grant_type=refresh_token" in seen[0].content.decode()
    db.refresh(google_account)
    assert google_meet_service.decrypt_token(google_account.access_token) == "new-access-token"
    assert google_account.token_expires_at > utc_now() + timedelta(minutes=50)


def test_failed_refresh_returns_none(db, google_account, google_api):
    routes, _ = google_api
    routes[("POST", "/token")] = lambda request: httpx.Response(400, json={"error": "invalid_grant"})
    google_account.token_expires_at = None
    db.commit()

    assert asyncio.run(google_meet_service.get_valid_access_token(google_account, db)) is None


def test_non_json_refresh_response_returns_none(db, google_account, google_api):
    routes, _ = google_api
    routes[("POST", "/token")] = lambda request: httpx.Response(200, text="<html>Bad Gateway</html>")
    google_account.token_expires_at = None
    db.commit()

    assert asyncio.run(google_meet_service.get_valid_access_token(google_account, db)) is None


def test_create_meet_event(google_api):
    routes, seen = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(
        200,
        json={
            "id": "evt123",
            "hangoutLink": "https://meet.google.com/abc-defg-hij",
            "htmlLink": "https://calendar.google.com/event?eid=evt123",
        },
    )
    start = datetime(2030, 5, 14, 10, 0)

    event = asyncio.run(
        google_meet_service.create_meet_event(
            "token", "Therapy Session - Nimal Silva", "desc", start, start + timedelta(minutes=45), ["a@b.lk", ""]
        )
    )

    assert event == {
        "event_id": "evt123",
        "meeting_link": "https://meet.google.com/abc-defg-hij",
        "calendar_link": "https://calendar.google.com/event?eid=evt123",
    }
    request = seen[0]
    assert request.headers["Authorization"] == "Bearer token"
    assert request.url.params["conferenceDataVersion"] == "1"
    assert request.url.params["sendUpdates"] == "all"
    body = json.loads(request.content)
    assert body["start"] == {"dateTime": "2030-05-14T10:00:00", "timeZone": "Asia/Colombo"}
    assert body["end"]["dateTime"] == "2030-05-14T10:45:00"
    assert body["attendees"] == [{"email": "a@b.lk"}]
    assert body["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {"type": "hangoutsMeet"}


def test_event_without_conference_is_an_error(google_api):
    routes, _ = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(200, json={"id": "evt123"})
    start = datetime(2030, 5, 14, 10, 0)

    with pytest.raises(MeetingProvisionError):
        asyncio.run(google_meet_service.create_meet_event("token", "s", "d", start, start, []))


def test_non_json_calendar_response_is_an_error(google_api):
    routes, _ = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(200, text="<html>Service Unavailable</html>")
    start = datetime(2030, 5, 14, 10, 0)

    with pytest.raises(MeetingProvisionError):
        asyncio.run(google_meet_service.create_meet_event("token", "s", "d", start, start, []))


def test_calendar_error_status_is_an_error(google_api):
    routes, _ = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(403, json={"error": "forbidden"})
    start = datetime(2030, 5, 14, 10, 0)

    with pytest.raises(MeetingProvisionError):
        asyncio.run(google_meet_service.create_meet_event("token", "s", "d", start, start, []))


@pytest.mark.parametrize("status,expected", [(204, True), (410, True), (500, False)])
def test_delete_meet_event(google_api, status, expected):
    routes, _ = google_api
    routes[("DELETE", f"{EVENTS_PATH}/evt123")] = lambda request: httpx.Response(status)

    assert asyncio.run(google_meet_service.delete_meet_event("token", "evt123")) is expected


def test_provision_uses_first_linked_organizer(db, google_account, online_session, therapist, patient_user, google_api):
    routes, _ = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(
        200, json={"id": "evt1", "hangoutLink": "https://meet.google.com/xyz"}
    )

    link, event_id, owner = asyncio.run(
        google_meet_service.provision_meeting_link(
            db, online_session, [patient_user.id, therapist.user_id], ["x@y.lk"], "s", "d"
        )
    )

    assert (link, event_id, owner) == ("https://meet.google.com/xyz", "evt1", therapist.user_id)


def test_provision_falls_back_when_nobody_linked_google(db, online_session, patient_user, google_api):
    _, seen = google_api

    link, event_id, owner = asyncio.run(
        google_meet_service.provision_meeting_link(db, online_session, [patient_user.id, None], [], "s", "d")
    )

    assert link.startswith("https://sparks.test/meeting/")
    assert event_id is None
    assert owner is None
    assert seen == []


def test_provision_falls_back_when_google_fails(db, google_account, online_session, therapist, google_api):
    routes, _ = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(500, text="backend error")

    link, event_id, owner = asyncio.run(
        google_meet_service.provision_meeting_link(db, online_session, [therapist.user_id], [], "s", "d")
    )

    assert link.endswith(f"?session={online_session.id}")
    assert event_id is None
    assert owner is None


def test_cancel_session_event_uses_calendar_owner(db, google_account, online_session, therapist, google_api):
    routes, seen = google_api
    routes[("DELETE", f"{EVENTS_PATH}/evt9")] = lambda request: httpx.Response(204)
    online_session.calendar_event_id = "evt9"
    online_session.calendar_owner_user_id = therapist.user_id
    db.commit()

    assert asyncio.run(google_meet_service.cancel_session_event(db, online_session)) is True
    assert seen[0].headers["Authorization"] == "Bearer cached-access-token"


def test_cancel_session_event_without_owner_account(db, online_session, google_api):
    online_session.calendar_event_id = "evt9"
    db.commit()

    assert asyncio.run(google_meet_service.cancel_session_event(db, online_session)) is False


def test_provision_falls_back_on_unreadable_calendar_response(
    db, google_account, online_session, therapist, google_api
):
    routes, _ = google_api
    routes[("POST", EVENTS_PATH)] = lambda request: httpx.Response(200, text="<html>Service Unavailable</html>")

    link, event_id, owner = asyncio.run(
        google_meet_service.provision_meeting_link(db, online_session, [therapist.user_id], [], "s", "d")
    )

    assert link.startswith("https://sparks.test/meeting/")
    assert (event_id, owner) == (None, None)
