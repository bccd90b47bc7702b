from datetime import datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from src.backend.app import models as dbm
from src.backend.app.calendar_slots import TenantCalendar
from src.backend.app.crypto import sign_state
from src.backend.app.integrations import calendar_google as gcal

NY = ZoneInfo("America/New_York")
NOW = datetime(2026, 10, 19, 10, 30, tzinfo=NY)  # Monday


class FakeGoogle:
    def __init__(self, busy=None):
        self.busy = list(busy or [])
        self.calls = []

    def post(self, url, **kw):
        self.calls.append((url, kw))
        req = httpx.Request("POST", url)
        if url == gcal.TOKEN_URL:
            return httpx.Response(200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}, request=req)
        if url.endswith("/freeBusy"):
            return httpx.Response(200, json={"calendars": {"primary": {"busy": self.busy}}}, request=req)
        if url.endswith("/events"):
            return httpx.Response(200, json={"id": "ev123", "htmlLink": "https://calendar.example/ev123"}, request=req)
        return httpx.Response(404, request=req)


@pytest.fixture
def google(monkeypatch):
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "csecret")
    fake = FakeGoogle()
    monkeypatch.setattr(gcal.httpx, "post", fake.post)
    return fake


@pytest.fixture
def connected(db, google):
    gcal.exchange_code(db, "t1", "code-1")
    return google


def test_oauth_callback_connects(client, headers, google):
    r = client.get(
        "/calendar/oauth/callback",
        params={"code": "abc", "state": sign_state("t1")},
        follow_redirects=False,
    )
    assert r.status_code in (302, 307)
    assert r.headers["location"].endswith("/settings?calendar=connected")
    assert google.calls[0][1]["data"]["grant_type"] == "authorization_code"
    assert client.get("/calendar/status", headers=headers).json()["connected"] is True


def test_oauth_callback_rejects_bad_state(client, google):
    r = client.get("/calendar/oauth/callback", params={"code": "abc", "state": "forged"}, follow_redirects=False)
    assert r.status_code == 400


def test_oauth_callback_error_redirects(client):
    r = client.get("/calendar/oauth/callback", params={"error": "access_denied"}, follow_redirects=False)
    assert r.headers["location"].endswith("/settings?calendar=error")


def test_tokens_are_stored_encrypted(db, connected):
    acct = gcal.get_account(db, "t1")
    assert acct.access_token_enc and "at-1" not in acct.access_token_enc
    assert gcal.ensure_access_token(db, "t1") == "at-1"


def test_available_slots_skip_busy(db, connected):
    connected.busy = [{"start": "2026-10-19T15:00:00Z", "end": "2026-10-19T16:00:00Z"}]
    slots = TenantCalendar(db, "t1").available_slots("today", now=NOW, limit=3)
    starts = [datetime.fromisoformat(s["start"]).astimezone(NY).hour for s in slots]
    assert starts == [12, 13, 14]
    url, kw = connected.calls[-1]
    assert url.endswith("/freeBusy")
    assert kw["headers"]["Authorization"] == "Bearer at-1"


def test_book_taken_slot_offers_alternatives(db, connected):
    connected.busy = [{"start": "2026-10-19T15:00:00Z", "end": "2026-10-19T16:00:00Z"}]
    slot = {"start": "2026-10-19T11:00:00-04:00", "end": "2026-10-19T12:00:00-04:00"}
    res = TenantCalendar(db, "t1").book_slot(slot, now=NOW)
    assert res["status"] == "slot_taken"
    assert res["alternatives"][0]["start"].startswith("2026-10-19T12:00")
    assert db.query(dbm.CalendarEvent).count() == 0


def test_book_free_slot_creates_event(db, connected):
    slot = {"start": "2026-10-19T14:00:00-04:00", "end": "2026-10-19T15:00:00-04:00"}
    res = TenantCalendar(db, "t1").book_slot(slot, attendee_email="dana@example.com", attendee_name="Dana", lead_id=7)
    assert res["status"] == "booked"
    assert res["event_id"] == "ev123"
    assert res["formatted"] == "Monday, October 19 at 2:00 PM"
    url, kw = connected.calls[-1]
    assert url.endswith("/calendars/primary/events")
    assert kw["json"]["attendees"] == [{"email": "dana@example.com", "displayName": "Dana"}]
    assert kw["params"] == {"sendUpdates": "all"}
    row = db.query(dbm.CalendarEvent).one()
    assert row.lead_id == 7 and row.google_event_id == "ev123"


def test_slots_route_requires_connection(client, headers):
    r = client.post("/calendar/slots", headers=headers, json={})
    assert r.status_code == 400
    assert r.json()["detail"] == "calendar_not_connected"


def test_flow_test_response_picks_time_without_booking(client, headers, db, connected):
    slot = {
        "start": "2026-10-19T14:00:00-04:00",
        "end": "2026-10-19T15:00:00-04:00",
        "formatted": "Monday, October 19 at 2:00 PM",
    }
    r = client.post(
        "/flows/test-response",
        headers=headers,
        json={
            "message": "the first one",
            "requires_call": True,
            "status": "awaiting_time",
            "offered_slots": [slot],
        },
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "booked"
    assert body["reply"] == "You're all set for Monday, October 19 at 2:00 PM. Talk to you then!"
    assert db.query(dbm.CalendarEvent).count() == 0
    assert not [url for url, _ in connected.calls if url.endswith("/events")]
