"""Availability and booking over a tenant's Google Calendar.

Slots are one hour long, on the hour, 09:00-17:00 local time, Monday to
Friday, and always strictly in the future. A slot is a plain dict:

    {"start": "2026-01-05T09:00:00-05:00", "end": "...", "formatted": "Monday, January 5 at 9:00 AM"}

`start`/`end` carry the tenant's UTC offset so the local wall clock can be
recovered with `datetime.fromisoformat`.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Sequence, Tuple
import logging

import httpx
from sqlalchemy.orm import Session

from . import models as dbm
from .events import emit_event
from .metrics_counters import BOOKINGS
from .quiet_hours import get_zone, DEFAULT_TZ
from .integrations import calendar_google as gcal

logger = logging.getLogger(__name__)

BUSINESS_START_HOUR = 9
BUSINESS_END_HOUR = 17
SLOT_MINUTES = 60
WINDOW_DAYS = 5
MAX_SLOTS = 5

Busy = Tuple[datetime, datetime]


def format_slot(dt: datetime) -> str:
    hour12 = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{dt.strftime('%A, %B')} {dt.day} at {hour12}:{dt.minute:02d} {suffix}"


def slot_start(slot: Dict[str, Any]) -> datetime:
    return datetime.fromisoformat(slot["start"])


def _overlaps(start: datetime, end: datetime, busy: Sequence[Busy]) -> bool:
    return any(start < b_end and end > b_start for b_start, b_end in busy)


def business_hour_slots(
    start: datetime,
    end: datetime,
    busy: Sequence[Busy],
    now: datetime,
    tz: str = DEFAULT_TZ,
) -> List[Dict[str, Any]]:
    zone = get_zone(tz)
    cursor = start.astimezone(zone)
    if cursor.minute or cursor.second or cursor.microsecond:
        cursor = cursor.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    limit = end.astimezone(zone)
    step = timedelta(minutes=SLOT_MINUTES)
    slots: List[Dict[str, Any]] = []
    while cursor < limit:
        if cursor.weekday() >= 5 or cursor.hour >= BUSINESS_END_HOUR:
            nxt = cursor + timedelta(days=1)
            cursor = datetime(nxt.year, nxt.month, nxt.day, BUSINESS_START_HOUR, tzinfo=zone)
            continue
        if cursor.hour < BUSINESS_START_HOUR:
            cursor = datetime(cursor.year, cursor.month, cursor.day, BUSINESS_START_HOUR, tzinfo=zone)
            continue
        slot_end = cursor + step
        if slot_end.hour <= BUSINESS_END_HOUR and cursor > now and not _overlaps(cursor, slot_end, busy):
            slots.append({"start": cursor.isoformat(), "end": slot_end.isoformat(), "formatted": format_slot(cursor)})
        cursor = slot_end
    return slots


def date_anchor(request: Optional[str], now: datetime) -> datetime:
    """'today' | 'tomorrow' | 'next week' | 'next month'; anything else means now."""
    lower = (request or "").lower()
    if "tomorrow" in lower:
        return now + timedelta(days=1)
    if "next week" in lower:
        return now + timedelta(days=7)
    if "next month" in lower:
        month = now.month % 12 + 1
        year = now.year + (1 if now.month == 12 else 0)
        day = now.day
        while True:
            try:
                return now.replace(year=year, month=month, day=day)
            except ValueError:
                day -= 1
    return now


def offer_text(slots: Sequence[Dict[str, Any]]) -> str:
    times = ", ".join(s["formatted"] for s in slots)
    return f"Great! I have availability at: {times}. Which time works best for you?"


NO_AVAILABILITY_TEXT = "I apologize, but I'm unable to access my calendar at the moment. Please try again shortly."


class TenantCalendar:
    """Calendar operations bound to one tenant's Google account."""

    def __init__(self, db: Session, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id
        user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
        self.tz = (user.timezone if user and user.timezone else DEFAULT_TZ)

    def connected(self) -> bool:
        return gcal.is_connected(self.db, self.tenant_id)

    def status(self) -> Dict[str, Any]:
        acct = gcal.get_account(self.db, self.tenant_id)
        return {
            "connected": self.connected(),
            "provider": "google",
            "expires_at": acct.expires_at if acct else None,
            "timezone": self.tz,
        }

    def busy(self, start: datetime, end: datetime) -> List[Busy]:
        return gcal.free_busy(self.db, self.tenant_id, start, end)

    def available_slots(
        self,
        date_requested: Optional[str] = "today",
        now: Optional[datetime] = None,
        limit: int = MAX_SLOTS,
    ) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        start = date_anchor(date_requested, now)
        end = start + timedelta(days=WINDOW_DAYS)
        busy = self.busy(start, end)
        return business_hour_slots(start, end, busy, now, self.tz)[:limit]

    def book_slot(
        self,
        slot: Dict[str, Any],
        summary: str = "Call with Client",
        description: Optional[str] = None,
        lead_id: Optional[int] = None,
        attendee_email: Optional[str] = None,
        attendee_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        start = datetime.fromisoformat(slot["start"])
        end = datetime.fromisoformat(slot["end"]) if slot.get("end") else start + timedelta(minutes=SLOT_MINUTES)
        # best effort: the slot may have been taken since it was offered
        try:
            conflict = _overlaps(start, end, self.busy(start, end))
        except (RuntimeError, httpx.HTTPError):
            logger.warning("calendar_recheck_failed", extra={"tenant_id": self.tenant_id})
            BOOKINGS.labels(status="error").inc()
            return {"status": "error", "error": "calendar_unavailable"}
        if conflict:
            BOOKINGS.labels(status="slot_taken").inc()
            try:
                alternatives = self.available_slots("today", now=now, limit=3)
            except (RuntimeError, httpx.HTTPError):
                alternatives = []
            return {"status": "slot_taken", "alternatives": alternatives}
        res = gcal.insert_event(
            self.db,
            self.tenant_id,
            summary,
            start,
            end,
            description=description or "Scheduled call from conversation flow",
            attendee_email=attendee_email,
            attendee_name=attendee_name,
            tz=self.tz,
        )
        if res.get("status") != "ok":
            BOOKINGS.labels(status="error").inc()
            return {"status": "error", "error": res.get("error", "insert_failed")}
        row = dbm.CalendarEvent(
            tenant_id=self.tenant_id,
            lead_id=lead_id,
            google_event_id=res.get("id"),
            summary=summary,
            description=description,
            start_time=start.isoformat(),
            end_time=end.isoformat(),
            attendee_email=attendee_email,
            attendee_name=attendee_name,
        )
        self.db.add(row)
        self.db.commit()
        BOOKINGS.labels(status="booked").inc()
        emit_event(
            "AppointmentBooked",
            {"tenant_id": self.tenant_id, "lead_id": lead_id, "start": start.isoformat(), "event_id": res.get("id")},
        )
        return {
            "status": "booked",
            "event_id": res.get("id"),
            "html_link": res.get("html_link"),
            "start": start.isoformat(),
            "end": end.isoformat(),
            "formatted": format_slot(start.astimezone(get_zone(self.tz))),
        }


class DryRunCalendar(TenantCalendar):
    """Reads the tenant's real availability but never writes an event."""

    def book_slot(self, slot: Dict[str, Any], now: Optional[datetime] = None, **kwargs) -> Dict[str, Any]:
        start = datetime.fromisoformat(slot["start"])
        end = datetime.fromisoformat(slot["end"]) if slot.get("end") else start + timedelta(minutes=SLOT_MINUTES)
        return {
            "status": "booked",
            "event_id": None,
            "html_link": None,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "formatted": format_slot(start.astimezone(get_zone(self.tz))),
            "simulated": True,
        }
