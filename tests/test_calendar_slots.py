from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from src.backend.app.calendar_slots import business_hour_slots, date_anchor, format_slot, offer_text

NY = ZoneInfo("America/New_York")


def test_slots_are_hourly_business_hours_and_skip_busy():
    now = datetime(2026, 10, 19, 10, 30, tzinfo=NY)  # Monday
    busy = [(datetime(2026, 10, 19, 13, 0, tzinfo=NY), datetime(2026, 10, 19, 14, 0, tzinfo=NY))]
    slots = business_hour_slots(now, now + timedelta(days=1), busy, now, "America/New_York")
    starts = [datetime.fromisoformat(s["start"]) for s in slots]
    assert starts[0] == datetime(2026, 10, 19, 11, 0, tzinfo=NY)
    assert datetime(2026, 10, 19, 13, 0, tzinfo=NY) not in starts
    assert all(9 <= s.hour < 17 and s.minute == 0 for s in starts)
    assert all(s > now for s in starts)
    # Monday 11,12,14,15,16 then Tuesday 9,10
    assert len(starts) == 7
    assert slots[0]["formatted"] == "Monday, October 19 at 11:00 AM"


def test_weekend_rolls_to_monday():
    now = datetime(2026, 10, 24, 12, 0, tzinfo=NY)  # Saturday
    slots = business_hour_slots(now, now + timedelta(days=2), [], now, "America/New_York")
    starts = [datetime.fromisoformat(s["start"]) for s in slots]
    assert starts and all(s.weekday() == 0 for s in starts)
    assert starts[0].hour == 9


def test_format_slot_and_offer_text():
    assert format_slot(datetime(2026, 10, 19, 14, 0)) == "Monday, October 19 at 2:00 PM"
    assert format_slot(datetime(2026, 10, 19, 0, 15)) == "Monday, October 19 at 12:15 AM"
    text = offer_text([{"formatted": "A"}, {"formatted": "B"}])
    assert text == "Great! I have availability at: A, B. Which time works best for you?"


def test_date_anchor_requests():
    now = datetime(2027, 1, 31, 8, 0, tzinfo=NY)
    assert date_anchor("today", now) == now
    assert date_anchor("tomorrow", now) == now + timedelta(days=1)
    assert date_anchor("next week", now) == now + timedelta(days=7)
    assert date_anchor("next month", now).date().isoformat() == "2027-02-28"
    assert date_anchor(None, now) == now
