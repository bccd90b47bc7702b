import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

ORDINALS = {
    "first": 0, "1st": 0, "earliest": 0,
    "second": 1, "2nd": 1,
    "third": 2, "3rd": 2,
    "last": -1, "latest": -1,
}

WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5,
    "sunday": 6,
}

_MERIDIEM = r"(a\.?m\.?|p\.?m\.?)"
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\s*" + _MERIDIEM + r"?(?![\w])", re.IGNORECASE)
_HOUR_AMPM_RE = re.compile(r"\b(\d{1,2})\s*" + _MERIDIEM + r"(?![\w])", re.IGNORECASE)
_HMM_RE = re.compile(r"\b(\d{1,2})(\d{2})\s*" + _MERIDIEM + r"?(?![\w])", re.IGNORECASE)
_AT_HOUR_RE = re.compile(r"\bat\s+(\d{1,2})\b(?!\s*[:\d])", re.IGNORECASE)
_NOON_RE = re.compile(r"\bnoon\b", re.IGNORECASE)


def bare_hour_to_24(hour: int) -> int:
    """Hours without am/pm: 1-7 are afternoon, 8-11 morning, 12 is noon."""
    if 1 <= hour <= 7:
        return hour + 12
    return hour


def _to_24(hour: int, meridiem: Optional[str]) -> Optional[int]:
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        pm = meridiem.lower().startswith("p")
        if pm and hour < 12:
            return hour + 12
        if not pm and hour == 12:
            return 0
        return hour
    if 13 <= hour <= 23 or hour == 0:
        return hour
    if 1 <= hour <= 12:
        return bare_hour_to_24(hour)
    return None


def _clock(text: str) -> Optional[tuple]:
    if _NOON_RE.search(text):
        return 12, 0
    m = _CLOCK_RE.search(text)
    if m:
        minute = int(m.group(2))
        hour = _to_24(int(m.group(1)), m.group(3))
        if hour is not None and minute < 60:
            return hour, minute
    m = _HOUR_AMPM_RE.search(text)
    if m:
        hour = _to_24(int(m.group(1)), m.group(2))
        if hour is not None:
            return hour, 0
    m = _HMM_RE.search(text)
    if m:
        h, minute = int(m.group(1)), int(m.group(2))
        # 930 / 1030; HMM forms only cover 12-hour clock values
        if 1 <= h <= 12 and minute < 60:
            hour = _to_24(h, m.group(3))
            if hour is not None:
                return hour, minute
    m = _AT_HOUR_RE.search(text)
    if m:
        hour = _to_24(int(m.group(1)), None)
        if hour is not None:
            return hour, 0
    return None


def parse_time_reference(text: str) -> Optional[Dict[str, Any]]:
    """Pull a time choice out of a free-text reply.

    Returns {"hour", "minute", "ordinal", "weekday", "day"} with None for the
    parts that were not mentioned, or None when nothing was recognized.
    """
    if not text:
        return None
    lower = text.lower()
    ref: Dict[str, Any] = {"hour": None, "minute": None, "ordinal": None, "weekday": None, "day": None}
    found = False

    clock = _clock(lower)
    if clock:
        ref["hour"], ref["minute"] = clock
        found = True

    for word, idx in ORDINALS.items():
        if re.search(rf"\b{re.escape(word)}\b", lower):
            ref["ordinal"] = idx
            found = True
            break

    for word, idx in WEEKDAYS.items():
        if re.search(rf"\b{word}\b", lower):
            ref["weekday"] = idx
            found = True
            break

    if re.search(r"\btomorrow\b", lower):
        ref["day"] = "tomorrow"
        found = True
    elif re.search(r"\btoday\b", lower):
        ref["day"] = "today"
        found = True

    return ref if found else None


def _slot_start(slot: Dict[str, Any]) -> datetime:
    return datetime.fromisoformat(slot["start"])


def match_slot(text: str, slots: Sequence[Dict[str, Any]], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Resolve a reply against the offered slots; None when it does not pick one."""
    if not slots:
        return None
    ref = parse_time_reference(text)
    if ref is None:
        return None
    if ref["ordinal"] is not None and ref["hour"] is None:
        idx = ref["ordinal"]
        if -len(slots) <= idx < len(slots):
            return slots[idx]
        return None
    if ref["hour"] is None:
        return None
    now = now or datetime.now(timezone.utc)
    candidates = []
    for slot in slots:
        start = _slot_start(slot)
        if start.hour != ref["hour"]:
            continue
        if (ref["minute"] or 0) != start.minute:
            continue
        if ref["weekday"] is not None and start.weekday() != ref["weekday"]:
            continue
        if ref["day"] is not None:
            local_today = now.astimezone(start.tzinfo).date() if start.tzinfo else now.date()
            offset = 0 if ref["day"] == "today" else 1
            if (start.date() - local_today).days != offset:
                continue
        candidates.append(slot)
    if not candidates:
        return None
    return min(candidates, key=_slot_start)
