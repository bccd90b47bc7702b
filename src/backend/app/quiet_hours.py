from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from . import models as dbm

DEFAULT_TZ = "America/New_York"


@dataclass
class QuietHours:
    enabled: bool = True
    start: int = 21  # local hour the window opens
    end: int = 9  # local hour sending resumes
    tz: str = DEFAULT_TZ

    @property
    def zone(self) -> ZoneInfo:
        return get_zone(self.tz)


def get_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TZ)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TZ)


def for_tenant(db: Session, tenant_id: str) -> QuietHours:
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    if user is None:
        return QuietHours()
    return QuietHours(
        enabled=bool(user.quiet_hours_enabled),
        start=int(user.quiet_hours_start if user.quiet_hours_start is not None else 21),
        end=int(user.quiet_hours_end if user.quiet_hours_end is not None else 9),
        tz=user.timezone or DEFAULT_TZ,
    )


def hour_in_window(hour: int, start: int, end: int) -> bool:
    if start == end:
        return False
    if start > end:
        # window wraps midnight (21 -> 9)
        return hour >= start or hour < end
    return start <= hour < end


def is_quiet(epoch: int, qh: QuietHours) -> bool:
    if not qh.enabled:
        return False
    local = datetime.fromtimestamp(int(epoch), tz=timezone.utc).astimezone(qh.zone)
    return hour_in_window(local.hour, qh.start, qh.end)


def next_allowed(epoch: int, qh: QuietHours) -> int:
    """Return epoch unchanged outside quiet hours, else the next local `end` o'clock."""
    if not is_quiet(epoch, qh):
        return int(epoch)
    zone = qh.zone
    local = datetime.fromtimestamp(int(epoch), tz=timezone.utc).astimezone(zone)
    resume = local.replace(hour=qh.end, minute=0, second=0, microsecond=0)
    if resume <= local:
        resume = resume + timedelta(days=1)
    # re-anchor through the zone so DST transitions land on the wall clock hour
    resume = datetime(resume.year, resume.month, resume.day, qh.end, tzinfo=zone)
    return int(resume.timestamp())
