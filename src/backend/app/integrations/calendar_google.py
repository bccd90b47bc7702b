from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import urlencode
import time
import os
import logging
import datetime as _dt
import httpx
from sqlalchemy.orm import Session
from .. import models as dbm
from ..crypto import decrypt_text, encrypt_text

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"
SCOPES = ["https://www.googleapis.com/auth/calendar"]


def _google_oauth_creds() -> tuple[str, str]:
    return os.getenv("GOOGLE_CLIENT_ID", ""), os.getenv("GOOGLE_CLIENT_SECRET", "")


def _redirect_uri() -> str:
    return os.getenv("GOOGLE_REDIRECT_URI", "") or (os.getenv("APP_ORIGIN", "http://localhost:8000").rstrip("/") + "/calendar/oauth/callback")


def authorization_url(state: str) -> str:
    client_id, _ = _google_oauth_creds()
    if not client_id:
        raise RuntimeError("google not configured")
    params = {
        "client_id": client_id,
        "redirect_uri": _redirect_uri(),
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    return f"{AUTH_URL}?{urlencode(params)}"


def get_account(db: Session, tenant_id: str) -> Optional[dbm.CalendarAccount]:
    return (
        db.query(dbm.CalendarAccount)
        .filter(dbm.CalendarAccount.tenant_id == tenant_id, dbm.CalendarAccount.provider == "google")
        .order_by(dbm.CalendarAccount.id.desc())
        .first()
    )


def is_connected(db: Session, tenant_id: str) -> bool:
    acct = get_account(db, tenant_id)
    return bool(acct and (acct.access_token_enc or acct.refresh_token_enc))


def exchange_code(db: Session, tenant_id: str, code: str) -> Dict[str, Any]:
    client_id, client_secret = _google_oauth_creds()
    if not (client_id and client_secret):
        raise RuntimeError("google not configured")
    data = {
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": _redirect_uri(),
        "grant_type": "authorization_code",
    }
    r = httpx.post(TOKEN_URL, data=data, timeout=15)
    r.raise_for_status()
    j = r.json()
    acct = get_account(db, tenant_id)
    if acct is None:
        acct = dbm.CalendarAccount(tenant_id=tenant_id, provider="google")
        db.add(acct)
    acct.access_token_enc = encrypt_text(str(j.get("access_token") or ""))
    # Google only returns a refresh token on first consent; keep the old one otherwise
    if j.get("refresh_token"):
        acct.refresh_token_enc = encrypt_text(str(j["refresh_token"]))
    acct.expires_at = int(time.time()) + int(j.get("expires_in") or 3600)
    db.commit()
    return {"connected": True, "expires_at": acct.expires_at}


def disconnect(db: Session, tenant_id: str) -> int:
    n = (
        db.query(dbm.CalendarAccount)
        .filter(dbm.CalendarAccount.tenant_id == tenant_id, dbm.CalendarAccount.provider == "google")
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(n)


def ensure_access_token(db: Session, tenant_id: str) -> Optional[str]:
    acct = get_account(db, tenant_id)
    if acct is None:
        return None
    access = decrypt_text(acct.access_token_enc or "") or ""
    now = int(time.time())
    exp = int(acct.expires_at or 0)
    if access and exp and (exp - now) > 60:
        return access
    client_id, client_secret = _google_oauth_creds()
    rt = decrypt_text(acct.refresh_token_enc or "") or ""
    if not (client_id and client_secret and rt):
        return access or None
    data = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "refresh_token",
        "refresh_token": rt,
    }
    try:
        r = httpx.post(TOKEN_URL, data=data, timeout=15)
    except httpx.HTTPError:
        logger.warning("google_token_refresh_failed", extra={"tenant_id": tenant_id})
        return access or None
    if r.status_code != 200:
        logger.warning("google_token_refresh_rejected", extra={"tenant_id": tenant_id, "status": r.status_code})
        return access or None
    j = r.json()
    at = str(j.get("access_token") or "")
    if not at:
        return access or None
    acct.access_token_enc = encrypt_text(at)
    acct.expires_at = int(time.time()) + int(j.get("expires_in") or 3600)
    db.commit()
    return at


def _rfc3339(value: _dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    return value.astimezone(_dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_ts(val: str) -> _dt.datetime:
    return _dt.datetime.fromisoformat(val.replace("Z", "+00:00"))


def free_busy(db: Session, tenant_id: str, start: _dt.datetime, end: _dt.datetime) -> List[Tuple[_dt.datetime, _dt.datetime]]:
    """Busy intervals on the primary calendar. Raises RuntimeError when not connected."""
    at = ensure_access_token(db, tenant_id)
    if not at:
        raise RuntimeError("calendar not connected")
    body = {"timeMin": _rfc3339(start), "timeMax": _rfc3339(end), "items": [{"id": "primary"}]}
    r = httpx.post(
        f"{CALENDAR_API}/freeBusy",
        headers={"Authorization": f"Bearer {at}", "Content-Type": "application/json"},
        json=body,
        timeout=20,
    )
    r.raise_for_status()
    cal = ((r.json() or {}).get("calendars") or {}).get("primary") or {}
    out: List[Tuple[_dt.datetime, _dt.datetime]] = []
    for b in cal.get("busy") or []:
        try:
            out.append((_parse_ts(b["start"]), _parse_ts(b["end"])))
        except (KeyError, ValueError):
            continue
    return out


def insert_event(
    db: Session,
    tenant_id: str,
    summary: str,
    start: _dt.datetime,
    end: _dt.datetime,
    description: Optional[str] = None,
    attendee_email: Optional[str] = None,
    attendee_name: Optional[str] = None,
    tz: str = "America/New_York",
) -> Dict[str, Any]:
    """Create an event on the primary calendar. Returns {status, id?, error?}."""
    at = ensure_access_token(db, tenant_id)
    if not at:
        return {"status": "error", "error": "no_access_token"}
    body: Dict[str, Any] = {
        "summary": summary or "Appointment",
        "start": {"dateTime": start.isoformat(), "timeZone": tz},
        "end": {"dateTime": end.isoformat(), "timeZone": tz},
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": 24 * 60},
                {"method": "popup", "minutes": 30},
            ],
        },
    }
    if description:
        body["description"] = description
    if attendee_email:
        attendee: Dict[str, Any] = {"email": attendee_email}
        if attendee_name:
            attendee["displayName"] = attendee_name
        body["attendees"] = [attendee]
    try:
        r = httpx.post(
            f"{CALENDAR_API}/calendars/primary/events",
            headers={"Authorization": f"Bearer {at}", "Content-Type": "application/json"},
            params={"sendUpdates": "all" if attendee_email else "none"},
            json=body,
            timeout=20,
        )
        if r.status_code >= 400:
            return {"status": "error", "error": f"google_http_{r.status_code}", "detail": (r.text or "")[:200]}
        return {"status": "ok", "id": str((r.json() or {}).get("id") or ""), "html_link": (r.json() or {}).get("htmlLink")}
    except httpx.HTTPError as e:
        return {"status": "error", "error": str(e)[:160]}
