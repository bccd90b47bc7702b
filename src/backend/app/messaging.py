from typing import Dict, Any, List, Optional
import os
import json
import logging

import httpx
from sqlalchemy.orm import Session

from .events import emit_event
from .analytics import ph_capture
from .cache import breaker_allow, breaker_on_result
from .errors import Blocked, NotFound, ProviderError
from .leads import normalize_phone
from .metrics_counters import MESSAGES
from .points import calculate_sms_credits, spend_points, refund_points
from . import models as dbm
from .integrations.sms_twilio import (
    twilio_send_sms,
    twilio_search_numbers,
    twilio_purchase_number,
    twilio_release_number,
)
from .integrations.sms_telnyx import (
    telnyx_send_sms,
    telnyx_search_numbers,
    telnyx_purchase_number,
    telnyx_release_number,
)

logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS = {"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"}
OPT_IN_KEYWORDS = {"START", "UNSTOP"}

PROVIDERS = ("telnyx", "twilio")


def sms_provider(name: Optional[str] = None) -> str:
    p = (name or os.getenv("SMS_PROVIDER", "telnyx")).strip().lower()
    return p if p in PROVIDERS else "telnyx"


def keyword(body: Optional[str]) -> str:
    return " ".join((body or "").strip().upper().split()).strip(".!")


# --- DNC -------------------------------------------------------------------

def is_dnc(db: Session, tenant_id: str, phone: Optional[str]) -> bool:
    if not phone:
        return False
    return (
        db.query(dbm.DncEntry)
        .filter(dbm.DncEntry.tenant_id == tenant_id, dbm.DncEntry.phone == phone)
        .first()
        is not None
    )


def add_dnc(db: Session, tenant_id: str, phone: str, reason: Optional[str] = None, source: str = "manual") -> bool:
    """Returns True when the number was newly added."""
    e164 = normalize_phone(phone)
    if not e164:
        raise ValueError("invalid_phone")
    if is_dnc(db, tenant_id, e164):
        return False
    db.add(dbm.DncEntry(tenant_id=tenant_id, phone=e164, reason=reason, source=source))
    db.commit()
    emit_event("DncAdded", {"tenant_id": tenant_id, "phone": e164, "source": source})
    return True


def bulk_add_dnc(db: Session, tenant_id: str, phones: List[str], reason: Optional[str] = None) -> Dict[str, int]:
    added = skipped = 0
    seen = set()
    for raw in phones or []:
        e164 = normalize_phone(raw)
        if not e164 or e164 in seen or is_dnc(db, tenant_id, e164):
            skipped += 1
            continue
        seen.add(e164)
        db.add(dbm.DncEntry(tenant_id=tenant_id, phone=e164, reason=reason, source="import"))
        added += 1
    db.commit()
    if added:
        emit_event("DncAdded", {"tenant_id": tenant_id, "count": added, "source": "import"})
    return {"added": added, "skipped": skipped}


def remove_dnc(db: Session, tenant_id: str, phone: str) -> bool:
    e164 = normalize_phone(phone) or phone
    n = (
        db.query(dbm.DncEntry)
        .filter(dbm.DncEntry.tenant_id == tenant_id, dbm.DncEntry.phone == e164)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(n)


def list_dnc(db: Session, tenant_id: str, limit: int = 500) -> List[Dict[str, Any]]:
    rows = (
        db.query(dbm.DncEntry)
        .filter(dbm.DncEntry.tenant_id == tenant_id)
        .order_by(dbm.DncEntry.id.desc())
        .limit(max(1, min(int(limit), 5000)))
        .all()
    )
    return [{"phone": r.phone, "reason": r.reason, "source": r.source, "created_at": r.created_at} for r in rows]


# --- numbers ---------------------------------------------------------------

def resolve_from_number(db: Session, tenant_id: str) -> Optional[str]:
    row = (
        db.query(dbm.PhoneNumber)
        .filter(dbm.PhoneNumber.tenant_id == tenant_id, dbm.PhoneNumber.status == "active")
        .order_by(dbm.PhoneNumber.id.asc())
        .first()
    )
    if row is not None:
        return row.phone_number
    return os.getenv("TWILIO_FROM_NUMBER") or None


def tenant_for_number(db: Session, number: Optional[str]) -> Optional[str]:
    e164 = normalize_phone(number)
    if not e164:
        return None
    row = (
        db.query(dbm.PhoneNumber)
        .filter(dbm.PhoneNumber.phone_number == e164, dbm.PhoneNumber.status == "active")
        .first()
    )
    return row.tenant_id if row else None


def list_numbers(db: Session, tenant_id: str) -> List[Dict[str, Any]]:
    rows = (
        db.query(dbm.PhoneNumber)
        .filter(dbm.PhoneNumber.tenant_id == tenant_id, dbm.PhoneNumber.status == "active")
        .order_by(dbm.PhoneNumber.id.asc())
        .all()
    )
    return [
        {"id": r.id, "phone_number": r.phone_number, "provider": r.provider, "status": r.status, "created_at": r.created_at}
        for r in rows
    ]


def search_numbers(area_code: Optional[str] = None, provider: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    if sms_provider(provider) == "twilio":
        return twilio_search_numbers(area_code=area_code, limit=limit)
    return telnyx_search_numbers(area_code=area_code, limit=limit)


def purchase_number(db: Session, tenant_id: str, phone_number: str, provider: Optional[str] = None) -> Dict[str, Any]:
    e164 = normalize_phone(phone_number)
    if not e164:
        raise ValueError("invalid_phone")
    p = sms_provider(provider)
    if p == "twilio":
        res = twilio_purchase_number(e164)
    else:
        res = telnyx_purchase_number(e164, customer_reference=tenant_id)
    row = dbm.PhoneNumber(tenant_id=tenant_id, phone_number=e164, provider=p, provider_id=res.get("provider_id"))
    db.add(row)
    db.commit()
    db.refresh(row)
    emit_event("NumberPurchased", {"tenant_id": tenant_id, "phone": e164, "provider": p})
    return {"id": row.id, "phone_number": e164, "provider": p, "status": row.status}


def release_number(db: Session, tenant_id: str, phone_number: str) -> Dict[str, Any]:
    e164 = normalize_phone(phone_number) or phone_number
    row = (
        db.query(dbm.PhoneNumber)
        .filter(
            dbm.PhoneNumber.tenant_id == tenant_id,
            dbm.PhoneNumber.phone_number == e164,
            dbm.PhoneNumber.status == "active",
        )
        .first()
    )
    if row is None:
        raise NotFound("number_not_found")
    if row.provider == "twilio":
        twilio_release_number(row.provider_id or "")
    else:
        telnyx_release_number(e164)
    row.status = "released"
    db.commit()
    emit_event("NumberReleased", {"tenant_id": tenant_id, "phone": e164})
    return {"status": "released", "phone_number": e164}


# --- sending ---------------------------------------------------------------

def _dead_letter(db: Session, tenant_id: str, provider: str, reason: str, payload: Dict[str, Any]) -> None:
    try:
        db.add(
            dbm.DeadLetter(
                tenant_id=tenant_id,
                provider=f"sms:{provider}",
                reason=reason[:255],
                attempts=1,
                payload=json.dumps(payload, default=str),
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("dead_letter_write_failed", extra={"tenant_id": tenant_id})


def _provider_send(provider: str, to: str, body: str, from_number: Optional[str], media_urls: Optional[List[str]]) -> Dict[str, Any]:
    if provider == "twilio":
        return twilio_send_sms(to, body, from_number=from_number, media_urls=media_urls)
    return telnyx_send_sms(to, body, from_number=from_number, media_urls=media_urls)


def send_sms(
    db: Session,
    tenant_id: str,
    to: str,
    body: str,
    lead_id: Optional[int] = None,
    media_urls: Optional[List[str]] = None,
    automated: bool = False,
    source: Optional[str] = None,
    charge: bool = True,
) -> Dict[str, Any]:
    """Send one text for a tenant.

    Points are debited before the provider call and refunded when it fails.
    Raises Blocked for DNC/opted-out recipients, InsufficientPoints, and
    ProviderError once the failure has been recorded as a dead letter.
    """
    e164 = normalize_phone(to)
    if not e164:
        raise ValueError("invalid_phone")
    if not (body or "").strip() and not media_urls:
        raise ValueError("empty_message")
    if is_dnc(db, tenant_id, e164):
        emit_event("MessageFailed", {"tenant_id": tenant_id, "phone": e164, "failure_code": "dnc"})
        raise Blocked("recipient_on_dnc")
    lead_q = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id)
    lead = lead_q.filter(dbm.Lead.id == lead_id).first() if lead_id else lead_q.filter(dbm.Lead.phone == e164).first()
    if lead is not None and lead.opted_out:
        emit_event("MessageFailed", {"tenant_id": tenant_id, "lead_id": lead.id, "failure_code": "opted_out"})
        raise Blocked("recipient_opted_out")

    provider = sms_provider()
    from_number = resolve_from_number(db, tenant_id)
    credits = calculate_sms_credits(body or "", len(media_urls or []))["credits"] if charge else 0
    if credits:
        spend_points(db, tenant_id, credits, f"SMS to {e164}", action_type="sms_sent")

    payload = {"to": e164, "body": body, "from": from_number, "media_urls": media_urls or []}
    breaker = f"sms:{provider}"
    try:
        if not breaker_allow(breaker):
            raise RuntimeError("provider_circuit_open")
        res = _provider_send(provider, e164, body or "", from_number, media_urls)
        breaker_on_result(breaker, True)
    except (RuntimeError, httpx.HTTPError) as e:
        if not str(e).endswith("not configured") and str(e) != "provider_circuit_open":
            breaker_on_result(breaker, False)
        logger.warning("sms_send_failed", extra={"tenant_id": tenant_id, "provider": provider, "error": str(e)})
        if credits:
            refund_points(db, tenant_id, credits, f"Refund: failed SMS to {e164}")
        _dead_letter(db, tenant_id, provider, str(e) or "send_failed", payload)
        MESSAGES.labels(direction="outbound", status="failed").inc()
        db.add(
            dbm.Message(
                tenant_id=tenant_id,
                lead_id=lead.id if lead else None,
                phone=e164,
                from_number=from_number,
                direction="outbound",
                body=body,
                status="failed",
                provider=provider,
                is_automated=automated,
                automation_source=source,
                credits=0,
            )
        )
        db.commit()
        emit_event("MessageFailed", {"tenant_id": tenant_id, "phone": e164, "failure_code": "provider_error"})
        raise ProviderError("sms_send_failed", error=str(e))

    row = dbm.Message(
        tenant_id=tenant_id,
        lead_id=lead.id if lead else None,
        phone=e164,
        from_number=res.get("from") or from_number,
        direction="outbound",
        body=body,
        status=str(res.get("status") or "queued"),
        provider=provider,
        provider_id=res.get("provider_id") or None,
        is_automated=automated,
        automation_source=source,
        credits=credits,
    )
    db.add(row)
    if lead is not None and lead.status == "new":
        lead.status = "contacted"
    db.commit()
    db.refresh(row)
    MESSAGES.labels(direction="outbound", status="sent").inc()
    emit_event(
        "MessageSent",
        {"tenant_id": tenant_id, "message_id": row.id, "lead_id": row.lead_id, "provider": provider, "automated": automated},
    )
    ph_capture("sms.sent", tenant_id=tenant_id, properties={"provider": provider, "automated": automated, "source": source or ""})
    return {
        "status": row.status,
        "message_id": row.id,
        "provider_id": row.provider_id,
        "provider": provider,
        "credits": credits,
    }


def update_status(db: Session, provider_id: Optional[str], status: Optional[str]) -> bool:
    """Apply a delivery receipt. Unknown provider ids are ignored."""
    if not provider_id or not status:
        return False
    row = db.query(dbm.Message).filter(dbm.Message.provider_id == provider_id).first()
    if row is None:
        return False
    row.status = str(status).lower()[:16]
    db.commit()
    if row.status in {"failed", "undelivered", "delivery_failed"}:
        MESSAGES.labels(direction="outbound", status="undelivered").inc()
        emit_event("MessageFailed", {"tenant_id": row.tenant_id, "message_id": row.id, "failure_code": row.status})
    return True


def list_threads(db: Session, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """One entry per phone number, newest conversation first."""
    rows = (
        db.query(dbm.Message)
        .filter(dbm.Message.tenant_id == tenant_id)
        .order_by(dbm.Message.ts.desc(), dbm.Message.id.desc())
        .limit(5000)
        .all()
    )
    threads: Dict[str, Dict[str, Any]] = {}
    for m in rows:
        t = threads.get(m.phone)
        if t is None:
            t = threads[m.phone] = {
                "phone": m.phone,
                "lead_id": m.lead_id,
                "last_message": m.body,
                "last_direction": m.direction,
                "last_ts": m.ts,
                "message_count": 0,
                "unanswered": m.direction == "inbound",
            }
        t["message_count"] += 1
        if t["lead_id"] is None and m.lead_id is not None:
            t["lead_id"] = m.lead_id
    return list(threads.values())[: max(1, int(limit))]


def thread_messages(db: Session, tenant_id: str, phone: str, limit: int = 50) -> List[Dict[str, Any]]:
    e164 = normalize_phone(phone) or phone
    rows = (
        db.query(dbm.Message)
        .filter(dbm.Message.tenant_id == tenant_id, dbm.Message.phone == e164)
        .order_by(dbm.Message.ts.desc(), dbm.Message.id.desc())
        .limit(max(1, int(limit)))
        .all()
    )
    return [
        {"id": m.id, "direction": m.direction, "body": m.body, "status": m.status, "ts": m.ts}
        for m in reversed(rows)
    ]


def last_inbound_ts(db: Session, tenant_id: str, lead: dbm.Lead) -> Optional[int]:
    q = db.query(dbm.Message).filter(dbm.Message.tenant_id == tenant_id, dbm.Message.direction == "inbound")
    if lead.phone:
        q = q.filter(dbm.Message.phone == lead.phone)
    else:
        q = q.filter(dbm.Message.lead_id == lead.id)
    row = q.order_by(dbm.Message.ts.desc()).first()
    return int(row.ts) if row else None
