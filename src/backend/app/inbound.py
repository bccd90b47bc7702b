import time
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import models as dbm
from .ai import AIClient
from .conversations import active_session, reply_to_session
from .drips import stop_drip_for_lead
from .errors import DomainError
from .events import emit_event
from .leads import normalize_phone
from .messaging import OPT_IN_KEYWORDS, OPT_OUT_KEYWORDS, add_dnc, keyword, remove_dnc, tenant_for_number
from .metrics_counters import MESSAGES

logger = logging.getLogger(__name__)


def _find_or_create_lead(db: Session, tenant_id: str, phone: str, now: int) -> dbm.Lead:
    lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.phone == phone).first()
    if lead is None:
        lead = dbm.Lead(tenant_id=tenant_id, phone=phone, tags=[], status="new", source="inbound_sms", created_at=now)
        db.add(lead)
        db.flush()
    return lead


def record_inbound(
    db: Session,
    provider: str,
    from_number: Optional[str],
    to_number: Optional[str],
    body: str,
    provider_id: Optional[str] = None,
    media: Optional[List[str]] = None,
) -> Optional[Dict[str, Any]]:
    """Persist an inbound text and apply keyword handling.

    Returns None when the receiving number belongs to no tenant. The result
    carries `action`: opt_out, opt_in or message.
    """
    tenant_id = tenant_for_number(db, to_number)
    sender = normalize_phone(from_number)
    if tenant_id is None or sender is None:
        logger.warning("inbound_unrouted", extra={"provider": provider, "to": to_number})
        return None
    now = int(time.time())
    lead = _find_or_create_lead(db, tenant_id, sender, now)
    row = dbm.Message(
        tenant_id=tenant_id,
        lead_id=lead.id,
        phone=sender,
        from_number=normalize_phone(to_number),
        direction="inbound",
        body=body,
        status="received",
        provider=provider,
        provider_id=provider_id,
        ts=now,
    )
    db.add(row)
    lead.last_engaged_at = now
    db.commit()
    MESSAGES.labels(direction="inbound", status="received").inc()
    emit_event("MessageReceived", {"tenant_id": tenant_id, "lead_id": lead.id, "message_id": row.id, "media": len(media or [])})

    kw = keyword(body)
    action = "message"
    if kw in OPT_OUT_KEYWORDS:
        add_dnc(db, tenant_id, sender, reason=f"keyword:{kw}", source="keyword")
        lead.opted_out = True
        db.commit()
        stop_drip_for_lead(db, tenant_id, lead.id, reason="opted_out")
        emit_event("OptOutRecorded", {"tenant_id": tenant_id, "lead_id": lead.id, "keyword": kw})
        action = "opt_out"
    elif kw in OPT_IN_KEYWORDS:
        remove_dnc(db, tenant_id, sender)
        lead.opted_out = False
        db.commit()
        emit_event("OptInRecorded", {"tenant_id": tenant_id, "lead_id": lead.id})
        action = "opt_in"
    else:
        # any reply ends the drip sequence for this lead
        stop_drip_for_lead(db, tenant_id, lead.id, reason="lead_replied")
    return {"tenant_id": tenant_id, "lead_id": lead.id, "message_id": row.id, "action": action}


async def handle_inbound(
    db: Session,
    provider: str,
    from_number: Optional[str],
    to_number: Optional[str],
    body: str,
    provider_id: Optional[str] = None,
    media: Optional[List[str]] = None,
    ai: Optional[AIClient] = None,
) -> Dict[str, Any]:
    """Record the text, then let an active AI conversation answer it."""
    rec = record_inbound(db, provider, from_number, to_number, body, provider_id, media)
    if rec is None:
        return {"status": "ignored"}
    if rec["action"] != "message":
        return {"status": rec["action"], **rec}
    lead = db.query(dbm.Lead).filter(dbm.Lead.id == rec["lead_id"]).first()
    if lead is None or lead.opted_out or not lead.ai_enabled:
        return {"status": "stored", **rec}
    session = active_session(db, rec["tenant_id"], lead.id)
    if session is None:
        return {"status": "stored", **rec}
    try:
        result = await reply_to_session(db, rec["tenant_id"], session, body, ai=ai, send=True)
    except DomainError as e:
        # the inbound text is already stored; the reply is what failed
        logger.warning("inbound_auto_reply_failed", extra={"tenant_id": rec["tenant_id"], "error": e.detail})
        return {"status": "stored", "reply_error": e.detail, **rec}
    return {"status": "replied", "reply": result.get("reply"), "session_id": session.id, **rec}
