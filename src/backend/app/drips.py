"""AI drip sequences: pre-generated follow-up texts for leads who went quiet."""
import time
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import models as dbm
from . import prompts
from .ai import AIClient
from .errors import Blocked, Conflict, DomainError, NotFound
from .events import emit_event
from .messaging import send_sms
from .points import POINT_COSTS, charge_action, get_balance
from .quiet_hours import for_tenant, is_quiet, next_allowed

logger = logging.getLogger(__name__)

MAX_DRIP_MESSAGE_LENGTH = 320
DEFAULT_INTERVAL_HOURS = 24
DEFAULT_MAX_MESSAGES = 5
DEFAULT_MAX_DURATION_HOURS = 72
# a failed send waits this long before the next attempt
RETRY_AFTER_SECONDS = 3600

FALLBACK_MESSAGES = [
    "Hi {first_name}, just checking in. Do you still have a minute to chat this week?",
    "Hey {first_name}, wanted to make sure my last text didn't get buried. Any questions I can answer?",
    "Hi {first_name}, I can put together a few options for you. Would that help?",
    "Hey {first_name}, is now still a good time to look at this, or should I check back later?",
    "Hi {first_name}, last check-in from me for now. Just reply whenever you're ready.",
]


def drip_to_dict(drip: dbm.Drip, messages: Optional[List[dbm.DripMessage]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "id": drip.id,
        "lead_id": drip.lead_id,
        "phone": drip.phone,
        "status": drip.status,
        "interval_hours": drip.interval_hours,
        "max_messages": drip.max_messages,
        "messages_sent": drip.messages_sent,
        "started_at": drip.started_at,
        "next_send_at": drip.next_send_at,
        "expires_at": drip.expires_at,
        "last_error": drip.last_error,
    }
    if messages is not None:
        out["messages"] = [
            {
                "id": m.id,
                "message_number": m.message_number,
                "content": m.content,
                "status": m.status,
                "scheduled_for": m.scheduled_for,
                "sent_at": m.sent_at,
            }
            for m in messages
        ]
    return out


def _messages(db: Session, drip_id: int) -> List[dbm.DripMessage]:
    return (
        db.query(dbm.DripMessage)
        .filter(dbm.DripMessage.drip_id == drip_id)
        .order_by(dbm.DripMessage.message_number.asc())
        .all()
    )


def active_drip(db: Session, tenant_id: str, lead_id: int) -> Optional[dbm.Drip]:
    return (
        db.query(dbm.Drip)
        .filter(dbm.Drip.tenant_id == tenant_id, dbm.Drip.lead_id == lead_id, dbm.Drip.status == "active")
        .first()
    )


def _split_lines(text: Optional[str], count: int) -> List[str]:
    out: List[str] = []
    for line in (text or "").splitlines():
        line = line.strip().lstrip("-*0123456789.) ").strip().strip('"')
        if line:
            out.append(line[:MAX_DRIP_MESSAGE_LENGTH])
    return out[:count]


async def generate_sequence(ai: AIClient, lead: dbm.Lead, count: int, history: List[str]) -> List[str]:
    """`count` follow-up texts from the model, padded with canned ones when it falls short."""
    lead_info = {"first_name": lead.first_name, "status": lead.status}
    texts: List[str] = []
    if ai.configured:
        raw = await ai.generate(
            prompts.AGENT_SYSTEM,
            [{"role": "user", "content": prompts.drip_sequence_prompt(lead_info, count, history)}],
            max_tokens=600,
            temperature=0.7,
            purpose="drip_sequence",
        )
        texts = _split_lines(raw, count)
    name = lead.first_name or "there"
    i = 0
    while len(texts) < count:
        texts.append(FALLBACK_MESSAGES[i % len(FALLBACK_MESSAGES)].format(first_name=name))
        i += 1
    return texts


def _history(db: Session, tenant_id: str, lead: dbm.Lead, limit: int = 10) -> List[str]:
    rows = (
        db.query(dbm.Message)
        .filter(dbm.Message.tenant_id == tenant_id, dbm.Message.phone == lead.phone)
        .order_by(dbm.Message.ts.desc())
        .limit(limit)
        .all()
    )
    return [f"{'Customer' if m.direction == 'inbound' else 'Agent'}: {m.body or ''}" for m in reversed(rows)]


async def start_drip(
    db: Session,
    tenant_id: str,
    lead_id: int,
    ai: Optional[AIClient] = None,
    interval_hours: int = DEFAULT_INTERVAL_HOURS,
    max_messages: int = DEFAULT_MAX_MESSAGES,
    max_duration_hours: int = DEFAULT_MAX_DURATION_HOURS,
    messages: Optional[List[str]] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id == lead_id).first()
    if lead is None:
        raise NotFound("lead_not_found")
    if not lead.phone:
        raise ValueError("lead_has_no_phone")
    if lead.opted_out:
        raise ValueError("lead_opted_out")
    existing = active_drip(db, tenant_id, lead_id)
    if existing is not None:
        raise Conflict("drip_already_active", drip_id=existing.id)
    interval_hours = max(1, int(interval_hours))
    max_messages = max(1, int(max_messages))
    now = int(now or time.time())

    if messages:
        texts = [m.strip()[:MAX_DRIP_MESSAGE_LENGTH] for m in messages if m and m.strip()][:max_messages]
    else:
        # one ai_response covers generating the whole sequence
        charge_action(db, tenant_id, "ai_response", description="AI drip sequence")
        texts = await generate_sequence(ai or AIClient(), lead, max_messages, _history(db, tenant_id, lead))

    qh = for_tenant(db, tenant_id)
    first_send = next_allowed(now + interval_hours * 3600, qh)
    drip = dbm.Drip(
        tenant_id=tenant_id,
        lead_id=lead.id,
        phone=lead.phone,
        status="active",
        interval_hours=interval_hours,
        max_messages=max_messages,
        messages_sent=0,
        started_at=now,
        next_send_at=first_send,
        expires_at=now + max(1, int(max_duration_hours)) * 3600,
    )
    db.add(drip)
    db.flush()
    when = first_send
    for n, text in enumerate(texts, start=1):
        db.add(
            dbm.DripMessage(
                tenant_id=tenant_id,
                drip_id=drip.id,
                message_number=n,
                content=text,
                status="scheduled",
                scheduled_for=when,
            )
        )
        when = next_allowed(when + interval_hours * 3600, qh)
    db.commit()
    db.refresh(drip)
    emit_event("DripStarted", {"tenant_id": tenant_id, "drip_id": drip.id, "lead_id": lead.id, "messages": len(texts)})
    return drip_to_dict(drip, _messages(db, drip.id))


def _cancel_remaining(db: Session, drip_id: int, now: int) -> int:
    n = 0
    for m in db.query(dbm.DripMessage).filter(dbm.DripMessage.drip_id == drip_id, dbm.DripMessage.status == "scheduled").all():
        m.status = "cancelled"
        m.updated_at = now
        n += 1
    return n


def _close(db: Session, drip: dbm.Drip, status: str, reason: str, now: int) -> None:
    drip.status = status
    drip.next_send_at = None
    drip.updated_at = now
    _cancel_remaining(db, drip.id, now)
    db.commit()
    name = "DripCompleted" if status == "completed" else "DripStopped"
    emit_event(name, {"tenant_id": drip.tenant_id, "drip_id": drip.id, "lead_id": drip.lead_id, "reason": reason})


def stop_drip(db: Session, tenant_id: str, drip_id: Optional[int] = None, lead_id: Optional[int] = None) -> Dict[str, Any]:
    q = db.query(dbm.Drip).filter(dbm.Drip.tenant_id == tenant_id, dbm.Drip.status == "active")
    if drip_id is not None:
        q = q.filter(dbm.Drip.id == drip_id)
    elif lead_id is not None:
        q = q.filter(dbm.Drip.lead_id == lead_id)
    else:
        raise ValueError("drip_id_or_lead_id_required")
    drip = q.first()
    if drip is None:
        raise NotFound("drip_not_found")
    _close(db, drip, "stopped", "manual", int(time.time()))
    return drip_to_dict(drip, _messages(db, drip.id))


def stop_drip_for_lead(db: Session, tenant_id: str, lead_id: int, reason: str = "lead_replied") -> int:
    """Complete every active drip for the lead. Returns how many were closed."""
    now = int(time.time())
    status = "completed" if reason == "lead_replied" else "stopped"
    drips = (
        db.query(dbm.Drip)
        .filter(dbm.Drip.tenant_id == tenant_id, dbm.Drip.lead_id == lead_id, dbm.Drip.status == "active")
        .all()
    )
    for d in drips:
        _close(db, d, status, reason, now)
    return len(drips)


def drip_status(db: Session, tenant_id: str, drip_id: Optional[int] = None, lead_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
    q = db.query(dbm.Drip).filter(dbm.Drip.tenant_id == tenant_id)
    if drip_id is not None:
        q = q.filter(dbm.Drip.id == drip_id)
    elif lead_id is not None:
        q = q.filter(dbm.Drip.lead_id == lead_id)
    drip = q.order_by(dbm.Drip.id.desc()).first()
    if drip is None:
        return None
    return drip_to_dict(drip, _messages(db, drip.id))


def _scheduled_message(db: Session, tenant_id: str, message_id: int) -> dbm.DripMessage:
    m = (
        db.query(dbm.DripMessage)
        .filter(dbm.DripMessage.tenant_id == tenant_id, dbm.DripMessage.id == message_id)
        .first()
    )
    if m is None:
        raise NotFound("drip_message_not_found")
    if m.status != "scheduled":
        raise Conflict("drip_message_not_editable")
    return m


def edit_drip_message(db: Session, tenant_id: str, message_id: int, content: str) -> Dict[str, Any]:
    content = (content or "").strip()
    if not content:
        raise ValueError("content_required")
    if len(content) > MAX_DRIP_MESSAGE_LENGTH:
        raise ValueError("content_too_long")
    m = _scheduled_message(db, tenant_id, message_id)
    m.content = content
    m.updated_at = int(time.time())
    db.commit()
    return {"id": m.id, "message_number": m.message_number, "content": m.content, "status": m.status}


def delete_drip_message(db: Session, tenant_id: str, message_id: int) -> None:
    m = _scheduled_message(db, tenant_id, message_id)
    m.status = "cancelled"
    m.updated_at = int(time.time())
    db.commit()


def _replied_since(db: Session, drip: dbm.Drip) -> bool:
    return (
        db.query(dbm.Message)
        .filter(
            dbm.Message.tenant_id == drip.tenant_id,
            dbm.Message.phone == drip.phone,
            dbm.Message.direction == "inbound",
            dbm.Message.ts > drip.started_at,
        )
        .first()
        is not None
    )


async def _next_text(db: Session, drip: dbm.Drip, ai: AIClient) -> tuple:
    nxt = (
        db.query(dbm.DripMessage)
        .filter(dbm.DripMessage.drip_id == drip.id, dbm.DripMessage.status == "scheduled")
        .order_by(dbm.DripMessage.message_number.asc())
        .first()
    )
    if nxt is not None:
        return nxt, nxt.content
    lead = db.query(dbm.Lead).filter(dbm.Lead.id == drip.lead_id).first()
    previous = [m.content for m in _messages(db, drip.id) if m.status == "sent"]
    text = None
    can_pay = get_balance(db, drip.tenant_id) >= POINT_COSTS["ai_response"]
    if ai.configured and lead is not None and can_pay:
        text = await ai.generate(
            prompts.AGENT_SYSTEM,
            [
                {
                    "role": "user",
                    "content": prompts.drip_message_prompt(
                        {"first_name": lead.first_name}, drip.messages_sent + 1, previous
                    ),
                }
            ],
            max_tokens=200,
            purpose="drip_message",
        )
        if text:
            charge_action(db, drip.tenant_id, "ai_response", description="AI drip message")
    if not text:
        name = (lead.first_name if lead else None) or "there"
        text = FALLBACK_MESSAGES[drip.messages_sent % len(FALLBACK_MESSAGES)].format(first_name=name)
    return None, text.strip()[:MAX_DRIP_MESSAGE_LENGTH]


async def process_drips(
    db: Session,
    ai: Optional[AIClient] = None,
    now: Optional[int] = None,
    limit: int = 20,
    tenant_id: Optional[str] = None,
) -> Dict[str, int]:
    """Send the next text of every due drip, respecting each tenant's quiet hours."""
    ai = ai or AIClient()
    now = int(now or time.time())
    q = db.query(dbm.Drip).filter(
        dbm.Drip.status == "active",
        dbm.Drip.next_send_at != None,  # noqa: E711
        dbm.Drip.next_send_at <= now,
    )
    if tenant_id:
        q = q.filter(dbm.Drip.tenant_id == tenant_id)
    drips = q.order_by(dbm.Drip.next_send_at.asc()).limit(max(1, int(limit))).all()
    stats = {"processed": 0, "completed": 0, "rescheduled": 0, "stopped": 0, "errors": 0, "total": len(drips)}
    quiet_cache: Dict[str, Any] = {}
    for drip in drips:
        qh = quiet_cache.get(drip.tenant_id)
        if qh is None:
            qh = quiet_cache[drip.tenant_id] = for_tenant(db, drip.tenant_id)
        if drip.expires_at and drip.expires_at <= now:
            _close(db, drip, "completed", "expired", now)
            stats["completed"] += 1
            continue
        if drip.max_messages and drip.messages_sent >= drip.max_messages:
            _close(db, drip, "completed", "max_messages", now)
            stats["completed"] += 1
            continue
        if _replied_since(db, drip):
            _close(db, drip, "completed", "lead_replied", now)
            stats["completed"] += 1
            continue
        if is_quiet(now, qh):
            drip.next_send_at = next_allowed(now, qh)
            drip.updated_at = now
            db.commit()
            stats["rescheduled"] += 1
            continue
        try:
            scheduled, text = await _next_text(db, drip, ai)
            sent = send_sms(db, drip.tenant_id, drip.phone, text, lead_id=drip.lead_id, automated=True, source="ai_drip")
        except (DomainError, ValueError) as e:
            detail = getattr(e, "detail", None) or str(e)
            logger.warning("drip_send_failed", extra={"drip_id": drip.id, "error": detail})
            drip.last_error = str(detail)[:255]
            stats["errors"] += 1
            if isinstance(e, Blocked):
                # recipient is on DNC or opted out; no later text can go through
                _close(db, drip, "stopped", f"blocked:{detail}", now)
                stats["stopped"] += 1
                continue
            # out of points or provider down: back off so other due drips get their turn
            drip.next_send_at = next_allowed(now + RETRY_AFTER_SECONDS, qh)
            drip.updated_at = now
            db.commit()
            continue
        if scheduled is not None:
            scheduled.status = "sent"
            scheduled.sent_at = now
            scheduled.message_id = sent.get("message_id")
            scheduled.updated_at = now
        drip.messages_sent += 1
        drip.next_send_at = next_allowed(now + drip.interval_hours * 3600, qh)
        drip.last_error = None
        drip.updated_at = now
        db.commit()
        stats["processed"] += 1
    return stats
