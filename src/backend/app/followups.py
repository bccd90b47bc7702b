import time
import logging
from typing import Any, Dict, List, Optional

import httpx

from sqlalchemy.orm import Session

from . import models as dbm
from . import prompts
from .ai import AIClient
from .calendar_slots import TenantCalendar
from .errors import DomainError, NotFound
from .events import emit_event
from .messaging import send_sms
from .points import charge_action
from .quiet_hours import for_tenant, is_quiet, next_allowed

logger = logging.getLogger(__name__)

STATUSES = ("pending", "sent", "failed", "cancelled")
NO_RESPONSE_DAYS = 2


def followup_to_dict(f: dbm.FollowUp) -> Dict[str, Any]:
    return {
        "id": f.id,
        "lead_id": f.lead_id,
        "message": f.message,
        "due_at": f.due_at,
        "status": f.status,
        "sent_at": f.sent_at,
        "last_error": f.last_error,
        "created_at": f.created_at,
    }


def _lead(db: Session, tenant_id: str, lead_id: int) -> dbm.Lead:
    lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id == lead_id).first()
    if lead is None:
        raise NotFound("lead_not_found")
    return lead


def _get(db: Session, tenant_id: str, followup_id: int) -> dbm.FollowUp:
    f = db.query(dbm.FollowUp).filter(dbm.FollowUp.tenant_id == tenant_id, dbm.FollowUp.id == followup_id).first()
    if f is None:
        raise NotFound("follow_up_not_found")
    return f


def create_followup(db: Session, tenant_id: str, lead_id: int, message: str, due_at: int, commit: bool = True) -> dbm.FollowUp:
    message = (message or "").strip()
    if not message:
        raise ValueError("message_required")
    _lead(db, tenant_id, lead_id)
    f = dbm.FollowUp(tenant_id=tenant_id, lead_id=lead_id, message=message, due_at=int(due_at), status="pending")
    db.add(f)
    if commit:
        db.commit()
        db.refresh(f)
        emit_event("FollowUpScheduled", {"tenant_id": tenant_id, "follow_up_id": f.id, "lead_id": lead_id})
    return f


def bulk_create(db: Session, tenant_id: str, lead_ids: List[int], message: str, due_at: int) -> Dict[str, Any]:
    created = 0
    missing: List[int] = []
    for lead_id in lead_ids or []:
        try:
            create_followup(db, tenant_id, lead_id, message, due_at, commit=False)
            created += 1
        except NotFound:
            missing.append(lead_id)
    db.commit()
    if created:
        emit_event("FollowUpScheduled", {"tenant_id": tenant_id, "count": created})
    return {"created": created, "missing": missing}


def list_followups(db: Session, tenant_id: str, status: Optional[str] = None, lead_id: Optional[int] = None) -> List[Dict[str, Any]]:
    q = db.query(dbm.FollowUp).filter(dbm.FollowUp.tenant_id == tenant_id)
    if status:
        q = q.filter(dbm.FollowUp.status == status)
    if lead_id is not None:
        q = q.filter(dbm.FollowUp.lead_id == lead_id)
    return [followup_to_dict(f) for f in q.order_by(dbm.FollowUp.due_at.asc()).all()]


def update_followup(db: Session, tenant_id: str, followup_id: int, data: Dict[str, Any]) -> dbm.FollowUp:
    f = _get(db, tenant_id, followup_id)
    if f.status != "pending":
        raise ValueError("follow_up_not_pending")
    if data.get("message"):
        f.message = str(data["message"]).strip()
    if data.get("due_at") is not None:
        f.due_at = int(data["due_at"])
    if data.get("status"):
        if data["status"] not in STATUSES:
            raise ValueError("invalid_status")
        f.status = data["status"]
    db.commit()
    db.refresh(f)
    return f


def cancel_followup(db: Session, tenant_id: str, followup_id: int) -> dbm.FollowUp:
    f = _get(db, tenant_id, followup_id)
    if f.status == "pending":
        f.status = "cancelled"
        db.commit()
    return f


def suggestions(db: Session, tenant_id: str, now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Leads we texted that never answered, without a pending follow-up already."""
    now = int(now or time.time())
    pending = {
        lid for (lid,) in db.query(dbm.FollowUp.lead_id)
        .filter(dbm.FollowUp.tenant_id == tenant_id, dbm.FollowUp.status == "pending")
        .all()
    }
    stats: Dict[int, Dict[str, int]] = {}
    for m in db.query(dbm.Message).filter(dbm.Message.tenant_id == tenant_id, dbm.Message.lead_id != None).all():  # noqa: E711
        s = stats.setdefault(m.lead_id, {"out": 0, "in": 0, "last": 0})
        s["in" if m.direction == "inbound" else "out"] += 1
        s["last"] = max(s["last"], int(m.ts or 0))
    out: List[Dict[str, Any]] = []
    for lead in db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.opted_out == False).all():  # noqa: E712
        s = stats.get(lead.id)
        if lead.id in pending or not s or s["in"] or not s["out"]:
            continue
        days = (now - s["last"]) / 86400.0
        if days < NO_RESPONSE_DAYS:
            continue
        name = " ".join(p for p in [lead.first_name, lead.last_name] if p) or lead.phone
        out.append(
            {
                "lead_id": lead.id,
                "lead_name": name,
                "lead_phone": lead.phone,
                "title": f"Follow up - No response from {lead.first_name or name}",
                "priority": "high" if days >= 5 else "medium",
                "reason": f"No response for {int(days)} days",
                "suggested_due_at": now + 86400,
            }
        )
    return out


async def generate_followup_text(db: Session, tenant_id: str, lead_id: int, ai: Optional[AIClient] = None) -> Dict[str, Any]:
    lead = _lead(db, tenant_id, lead_id)
    ai = ai or AIClient()
    if not ai.configured:
        raise RuntimeError("openai not configured")
    last = (
        db.query(dbm.Message)
        .filter(dbm.Message.tenant_id == tenant_id, dbm.Message.lead_id == lead.id)
        .order_by(dbm.Message.ts.desc())
        .first()
    )
    days = int((time.time() - last.ts) / 86400) if last else 0
    charge_action(db, tenant_id, "ai_response", description="AI follow-up")
    text = await ai.generate(
        prompts.AGENT_SYSTEM,
        [
            {
                "role": "user",
                "content": prompts.follow_up_prompt(
                    {"first_name": lead.first_name, "status": lead.status, "disposition": lead.disposition},
                    days_since_contact=days,
                ),
            }
        ],
        max_tokens=200,
        purpose="follow_up",
    )
    return {"message": (text or "").strip(), "days_since_contact": days}


def calendar_link_text(first_name: Optional[str], booking_link: Optional[str], slots: List[Dict[str, Any]]) -> Optional[str]:
    hi = f"Hi {first_name}!" if first_name else "Hi!"
    if slots:
        listing = "\n".join(f"{i}. {s['formatted']}" for i, s in enumerate(slots[:3], start=1))
        tail = f"\n\nOr book directly: {booking_link}" if booking_link else ""
        return f"{hi} Here are some times I'm available:\n\n{listing}{tail}\n\nReply with the time that works for you!"
    if booking_link:
        return f"{hi} Book a time to chat: {booking_link}"
    return None


def send_calendar_link(db: Session, tenant_id: str, lead_id: int, followup_id: Optional[int] = None) -> Dict[str, Any]:
    lead = _lead(db, tenant_id, lead_id)
    if not lead.phone:
        raise ValueError("lead_has_no_phone")
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    booking_link = user.booking_link if user else None
    slots: List[Dict[str, Any]] = []
    cal = TenantCalendar(db, tenant_id)
    if cal.connected():
        try:
            slots = cal.available_slots("today", limit=3)
        except (RuntimeError, httpx.HTTPError) as e:
            logger.warning("calendar_link_slots_failed", extra={"tenant_id": tenant_id, "error": str(e)})
    text = calendar_link_text(lead.first_name, booking_link, slots)
    if text is None:
        raise ValueError("no_booking_link_configured")
    res = send_sms(db, tenant_id, lead.phone, text, lead_id=lead.id, automated=False, source="calendar_link")
    if followup_id is not None:
        f = _get(db, tenant_id, followup_id)
        f.status = "sent"
        f.sent_at = int(time.time())
        db.commit()
    return {**res, "message": text, "slots": slots}


def process_due(db: Session, now: Optional[int] = None, limit: int = 200, tenant_id: Optional[str] = None) -> Dict[str, int]:
    now = int(now or time.time())
    q = db.query(dbm.FollowUp).filter(dbm.FollowUp.status == "pending", dbm.FollowUp.due_at <= now)
    if tenant_id:
        q = q.filter(dbm.FollowUp.tenant_id == tenant_id)
    rows = q.order_by(dbm.FollowUp.due_at.asc()).limit(max(1, int(limit))).all()
    stats = {"sent": 0, "failed": 0, "deferred": 0}
    for f in rows:
        qh = for_tenant(db, f.tenant_id)
        if is_quiet(now, qh):
            f.due_at = next_allowed(now, qh)
            db.commit()
            stats["deferred"] += 1
            continue
        lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == f.tenant_id, dbm.Lead.id == f.lead_id).first()
        try:
            if lead is None or not lead.phone:
                raise ValueError("lead_has_no_phone")
            send_sms(db, f.tenant_id, lead.phone, f.message, lead_id=lead.id, automated=True, source="follow_up")
        except (DomainError, ValueError) as e:
            f.status = "failed"
            f.last_error = str(getattr(e, "detail", None) or e)[:255]
            db.commit()
            stats["failed"] += 1
            continue
        f.status = "sent"
        f.sent_at = now
        db.commit()
        stats["sent"] += 1
    return stats
