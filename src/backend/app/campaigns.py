import re
import time
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import models as dbm
from .conversations import get_flow, start_session
from .errors import Blocked, DomainError, InsufficientPoints, NotFound
from .events import emit_event
from .messaging import is_dnc, send_sms
from .points import get_balance, per_lead_cost, refund_points, spend_points
from .quiet_hours import for_tenant, is_quiet
from .spam import check_spam_risk

logger = logging.getLogger(__name__)

STATUSES = ("draft", "scheduled", "running", "completed")

_PLACEHOLDER_RE = re.compile(r"\{(first_name|last_name|name|state)\}")


def render_template(template: str, lead: Any) -> str:
    """Fill {first_name} {last_name} {name} {state}; missing values render empty."""
    first = getattr(lead, "first_name", None) or ""
    last = getattr(lead, "last_name", None) or ""
    values = {
        "first_name": first,
        "last_name": last,
        "name": " ".join(p for p in [first, last] if p),
        "state": getattr(lead, "state", None) or "",
    }
    out = _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template or "")
    return re.sub(r"[ \t]{2,}", " ", out).strip()


def campaign_to_dict(c: dbm.Campaign) -> Dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "flow_id": c.flow_id,
        "tag_filter": list(c.tag_filter or []),
        "message_template": c.message_template,
        "status": c.status,
        "scheduled_at": c.scheduled_at,
        "last_run_at": c.last_run_at,
        "sent_count": c.sent_count,
        "created_at": c.created_at,
    }


def get_campaign(db: Session, tenant_id: str, campaign_id: int) -> dbm.Campaign:
    c = db.query(dbm.Campaign).filter(dbm.Campaign.tenant_id == tenant_id, dbm.Campaign.id == campaign_id).first()
    if c is None:
        raise NotFound("campaign_not_found")
    return c


def list_campaigns(db: Session, tenant_id: str) -> List[Dict[str, Any]]:
    rows = db.query(dbm.Campaign).filter(dbm.Campaign.tenant_id == tenant_id).order_by(dbm.Campaign.id.desc()).all()
    return [campaign_to_dict(c) for c in rows]


def create_campaign(db: Session, tenant_id: str, data: Dict[str, Any]) -> dbm.Campaign:
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValueError("campaign_name_required")
    if data.get("flow_id") is not None:
        if db.query(dbm.Flow).filter(dbm.Flow.tenant_id == tenant_id, dbm.Flow.id == data["flow_id"]).first() is None:
            raise NotFound("flow_not_found")
    c = dbm.Campaign(
        tenant_id=tenant_id,
        name=name,
        description=data.get("description"),
        flow_id=data.get("flow_id"),
        tag_filter=list(data.get("tag_filter") or []),
        message_template=data.get("message_template"),
        status="draft",
    )
    db.add(c)
    db.commit()
    db.refresh(c)
    emit_event("CampaignCreated", {"tenant_id": tenant_id, "campaign_id": c.id})
    return c


def delete_campaign(db: Session, tenant_id: str, campaign_id: int) -> None:
    c = get_campaign(db, tenant_id, campaign_id)
    for lead in db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.campaign_id == c.id).all():
        lead.campaign_id = None
    db.delete(c)
    db.commit()


def campaign_leads(db: Session, tenant_id: str, c: dbm.Campaign) -> List[dbm.Lead]:
    """Members of the campaign, else every lead carrying one of its filter tags."""
    members = (
        db.query(dbm.Lead)
        .filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.campaign_id == c.id)
        .order_by(dbm.Lead.id.asc())
        .all()
    )
    if members:
        return members
    wanted = set(c.tag_filter or [])
    if not wanted:
        return []
    rows = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id).order_by(dbm.Lead.id.asc()).all()
    return [r for r in rows if wanted.intersection(r.tags or [])]


def run_campaign(db: Session, tenant_id: str, campaign_id: int, message: Optional[str] = None) -> Dict[str, Any]:
    c = get_campaign(db, tenant_id, campaign_id)
    template = (message or c.message_template or "").strip()
    if not template:
        raise ValueError("message_template_required")

    skipped = 0
    targets: List[dbm.Lead] = []
    for lead in campaign_leads(db, tenant_id, c):
        if not lead.phone or lead.opted_out or is_dnc(db, tenant_id, lead.phone):
            skipped += 1
            continue
        targets.append(lead)

    spam = check_spam_risk(template, recipient_count=len(targets))
    if spam["blocked"]:
        emit_event("CampaignBlocked", {"tenant_id": tenant_id, "campaign_id": c.id, "score": spam["score"]})
        raise Blocked("message_blocked_spam", spam=spam)

    texts = [(lead, render_template(template, lead)) for lead in targets]
    if c.flow_id:
        # a missing flow fails the run before anything is charged
        get_flow(db, tenant_id, c.flow_id)
    total = sum(per_lead_cost(t) for _, t in texts)
    balance = get_balance(db, tenant_id)
    if total > balance:
        raise InsufficientPoints(required=total, balance=balance)
    if total:
        spend_points(db, tenant_id, total, f"Campaign: {c.name} ({len(texts)} leads)", action_type="bulk_message")

    c.status = "running"
    db.commit()
    sent = failed = 0
    spent_on_sent = 0
    try:
        for lead, text in texts:
            try:
                send_sms(db, tenant_id, lead.phone, text, lead_id=lead.id, automated=True, source="campaign", charge=False)
            except (DomainError, ValueError) as e:
                logger.warning("campaign_send_failed", extra={"campaign_id": c.id, "lead_id": lead.id, "error": str(e)})
                failed += 1
                continue
            sent += 1
            spent_on_sent += per_lead_cost(text)
            if lead.campaign_id is None:
                lead.campaign_id = c.id
            if c.flow_id:
                try:
                    start_session(db, tenant_id, c.flow_id, lead_id=lead.id)
                except DomainError as e:
                    # the text already went out; only the conversation is missing
                    logger.warning("campaign_session_failed", extra={"campaign_id": c.id, "lead_id": lead.id, "error": e.detail})
    finally:
        # every lead that was charged but not texted gets its points back
        refund = total - spent_on_sent
        if refund:
            refund_points(db, tenant_id, refund, f"Refund: campaign {c.name} unsent leads")
        c.status = "completed" if sent or not texts else "draft"
        c.last_run_at = int(time.time())
        c.scheduled_at = None
        c.sent_count = int(c.sent_count or 0) + sent
        db.commit()
    result = {"sent": sent, "skipped": skipped, "failed": failed, "points": total - refund, "spam": spam}
    emit_event("CampaignRun", {"tenant_id": tenant_id, "campaign_id": c.id, **{k: v for k, v in result.items() if k != "spam"}})
    return result


def schedule_campaign(db: Session, tenant_id: str, campaign_id: int, scheduled_at: int) -> dbm.Campaign:
    c = get_campaign(db, tenant_id, campaign_id)
    if int(scheduled_at) <= int(time.time()):
        raise ValueError("scheduled_at_in_past")
    c.scheduled_at = int(scheduled_at)
    c.status = "scheduled"
    db.commit()
    db.refresh(c)
    emit_event("CampaignScheduled", {"tenant_id": tenant_id, "campaign_id": c.id, "scheduled_at": c.scheduled_at})
    return c


def run_due_campaigns(db: Session, now: Optional[int] = None, limit: int = 20, tenant_id: Optional[str] = None) -> Dict[str, int]:
    now = int(now or time.time())
    q = db.query(dbm.Campaign).filter(
        dbm.Campaign.status == "scheduled",
        dbm.Campaign.scheduled_at != None,  # noqa: E711
        dbm.Campaign.scheduled_at <= now,
    )
    if tenant_id:
        q = q.filter(dbm.Campaign.tenant_id == tenant_id)
    stats = {"ran": 0, "deferred": 0, "failed": 0}
    for c in q.order_by(dbm.Campaign.scheduled_at.asc()).limit(max(1, int(limit))).all():
        if is_quiet(now, for_tenant(db, c.tenant_id)):
            # stays scheduled; picked up on the first tick after quiet hours
            stats["deferred"] += 1
            continue
        try:
            run_campaign(db, c.tenant_id, c.id)
            stats["ran"] += 1
        except (DomainError, ValueError) as e:
            logger.warning("scheduled_campaign_failed", extra={"campaign_id": c.id, "error": str(e)})
            c.status = "draft"
            db.commit()
            stats["failed"] += 1
    return stats
