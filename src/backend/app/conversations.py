"""Flow definitions and the conversation sessions that run them."""
import time
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models as dbm
from .ai import AIClient
from .calendar_slots import DryRunCalendar, TenantCalendar
from .errors import NotFound
from .events import emit_event
from .flow_engine import FlowEngine, step_message
from .flow_fields import next_unanswered, question_field, question_text
from .messaging import send_sms
from .points import POINT_COSTS, charge_action, get_balance

logger = logging.getLogger(__name__)


def flow_to_dict(flow: dbm.Flow) -> Dict[str, Any]:
    return {
        "id": flow.id,
        "name": flow.name,
        "description": flow.description,
        "steps": list(flow.steps or []),
        "required_questions": list(flow.required_questions or []),
        "requires_call": bool(flow.requires_call),
        "ai_enabled": bool(flow.ai_enabled),
        "created_at": flow.created_at,
        "updated_at": flow.updated_at,
    }


def session_to_dict(s: dbm.ConversationSession) -> Dict[str, Any]:
    return {
        "id": s.id,
        "flow_id": s.flow_id,
        "lead_id": s.lead_id,
        "phone": s.phone,
        "status": s.status,
        "current_step_index": s.current_step_index,
        "pending_field": s.pending_field,
        "collected_info": dict(s.collected_info or {}),
        "history": list(s.history or []),
        "offered_slots": list(s.offered_slots or []),
        "appointment": s.appointment,
    }


def get_flow(db: Session, tenant_id: str, flow_id: int) -> dbm.Flow:
    flow = db.query(dbm.Flow).filter(dbm.Flow.tenant_id == tenant_id, dbm.Flow.id == flow_id).first()
    if flow is None:
        raise NotFound("flow_not_found")
    return flow


def list_flows(db: Session, tenant_id: str) -> List[Dict[str, Any]]:
    rows = db.query(dbm.Flow).filter(dbm.Flow.tenant_id == tenant_id).order_by(dbm.Flow.id.desc()).all()
    return [flow_to_dict(f) for f in rows]


def _validate_steps(steps: List[Dict[str, Any]]) -> None:
    ids = [str(s.get("id")) for s in steps]
    if len(set(ids)) != len(ids):
        raise ValueError("duplicate_step_id")


def create_flow(db: Session, tenant_id: str, data: Dict[str, Any]) -> dbm.Flow:
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValueError("flow_name_required")
    steps = list(data.get("steps") or [])
    _validate_steps(steps)
    charge_action(db, tenant_id, "flow_creation", description=f"Flow created: {name}")
    flow = dbm.Flow(
        tenant_id=tenant_id,
        name=name,
        description=data.get("description"),
        steps=steps,
        required_questions=list(data.get("required_questions") or []),
        requires_call=bool(data.get("requires_call", False)),
        ai_enabled=bool(data.get("ai_enabled", True)),
    )
    db.add(flow)
    db.commit()
    db.refresh(flow)
    emit_event("FlowCreated", {"tenant_id": tenant_id, "flow_id": flow.id})
    return flow


def update_flow(db: Session, tenant_id: str, flow_id: int, data: Dict[str, Any]) -> dbm.Flow:
    flow = get_flow(db, tenant_id, flow_id)
    if data.get("name"):
        flow.name = str(data["name"]).strip()
    if "description" in data:
        flow.description = data["description"]
    if data.get("steps") is not None:
        _validate_steps(list(data["steps"]))
        flow.steps = list(data["steps"])
    if data.get("required_questions") is not None:
        flow.required_questions = list(data["required_questions"])
    for flag in ("requires_call", "ai_enabled"):
        if data.get(flag) is not None:
            setattr(flow, flag, bool(data[flag]))
    flow.updated_at = int(time.time())
    db.commit()
    db.refresh(flow)
    return flow


def delete_flow(db: Session, tenant_id: str, flow_id: int) -> None:
    flow = get_flow(db, tenant_id, flow_id)
    # campaigns keep running as plain sends once their flow is gone
    db.execute(
        update(dbm.Campaign)
        .where(dbm.Campaign.tenant_id == tenant_id, dbm.Campaign.flow_id == flow.id)
        .values(flow_id=None)
        .execution_options(synchronize_session="fetch")
    )
    db.delete(flow)
    db.commit()


def opening_message(flow: Any) -> Dict[str, Optional[str]]:
    """First text of a conversation: the first scripted step, else the first required question."""
    steps = list(getattr(flow, "steps", None) or [])
    if steps and step_message(steps[0]):
        return {"text": step_message(steps[0]), "pending_field": None}
    nq = next_unanswered(list(getattr(flow, "required_questions", None) or []), {})
    if nq is not None:
        return {"text": question_text(nq), "pending_field": question_field(nq) or None}
    return {"text": None, "pending_field": None}


def active_session(db: Session, tenant_id: str, lead_id: int) -> Optional[dbm.ConversationSession]:
    return (
        db.query(dbm.ConversationSession)
        .filter(
            dbm.ConversationSession.tenant_id == tenant_id,
            dbm.ConversationSession.lead_id == lead_id,
            dbm.ConversationSession.status.in_(["active", "awaiting_time"]),
        )
        .order_by(dbm.ConversationSession.id.desc())
        .first()
    )


def start_session(
    db: Session,
    tenant_id: str,
    flow_id: int,
    lead_id: Optional[int] = None,
    phone: Optional[str] = None,
    send: bool = False,
) -> dbm.ConversationSession:
    flow = get_flow(db, tenant_id, flow_id)
    lead = None
    if lead_id is not None:
        lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id == lead_id).first()
        if lead is None:
            raise NotFound("lead_not_found")
        phone = phone or lead.phone
    opening = opening_message(flow)
    now = int(time.time())
    history = [{"role": "assistant", "content": opening["text"], "ts": now}] if opening["text"] else []
    session = dbm.ConversationSession(
        tenant_id=tenant_id,
        flow_id=flow.id,
        lead_id=lead.id if lead else None,
        phone=phone,
        status="active",
        current_step_index=0,
        pending_field=opening["pending_field"],
        collected_info={},
        history=history,
        offered_slots=[],
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    if send and phone and opening["text"]:
        send_sms(db, tenant_id, phone, opening["text"], lead_id=session.lead_id, automated=True, source="flow")
    emit_event("ConversationStarted", {"tenant_id": tenant_id, "session_id": session.id, "flow_id": flow.id})
    return session


def get_session(db: Session, tenant_id: str, session_id: int) -> dbm.ConversationSession:
    s = (
        db.query(dbm.ConversationSession)
        .filter(dbm.ConversationSession.tenant_id == tenant_id, dbm.ConversationSession.id == session_id)
        .first()
    )
    if s is None:
        raise NotFound("session_not_found")
    return s


def build_engine(db: Session, tenant_id: str, ai: Optional[AIClient] = None, dry_run: bool = False) -> FlowEngine:
    ai = ai or AIClient()
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    calendar = (DryRunCalendar if dry_run else TenantCalendar)(db, tenant_id)
    # no points for an AI reply: the engine falls back to scripted text
    use_ai = get_balance(db, tenant_id) >= POINT_COSTS["ai_response"]
    return FlowEngine(
        ai,
        calendar=calendar if calendar.connected() else None,
        agent_name=user.agent_name if user else None,
        use_ai=use_ai,
    )


async def reply_to_session(
    db: Session,
    tenant_id: str,
    session: dbm.ConversationSession,
    message: str,
    ai: Optional[AIClient] = None,
    send: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run one inbound message through the flow engine and persist the new state."""
    flow = get_flow(db, tenant_id, session.flow_id)
    lead = None
    if session.lead_id is not None:
        lead = db.query(dbm.Lead).filter(dbm.Lead.tenant_id == tenant_id, dbm.Lead.id == session.lead_id).first()
    engine = build_engine(db, tenant_id, ai)
    before_step = session.current_step_index
    result = await engine.respond(session, flow, message, now=now, lead=lead)
    session.updated_at = int(time.time())
    db.commit()
    if result.get("ai_generated"):
        charge_action(db, tenant_id, "ai_response", description="AI flow reply")
    if result["next_step_index"] != before_step or result["status"] in ("booked", "completed"):
        emit_event(
            "FlowStepAdvanced",
            {
                "tenant_id": tenant_id,
                "session_id": session.id,
                "step_index": result["next_step_index"],
                "status": result["status"],
            },
        )
    if send and session.phone and result.get("reply"):
        sent = send_sms(db, tenant_id, session.phone, result["reply"], lead_id=session.lead_id, automated=True, source="flow")
        result["message_id"] = sent.get("message_id")
    return {**result, "session_id": session.id}
