"""Conversational flow engine.

Drives a scripted SMS conversation for one lead: collects the flow's required
questions, offers real calendar slots when a call is required, books the slot
the lead picks, and keeps LLM-written replies honest (no invented times, no
repeated or already-answered questions).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import logging

import httpx

from .ai import AIClient, parse_json_reply
from .calendar_slots import offer_text, NO_AVAILABILITY_TEXT
from .flow_fields import (
    extract_answer,
    next_unanswered,
    question_field,
    question_text,
)
from .flow_guards import mentions_unoffered_time, reasks_answered, repeats_agent_message
from .time_parser import match_slot, parse_time_reference
from . import prompts

logger = logging.getLogger(__name__)

CLOSING_TEXT = "Thank you! I have all the information I need. Someone will be in touch shortly."
OFFERED_SLOT_COUNT = 3


class FlowDecisionError(ValueError):
    pass


def step_message(step: Dict[str, Any]) -> str:
    return str(step.get("message") or step.get("yourMessage") or "")


def response_follow_up(resp: Dict[str, Any]) -> str:
    return str(resp.get("follow_up") or resp.get("followUpMessage") or "")


def response_next_step(resp: Dict[str, Any]) -> Optional[str]:
    nxt = resp.get("next_step_id") or resp.get("nextStepId")
    return str(nxt) if nxt else None


def step_index(all_steps: Sequence[Dict[str, Any]], step_id: Any) -> int:
    for i, s in enumerate(all_steps):
        if str(s.get("id")) == str(step_id):
            return i
    return -1


def apply_step_decision(
    decision: Dict[str, Any],
    step: Dict[str, Any],
    all_steps: Sequence[Dict[str, Any]],
) -> Dict[str, Any]:
    """Turn the model's {matchedResponseIndex, customResponse} into the reply and next step."""
    current = step_index(all_steps, step.get("id"))
    responses = step.get("responses") or []
    idx = decision.get("matchedResponseIndex")
    base = {
        "reasoning": decision.get("reasoning"),
        "matched_response_index": idx,
        "next_step_index": current,
        "advanced": False,
        "is_custom": idx is None,
    }
    if idx is None:
        custom = str(decision.get("customResponse") or "").strip()
        if not custom:
            raise FlowDecisionError("empty_custom_response")
        return {**base, "reply": custom}
    if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < len(responses):
        raise FlowDecisionError("invalid_response_index")
    matched = responses[idx]
    target_id = response_next_step(matched)
    if target_id:
        target = step_index(all_steps, target_id)
        if target >= 0:
            return {**base, "reply": step_message(all_steps[target]), "next_step_index": target, "advanced": True}
    return {**base, "reply": response_follow_up(matched)}


async def decide_step_response(
    ai: AIClient,
    step: Dict[str, Any],
    all_steps: Sequence[Dict[str, Any]],
    message: str,
    history: Sequence[Dict[str, Any]],
) -> Dict[str, Any]:
    raw = await ai.generate(
        prompts.STEP_DECISION_SYSTEM,
        [{"role": "user", "content": prompts.step_decision_prompt(step, message, history)}],
        max_tokens=800,
        temperature=0.7,
        purpose="flow_step",
    )
    if raw is None:
        raise FlowDecisionError("ai_unavailable")
    decision = parse_json_reply(raw)
    if not isinstance(decision, dict):
        raise FlowDecisionError("unparseable_decision")
    return apply_step_decision(decision, step, all_steps)


def _state(session: Any) -> Dict[str, Any]:
    return {
        "status": getattr(session, "status", None) or "active",
        "collected": dict(getattr(session, "collected_info", None) or {}),
        "history": list(getattr(session, "history", None) or []),
        "offered": list(getattr(session, "offered_slots", None) or []),
        "step_index": int(getattr(session, "current_step_index", None) or 0),
        "pending_field": getattr(session, "pending_field", None),
        "appointment": getattr(session, "appointment", None),
    }


class FlowEngine:
    def __init__(self, ai: AIClient, calendar: Any = None, agent_name: Optional[str] = None, use_ai: bool = True):
        # calendar: anything with available_slots(date_requested, now=, limit=) and book_slot(slot, ...)
        self.ai = ai
        self.use_ai = use_ai
        self.calendar = calendar
        self.agent_name = agent_name

    def _ai_ready(self, flow: Any) -> bool:
        return self.use_ai and bool(getattr(flow, "ai_enabled", True)) and self.ai.configured

    def _offer(self, now: datetime) -> List[Dict[str, Any]]:
        if self.calendar is None:
            return []
        try:
            return list(self.calendar.available_slots("today", now=now, limit=OFFERED_SLOT_COUNT))[:OFFERED_SLOT_COUNT]
        except (RuntimeError, httpx.HTTPError) as e:
            logger.warning("flow_slots_unavailable", extra={"error": str(e)})
            return []

    def _book(self, slot: Dict[str, Any], st: Dict[str, Any], lead: Any, now: datetime) -> Dict[str, Any]:
        collected = st["collected"]
        name = " ".join(
            p for p in [getattr(lead, "first_name", None), getattr(lead, "last_name", None)] if p
        ) or str(collected.get("name") or collected.get("first_name") or "Lead")
        details = "\n".join(f"{k}: {v}" for k, v in collected.items())
        return self.calendar.book_slot(
            slot,
            summary=f"Call with {name}",
            description=details or None,
            lead_id=getattr(lead, "id", None),
            attendee_email=collected.get("email") or getattr(lead, "email", None),
            attendee_name=name,
            now=now,
        )

    async def _natural_question(self, flow: Any, message: str, question: Dict[str, Any], st: Dict[str, Any]) -> Optional[str]:
        if not self._ai_ready(flow):
            return None
        return await self.ai.generate(
            prompts.flow_reply_system(self.agent_name),
            [
                {
                    "role": "user",
                    "content": prompts.flow_reply_prompt(message, question_text(question), st["collected"], st["history"]),
                }
            ],
            max_tokens=200,
            purpose="flow_reply",
        )

    async def respond(
        self,
        session: Any,
        flow: Any,
        message: str,
        now: Optional[datetime] = None,
        lead: Any = None,
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        st = _state(session)
        questions = list(getattr(flow, "required_questions", None) or [])
        steps = list(getattr(flow, "steps", None) or [])
        prior_history = list(st["history"])
        st["history"].append({"role": "user", "content": message, "ts": int(now.timestamp())})

        # 1. the answer to the last question asked
        if st["pending_field"]:
            pending_q = next((q for q in questions if question_field(q) == st["pending_field"]), None)
            answer = extract_answer(st["pending_field"], question_text(pending_q or {}), message)
            if answer is not None:
                st["collected"][st["pending_field"]] = answer
                st["pending_field"] = None

        reply: Optional[str] = None
        ai_text = False
        # only model-written text goes through the overrides
        guard = False
        fallback: Optional[str] = None

        # 2. waiting for the lead to pick one of the offered times
        if st["status"] == "awaiting_time":
            reply = self._handle_time_choice(message, st, lead, now)
            return self._finish(session, st, reply, ai_text=False, overridden=False, now=now)

        nq = next_unanswered(questions, st["collected"])
        if nq is not None:
            # 3. keep collecting required answers
            fallback = question_text(nq)
            text = await self._natural_question(flow, message, nq, st)
            reply, ai_text = (text, True) if text else (fallback, False)
            guard = ai_text
            st["pending_field"] = question_field(nq) or None
            st["status"] = "active"
        elif not questions and steps and st["step_index"] < len(steps) and (steps[st["step_index"]].get("responses")):
            # scripted step flow without required questions
            step = steps[st["step_index"]]
            try:
                if not self._ai_ready(flow):
                    raise FlowDecisionError("ai_disabled")
                decision = await decide_step_response(self.ai, step, steps, message, prior_history)
                reply, ai_text = decision["reply"], True
                guard = bool(decision.get("is_custom"))
                fallback = step_message(step)
                st["step_index"] = decision["next_step_index"]
            except FlowDecisionError as e:
                logger.info("flow_step_fallback", extra={"reason": str(e)})
                responses = step.get("responses") or []
                reply = (response_follow_up(responses[0]) if responses else "") or step_message(step)
        elif getattr(flow, "requires_call", False):
            # 4. everything collected; offer real times
            slots = self._offer(now)
            if slots:
                st["offered"] = slots
                st["status"] = "awaiting_time"
                reply = offer_text(slots)
            else:
                reply = NO_AVAILABILITY_TEXT
        else:
            # 5. nothing left to ask
            reply = CLOSING_TEXT
            st["status"] = "completed"

        overridden = False
        if guard and reply:
            replacement = self._override(reply, st, questions, prior_history, nq, fallback=fallback)
            if replacement is not None:
                reply, overridden = replacement, True
        return self._finish(session, st, reply, ai_text=ai_text, overridden=overridden, now=now)

    def _handle_time_choice(self, message: str, st: Dict[str, Any], lead: Any, now: datetime) -> str:
        offered = st["offered"]
        slot = match_slot(message, offered, now=now)
        if slot is not None and self.calendar is not None:
            res = self._book(slot, st, lead, now)
            if res.get("status") == "booked":
                st["status"] = "booked"
                st["appointment"] = {
                    "start": res.get("start") or slot["start"],
                    "end": res.get("end") or slot.get("end"),
                    "formatted": slot["formatted"],
                    "event_id": res.get("event_id"),
                }
                return f"You're all set for {slot['formatted']}. Talk to you then!"
            if res.get("status") == "slot_taken":
                fresh = list(res.get("alternatives") or [])[:OFFERED_SLOT_COUNT] or self._offer(now)
                if fresh:
                    st["offered"] = fresh
                    return "Sorry, that time was just taken. " + offer_text(fresh)
                return NO_AVAILABILITY_TEXT
            return NO_AVAILABILITY_TEXT
        if not offered:
            return NO_AVAILABILITY_TEXT
        if parse_time_reference(message) is not None:
            return "I don't have that time open. " + offer_text(offered)
        return offer_text(offered)

    def _override(
        self,
        reply: str,
        st: Dict[str, Any],
        questions: Sequence[Dict[str, Any]],
        prior_history: Sequence[Dict[str, Any]],
        nq: Optional[Dict[str, Any]],
        fallback: Optional[str] = None,
    ) -> Optional[str]:
        """Replacement text for a model reply that invents a time or repeats itself, else None.

        fallback is the scripted text of the current step, used before closing the conversation.
        """
        next_q = next_unanswered(questions, st["collected"]) if questions else nq
        if mentions_unoffered_time(reply, st["offered"]):
            logger.info("flow_override_hallucinated_time")
            if st["offered"] and st["status"] == "awaiting_time":
                return offer_text(st["offered"])
            if next_q:
                return question_text(next_q)
            if fallback and not mentions_unoffered_time(fallback, st["offered"]):
                return fallback
            # closing text always ends the conversation
            st["status"] = "completed"
            return CLOSING_TEXT
        if repeats_agent_message(reply, prior_history) or reasks_answered(reply, questions, st["collected"]):
            logger.info("flow_override_repeat")
            if next_q:
                return question_text(next_q)
        return None

    def _finish(
        self,
        session: Any,
        st: Dict[str, Any],
        reply: str,
        ai_text: bool,
        overridden: bool,
        now: datetime,
    ) -> Dict[str, Any]:
        st["history"].append({"role": "assistant", "content": reply, "ts": int(now.timestamp())})
        session.status = st["status"]
        session.collected_info = st["collected"]
        session.history = st["history"]
        session.offered_slots = st["offered"]
        session.current_step_index = st["step_index"]
        session.pending_field = st["pending_field"]
        session.appointment = st["appointment"]
        return {
            "reply": reply,
            "status": st["status"],
            "collected_info": st["collected"],
            "next_step_index": st["step_index"],
            "offered_slots": st["offered"],
            "appointment": st["appointment"],
            "overridden": overridden,
            "ai_generated": ai_text,
        }


def simple_flow_response(
    questions: Sequence[Dict[str, Any]],
    collected: Optional[Dict[str, Any]],
    requires_call: bool,
    calendar: Any = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Deterministic variant: ask the next question, then offer times, then close."""
    collected = dict(collected or {})
    nq = next_unanswered(questions, collected)
    if nq is not None:
        return {"reply": question_text(nq), "collected_info": collected, "done": False, "field_name": question_field(nq)}
    if requires_call:
        slots: List[Dict[str, Any]] = []
        if calendar is not None:
            try:
                slots = list(calendar.available_slots("today", now=now, limit=OFFERED_SLOT_COUNT))[:OFFERED_SLOT_COUNT]
            except (RuntimeError, httpx.HTTPError):
                slots = []
        if slots:
            return {
                "reply": offer_text(slots),
                "collected_info": collected,
                "done": False,
                "awaiting_time_selection": True,
                "calendar_slots": slots,
            }
        return {"reply": NO_AVAILABILITY_TEXT, "collected_info": collected, "done": False}
    return {"reply": CLOSING_TEXT, "collected_info": collected, "done": True}
