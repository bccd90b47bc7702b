import asyncio
from datetime import datetime
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from src.backend.app.calendar_slots import NO_AVAILABILITY_TEXT
from src.backend.app.flow_engine import (
    CLOSING_TEXT,
    FlowDecisionError,
    FlowEngine,
    apply_step_decision,
    simple_flow_response,
)

NY = ZoneInfo("America/New_York")
NOW = datetime(2026, 10, 19, 8, 0, tzinfo=NY)

QUESTIONS = [
    {"field_name": "household_size", "question": "How many people are in your household?"},
    {"field_name": "zip_code", "question": "What is your zip code?"},
]

SLOTS = [
    {"start": "2026-10-19T09:00:00-04:00", "end": "2026-10-19T10:00:00-04:00", "formatted": "Monday, October 19 at 9:00 AM"},
    {"start": "2026-10-19T10:00:00-04:00", "end": "2026-10-19T11:00:00-04:00", "formatted": "Monday, October 19 at 10:00 AM"},
    {"start": "2026-10-19T11:00:00-04:00", "end": "2026-10-19T12:00:00-04:00", "formatted": "Monday, October 19 at 11:00 AM"},
]


class FakeAI:
    def __init__(self, replies=None, configured=True):
        self.replies = list(replies or [])
        self.configured = configured
        self.calls = []

    async def generate(self, system, messages, max_tokens=512, temperature=0.4, purpose="chat"):
        self.calls.append(purpose)
        return self.replies.pop(0) if self.replies else None


class FakeCalendar:
    def __init__(self, slots=None, book_result=None):
        self.slots = list(slots if slots is not None else SLOTS)
        self.book_result = book_result or {"status": "booked", "event_id": "ev1"}
        self.booked = []

    def available_slots(self, date_requested="today", now=None, limit=5):
        return self.slots[:limit]

    def book_slot(self, slot, **kwargs):
        self.booked.append((slot, kwargs))
        return self.book_result


def _session(**kw):
    base = dict(
        status="active",
        collected_info={},
        history=[],
        offered_slots=[],
        current_step_index=0,
        pending_field=None,
        appointment=None,
    )
    base.update(kw)
    return SimpleNamespace(**base)


def _flow(**kw):
    base = dict(steps=[], required_questions=QUESTIONS, requires_call=False, ai_enabled=True)
    base.update(kw)
    return SimpleNamespace(**base)


def _run(engine, session, flow, message):
    return asyncio.run(engine.respond(session, flow, message, now=NOW))


def test_collects_questions_then_closes_without_ai():
    engine = FlowEngine(FakeAI(configured=False))
    session, flow = _session(), _flow()

    res = _run(engine, session, flow, "hi")
    assert res["reply"] == QUESTIONS[0]["question"]
    assert session.pending_field == "household_size"
    assert res["ai_generated"] is False

    res = _run(engine, session, flow, "4 of us")
    assert res["collected_info"] == {"household_size": "4"}
    assert res["reply"] == QUESTIONS[1]["question"]

    res = _run(engine, session, flow, "90210")
    assert res["collected_info"]["zip_code"] == "90210"
    assert res["status"] == "completed"
    assert res["reply"] == CLOSING_TEXT
    assert [t["role"] for t in session.history] == ["user", "assistant"] * 3


def test_non_answer_keeps_question_pending():
    engine = FlowEngine(FakeAI(configured=False))
    session = _session(pending_field="household_size")
    res = _run(engine, session, _flow(), "idk")
    assert res["collected_info"] == {}
    assert res["reply"] == QUESTIONS[0]["question"]


def test_offers_real_slots_and_books_choice():
    cal = FakeCalendar()
    engine = FlowEngine(FakeAI(configured=False), calendar=cal)
    session = _session(collected_info={"household_size": "2", "zip_code": "10001"})
    flow = _flow(requires_call=True)

    res = _run(engine, session, flow, "sounds good")
    assert res["status"] == "awaiting_time"
    assert res["offered_slots"] == SLOTS
    assert "Monday, October 19 at 9:00 AM" in res["reply"]

    res = _run(engine, session, flow, "10am works")
    assert res["status"] == "booked"
    assert res["appointment"]["start"] == SLOTS[1]["start"]
    assert res["appointment"]["event_id"] == "ev1"
    assert res["reply"] == "You're all set for Monday, October 19 at 10:00 AM. Talk to you then!"
    assert cal.booked[0][0] is SLOTS[1]


def test_unoffered_time_is_not_booked():
    cal = FakeCalendar()
    engine = FlowEngine(FakeAI(configured=False), calendar=cal)
    session = _session(status="awaiting_time", offered_slots=SLOTS, collected_info={"household_size": "2", "zip_code": "1"})
    res = _run(engine, session, _flow(requires_call=True), "3pm?")
    assert res["status"] == "awaiting_time"
    assert res["reply"].startswith("I don't have that time open.")
    assert cal.booked == []


def test_taken_slot_offers_alternatives():
    alt = {"start": "2026-10-19T13:00:00-04:00", "end": "2026-10-19T14:00:00-04:00", "formatted": "Monday, October 19 at 1:00 PM"}
    cal = FakeCalendar(book_result={"status": "slot_taken", "alternatives": [alt]})
    engine = FlowEngine(FakeAI(configured=False), calendar=cal)
    session = _session(status="awaiting_time", offered_slots=SLOTS)
    res = _run(engine, session, _flow(requires_call=True, required_questions=[]), "the first one")
    assert res["status"] == "awaiting_time"
    assert res["offered_slots"] == [alt]
    assert res["reply"].startswith("Sorry, that time was just taken.")


def test_requires_call_without_calendar():
    engine = FlowEngine(FakeAI(configured=False))
    res = _run(engine, _session(), _flow(required_questions=[], requires_call=True), "ok")
    assert res["reply"] == NO_AVAILABILITY_TEXT
    assert res["status"] == "active"


def test_ai_reply_with_invented_time_is_overridden():
    ai = FakeAI(["Great! Does 4:00 PM tomorrow work for a quick call?"])
    engine = FlowEngine(ai)
    res = _run(engine, _session(), _flow(), "hello")
    assert res["overridden"] is True
    assert res["ai_generated"] is True
    assert res["reply"] == QUESTIONS[0]["question"]


def test_ai_reply_reasking_answered_question_is_overridden():
    ai = FakeAI(["Thanks! How many people are in your household?"])
    engine = FlowEngine(ai)
    res = _run(engine, _session(collected_info={"household_size": "3"}), _flow(), "hey")
    assert res["overridden"] is True
    assert res["reply"] == QUESTIONS[1]["question"]


def test_ai_disabled_for_flow_uses_scripted_text():
    ai = FakeAI(["Should not be used"])
    engine = FlowEngine(ai)
    res = _run(engine, _session(), _flow(ai_enabled=False), "hi")
    assert res["reply"] == QUESTIONS[0]["question"]
    assert ai.calls == []


STEPS = [
    {
        "id": "s1",
        "message": "Are you still looking for coverage?",
        "responses": [
            {"label": "yes", "next_step_id": "s2"},
            {"label": "no", "follow_up": "No problem, thanks for letting me know!"},
        ],
    },
    {"id": "s2", "message": "Great, what's a good time to talk?"},
]


def test_scripted_step_follows_model_decision():
    ai = FakeAI(['{"matchedResponseIndex": 0, "reasoning": "they said yes"}'])
    engine = FlowEngine(ai)
    session = _session()
    res = _run(engine, session, _flow(required_questions=[], steps=STEPS), "yes still looking")
    assert res["reply"] == "Great, what's a good time to talk?"
    assert res["next_step_index"] == 1
    assert ai.calls == ["flow_step"]


def test_scripted_step_falls_back_when_model_unusable():
    engine = FlowEngine(FakeAI(["not json at all"]))
    res = _run(engine, _session(), _flow(required_questions=[], steps=STEPS), "maybe")
    assert res["reply"] == STEPS[0]["message"]
    assert res["next_step_index"] == 0
    assert res["ai_generated"] is False


def test_apply_step_decision_validation():
    assert apply_step_decision({"matchedResponseIndex": 1}, STEPS[0], STEPS)["reply"] == "No problem, thanks for letting me know!"
    custom = apply_step_decision({"matchedResponseIndex": None, "customResponse": "Totally fair!"}, STEPS[0], STEPS)
    assert custom["is_custom"] and custom["reply"] == "Totally fair!"
    with pytest.raises(FlowDecisionError):
        apply_step_decision({"matchedResponseIndex": 7}, STEPS[0], STEPS)
    with pytest.raises(FlowDecisionError):
        apply_step_decision({"matchedResponseIndex": None, "customResponse": " "}, STEPS[0], STEPS)


def test_simple_flow_response_sequence():
    res = simple_flow_response(QUESTIONS, {}, requires_call=False)
    assert res == {"reply": QUESTIONS[0]["question"], "collected_info": {}, "done": False, "field_name": "household_size"}
    done = {"household_size": "2", "zip_code": "1"}
    assert simple_flow_response(QUESTIONS, done, requires_call=False)["done"] is True
    assert simple_flow_response(QUESTIONS, done, requires_call=True)["reply"] == NO_AVAILABILITY_TEXT
    offered = simple_flow_response(QUESTIONS, done, requires_call=True, calendar=FakeCalendar(), now=NOW)
    assert offered["awaiting_time_selection"] is True
    assert offered["calendar_slots"] == SLOTS


CALL_STEPS = [
    {
        "id": "s1",
        "message": "Are you still looking for coverage?",
        "responses": [{"label": "yes", "next_step_id": "s2"}],
    },
    {"id": "s2", "message": "Can you hop on a quick call at 3pm?"},
]


def test_scripted_step_text_is_sent_unchanged():
    ai = FakeAI(['{"matchedResponseIndex": 0}'])
    res = _run(FlowEngine(ai), _session(), _flow(required_questions=[], steps=CALL_STEPS), "yes")
    assert res["reply"] == "Can you hop on a quick call at 3pm?"
    assert res["overridden"] is False
    assert res["next_step_index"] == 1
    assert res["status"] == "active"


def test_custom_step_reply_with_invented_time_falls_back_to_step():
    ai = FakeAI(['{"matchedResponseIndex": null, "customResponse": "Sure, how about 4:30 PM today?"}'])
    res = _run(FlowEngine(ai), _session(), _flow(required_questions=[], steps=STEPS), "hmm")
    assert res["overridden"] is True
    assert res["reply"] == STEPS[0]["message"]
    assert res["status"] == "active"


def test_closing_override_completes_the_session():
    steps = [dict(CALL_STEPS[0], message="Free for a call at 2pm?")]
    ai = FakeAI(['{"matchedResponseIndex": null, "customResponse": "Or maybe 5pm works?"}'])
    session = _session()
    res = _run(FlowEngine(ai), session, _flow(required_questions=[], steps=steps), "not sure")
    assert res["reply"] == CLOSING_TEXT
    assert res["status"] == "completed"
    assert session.status == "completed"
