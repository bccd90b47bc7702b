from src.backend.app.flow_fields import (
    collected_fields,
    extract_answer,
    is_answered,
    is_non_answer,
    next_unanswered,
    normalize_key,
)
from src.backend.app.flow_guards import (
    mentions_unoffered_time,
    reasks_answered,
    repeats_agent_message,
    times_mentioned,
)

QUESTIONS = [
    {"field_name": "household_size", "question": "How many people are in your household?"},
    {"field_name": "zip_code", "question": "What is your zip code?"},
    {"field_name": "email", "question": "What's the best email for you?"},
]


def test_normalize_key_handles_case_styles():
    assert normalize_key("householdSize") == "household size"
    assert normalize_key("zip-code") == "zip code"
    assert normalize_key("Zip_Code") == "zip code"


def test_answered_by_field_name_or_fuzzy_key():
    assert is_answered(QUESTIONS[1], {"zip_code": "90210"})
    # camelCase key from an older client still counts
    assert is_answered(QUESTIONS[0], {"householdSize": "4"})
    assert not is_answered(QUESTIONS[0], {"household_size": "  "})
    assert collected_fields(QUESTIONS, {"zip_code": "90210", "email": "a@b.co"}) == ["zip_code", "email"]


def test_next_unanswered_in_declaration_order():
    assert next_unanswered(QUESTIONS, {}) is QUESTIONS[0]
    assert next_unanswered(QUESTIONS, {"household_size": "3"}) is QUESTIONS[1]
    assert next_unanswered(QUESTIONS, {"household_size": "3", "zip_code": "1", "email": "x@y.io"}) is None


def test_non_answers():
    for text in ("idk", "Not sure.", "what do you mean?", "is it 45?", "", "??"):
        assert is_non_answer(text), text
    assert not is_non_answer("45")
    assert not is_non_answer("me and my wife")


def test_typed_extraction():
    assert extract_answer("email", "What's your email?", "sure it's jo@example.com") == "jo@example.com"
    assert extract_answer("zip_code", "What's your zip?", "90210-1234") == "90210"
    assert extract_answer("ages", "What are the ages of everyone?", "35 and 33") == "35, 33"
    assert extract_answer("household_size", "How many people?", "we have 4 people") == "4"
    assert extract_answer("phone", "Best phone?", "my cell is (555) 123-4567") == "5551234567"
    assert extract_answer("name", "What's your name?", "Dana Smith") == "Dana Smith"
    assert extract_answer("name", "What's your name?", "idk") is None
    assert extract_answer("email", "What's your email?", "no email") is None


def test_times_mentioned_in_replies():
    assert times_mentioned("How about 2:30 PM or 10am?") == [(14, 30), (10, 0)]
    assert times_mentioned("Let's do 15:00") == [(15, 0)]
    assert times_mentioned("Whenever works") == []


def test_unoffered_time_detection():
    offered = [{"start": "2026-10-19T14:00:00-04:00"}]
    assert not mentions_unoffered_time("Does 2:00 PM work?", offered)
    assert mentions_unoffered_time("Does 4 PM work?", offered)
    assert mentions_unoffered_time("Does 4 PM work?", [])
    assert not mentions_unoffered_time("When works for you?", [])


def test_repeat_and_reask_detection():
    history = [{"role": "assistant", "content": "How many people are in your household?"}]
    assert repeats_agent_message("How many people are in your household?", history)
    assert not repeats_agent_message("What is your zip code?", history)
    q = reasks_answered("Thanks! How many people are in your household?", QUESTIONS, {"household_size": "3"})
    assert q is QUESTIONS[0]
    assert reasks_answered("Thanks! What is your zip code?", QUESTIONS, {"household_size": "3"}) is None


def test_uncertain_answers_with_question_mark_are_kept():
    assert not is_non_answer("Smith?")
    assert not is_non_answer("john.doe@mail.com?")
    assert is_non_answer("huh?")
    assert is_non_answer("why do you need that?")
    assert extract_answer("last_name", "What's your last name?", "Smith?") == "Smith"
    assert extract_answer("email", "What's your email?", "john.doe@mail.com?") == "john.doe@mail.com"
