from src.backend.app.time_parser import bare_hour_to_24, match_slot, parse_time_reference


SLOTS = [
    {"start": "2026-10-19T09:00:00-04:00", "end": "2026-10-19T10:00:00-04:00", "formatted": "Monday, October 19 at 9:00 AM"},
    {"start": "2026-10-19T14:00:00-04:00", "end": "2026-10-19T15:00:00-04:00", "formatted": "Monday, October 19 at 2:00 PM"},
    {"start": "2026-10-20T10:30:00-04:00", "end": "2026-10-20T11:30:00-04:00", "formatted": "Tuesday, October 20 at 10:30 AM"},
]


def test_bare_hours_one_to_seven_are_afternoon():
    assert bare_hour_to_24(2) == 14
    assert bare_hour_to_24(7) == 19
    assert bare_hour_to_24(9) == 9
    assert bare_hour_to_24(12) == 12


def test_parse_meridiem_and_clock_forms():
    assert parse_time_reference("2pm works")["hour"] == 14
    ref = parse_time_reference("how about 10:30 am tomorrow")
    assert (ref["hour"], ref["minute"], ref["day"]) == (10, 30, "tomorrow")
    assert parse_time_reference("12am")["hour"] == 0
    assert parse_time_reference("noon is fine")["hour"] == 12


def test_parse_bare_forms():
    assert parse_time_reference("I'm free at 3")["hour"] == 15
    ref = parse_time_reference("930 please")
    assert (ref["hour"], ref["minute"]) == (9, 30)


def test_parse_ordinals_and_weekdays():
    ref = parse_time_reference("the second one")
    assert ref["ordinal"] == 1 and ref["hour"] is None
    assert parse_time_reference("tuesday is better")["weekday"] == 1
    assert parse_time_reference("sounds good") is None
    assert parse_time_reference("") is None


def test_match_slot_by_hour():
    assert match_slot("2pm works", SLOTS) is SLOTS[1]
    assert match_slot("10:30am", SLOTS) is SLOTS[2]


def test_match_slot_by_ordinal():
    assert match_slot("the first one", SLOTS) is SLOTS[0]
    assert match_slot("I'll take the last one", SLOTS) is SLOTS[2]


def test_match_slot_rejects_unoffered_times():
    assert match_slot("5pm", SLOTS) is None
    assert match_slot("tuesday at 2pm", SLOTS) is None
    assert match_slot("ok", SLOTS) is None
    assert match_slot("2pm", []) is None
