from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from src.backend.app.errors import InsufficientPoints
from src.backend.app.points import (
    add_points,
    calculate_sms_credits,
    charge_action,
    estimate_campaign_cost,
    get_balance,
    list_packs,
    recent_transactions,
    refund_points,
    spend_points,
)
from src.backend.app.quiet_hours import QuietHours, is_quiet, next_allowed
from src.backend.app.spam import apply_guardrails, check_spam_risk, truncate_message

NY = ZoneInfo("America/New_York")


def _epoch(*args) -> int:
    return int(datetime(*args, tzinfo=NY).timestamp())


def test_sms_credit_tiers():
    assert calculate_sms_credits("")["credits"] == 0
    assert calculate_sms_credits("x" * 140)["credits"] == 1
    assert calculate_sms_credits("x" * 141)["credits"] == 2
    assert calculate_sms_credits("x" * 281)["credits"] == 3
    calc = calculate_sms_credits("hello", media_count=2)
    assert calc["credits"] == 13
    assert calc["breakdown"] == "1 credit (5 chars, 1 segment) + 12 credits (2 photos)"


def test_campaign_estimate_uses_bulk_floor():
    est = estimate_campaign_cost("short text", lead_count=10)
    assert est["per_lead"] == 2
    assert est["total"] == 20
    assert estimate_campaign_cost("x" * 300, lead_count=2)["total"] == 6


def test_packs_discounted_for_paid_tiers():
    unpaid = {p["id"]: p["price"] for p in list_packs("unpaid")}
    growth = {p["id"]: p["price"] for p in list_packs("growth")}
    assert unpaid["starter"] == 40.00
    assert growth["starter"] == 36.00


def test_spend_never_overdraws(db):
    add_points(db, "t1", 5, "grant", kind="grant")
    assert spend_points(db, "t1", 3, "test") == 2
    with pytest.raises(InsufficientPoints) as exc:
        spend_points(db, "t1", 3, "test")
    assert exc.value.required == 3 and exc.value.balance == 2
    assert get_balance(db, "t1") == 2


def test_charge_and_refund_are_ledgered(db):
    add_points(db, "t1", 10, "grant", kind="grant")
    assert charge_action(db, "t1", "ai_response") == 8
    assert refund_points(db, "t1", 2, "refund") == 10
    kinds = [t["action_type"] for t in recent_transactions(db, "t1")]
    assert kinds == ["refund", "ai_response", "grant"]


def test_add_points_rejects_unknown_kind(db):
    with pytest.raises(ValueError):
        add_points(db, "t1", 10, kind="gift")


def test_spam_scoring_levels():
    assert check_spam_risk("Hi Dana, just checking in about your quote.")["level"] == "low"
    risky = check_spam_risk("CONGRATULATIONS YOU WON A PRIZE!!! CLAIM NOW, CASH $$$", recipient_count=150)
    assert risky["blocked"] is True
    assert risky["level"] == "critical"
    assert any(f.startswith("Contains spam keywords") for f in risky["flags"])


def test_guardrails_flag_contact_details_and_truncate():
    res = apply_guardrails("Call me at 555-123-4567 today")
    assert res["passed"] is False
    assert "AI attempted to include a phone number" in res["violations"]
    assert apply_guardrails("Reach me at {{agent_phone}} 555-123-4567")["passed"] is True
    long = ("word " * 100).strip()
    cut = truncate_message(long, 320)
    assert len(cut) <= 320 and not cut.endswith(" ")
    assert apply_guardrails(long)["violations"] == ["Message truncated to max length"]


def test_quiet_hours_window_wraps_midnight():
    qh = QuietHours(enabled=True, start=21, end=9, tz="America/New_York")
    assert is_quiet(_epoch(2026, 10, 19, 22, 0), qh)
    assert is_quiet(_epoch(2026, 10, 20, 3, 0), qh)
    assert not is_quiet(_epoch(2026, 10, 19, 12, 0), qh)
    assert not is_quiet(_epoch(2026, 10, 19, 22, 0), QuietHours(enabled=False))


def test_next_allowed_resumes_at_window_end():
    qh = QuietHours(enabled=True, start=21, end=9, tz="America/New_York")
    assert next_allowed(_epoch(2026, 10, 19, 22, 0), qh) == _epoch(2026, 10, 20, 9, 0)
    assert next_allowed(_epoch(2026, 10, 20, 3, 0), qh) == _epoch(2026, 10, 20, 9, 0)
    noon = _epoch(2026, 10, 19, 12, 0)
    assert next_allowed(noon, qh) == noon
    assert datetime.fromtimestamp(next_allowed(_epoch(2026, 10, 19, 23, 0), qh), tz=timezone.utc).astimezone(NY).hour == 9
