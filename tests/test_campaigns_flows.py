import asyncio

import pytest

from src.backend.app import conversations as conv_svc
from src.backend.app import messaging
from src.backend.app import models as dbm
from src.backend.app.campaigns import render_template, run_due_campaigns
from src.backend.app.points import get_balance

TENANT_NUMBER = "+15550000001"

QUESTIONS = [
    {"field_name": "household_size", "question": "How many people are in your household?"},
    {"field_name": "zip_code", "question": "What is your zip code?"},
]


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send(provider, to, body, from_number, media_urls):
        calls.append((to, body))
        return {"provider_id": f"out-{len(calls)}", "status": "queued"}

    monkeypatch.setattr(messaging, "_provider_send", fake_send)
    return calls


def _lead(db, phone, first_name=None, tags=None, opted_out=False):
    row = dbm.Lead(tenant_id="t1", first_name=first_name, phone=phone, tags=tags or [], status="new", opted_out=opted_out)
    db.add(row)
    db.commit()
    return row.id


def test_render_template_placeholders():
    class L:
        first_name, last_name, state = "Dana", None, "TX"

    assert render_template("Hi {first_name} {last_name}, in {state}?", L()) == "Hi Dana , in TX?"
    assert render_template("Hey {name}!", L()) == "Hey Dana!"


def test_campaign_run_skips_opted_out_and_dnc(client, headers, funded, sent, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    _lead(db, "+15552010002", "Lee", ["spring"], opted_out=True)
    _lead(db, "+15552010003", "Kim", ["spring"])
    _lead(db, "+15552010004", "Sam", ["other"])
    client.post("/dnc", headers=headers, json={"phone": "+15552010003"})

    c = client.post(
        "/campaigns",
        headers=headers,
        json={"name": "Spring", "tag_filter": ["spring"], "message_template": "Hi {first_name}, still shopping for a quote?"},
    ).json()
    r = client.post(f"/campaigns/{c['id']}/run", headers=headers)
    assert r.status_code == 200
    res = r.json()
    assert (res["sent"], res["skipped"], res["failed"]) == (1, 2, 0)
    assert res["points"] == 2
    assert sent == [("+15552010001", "Hi Dana, still shopping for a quote?")]
    assert get_balance(db, "t1") == 998

    listed = client.get("/campaigns", headers=headers).json()["items"][0]
    assert listed["status"] == "completed"
    assert listed["sent_count"] == 1


def test_spammy_campaign_is_blocked(client, headers, funded, sent, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    c = client.post("/campaigns", headers=headers, json={"name": "Promo", "tag_filter": ["spring"]}).json()
    r = client.post(
        f"/campaigns/{c['id']}/run",
        headers=headers,
        json={"message": "CONGRATULATIONS YOU WON A PRIZE!!! CLAIM NOW, CASH $$$"},
    )
    assert r.status_code == 403
    assert r.json()["detail"] == "message_blocked_spam"
    assert r.json()["info"]["spam"]["blocked"] is True
    assert sent == []
    assert get_balance(db, "t1") == 1000


def test_campaign_needs_enough_points(client, headers, sent, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    c = client.post(
        "/campaigns", headers=headers, json={"name": "Broke", "tag_filter": ["spring"], "message_template": "Hello there"}
    ).json()
    r = client.post(f"/campaigns/{c['id']}/run", headers=headers)
    assert r.status_code == 402
    assert r.json()["info"] == {"required": 2, "balance": 0}


def test_scheduled_campaign_waits_for_quiet_hours(client, headers, funded, sent, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    c = client.post(
        "/campaigns", headers=headers, json={"name": "Later", "tag_filter": ["spring"], "message_template": "Hello there"}
    ).json()
    row = db.query(dbm.Campaign).filter(dbm.Campaign.id == c["id"]).one()
    # 2025-06-02 23:00 New York
    late = 1748919600
    row.status, row.scheduled_at = "scheduled", late - 60
    db.commit()
    assert run_due_campaigns(db, now=late) == {"ran": 0, "deferred": 1, "failed": 0}
    assert run_due_campaigns(db, now=late + 11 * 3600) == {"ran": 1, "deferred": 0, "failed": 0}
    assert len(sent) == 1


def test_schedule_in_past_is_rejected(client, headers):
    c = client.post("/campaigns", headers=headers, json={"name": "Past"}).json()
    r = client.post(f"/campaigns/{c['id']}/schedule", headers=headers, json={"scheduled_at": 1})
    assert r.status_code == 400
    assert r.json()["detail"] == "scheduled_at_in_past"


def test_follow_up_lifecycle(client, headers, funded, db):
    lead_id = _lead(db, "+15552010001", "Dana")
    f = client.post("/follow-ups", headers=headers, json={"lead_id": lead_id, "message": "Ping", "due_at": 2_000_000_000}).json()
    assert f["status"] == "pending"
    r = client.patch(f"/follow-ups/{f['id']}", headers=headers, json={"message": "Ping again"})
    assert r.json()["message"] == "Ping again"
    assert client.delete(f"/follow-ups/{f['id']}", headers=headers).json()["status"] == "cancelled"
    assert client.get("/follow-ups", headers=headers, params={"status": "pending"}).json()["items"] == []

    bulk = client.post(
        "/follow-ups/bulk", headers=headers, json={"lead_ids": [lead_id, 9999], "message": "Hi", "due_at": 2_000_000_000}
    ).json()
    assert bulk == {"created": 1, "missing": [9999]}


def test_send_calendar_link_uses_booking_link(client, headers, funded, sent, db):
    lead_id = _lead(db, "+15552010001", "Dana")
    r = client.post("/follow-ups/send-calendar-link", headers=headers, json={"lead_id": lead_id})
    assert r.status_code == 400
    assert r.json()["detail"] == "no_booking_link_configured"

    client.post("/settings/quiet-hours", headers=headers, json={"booking_link": "https://book.example/dana"})
    r = client.post("/follow-ups/send-calendar-link", headers=headers, json={"lead_id": lead_id})
    assert r.status_code == 200
    assert sent[-1][1] == "Hi Dana! Book a time to chat: https://book.example/dana"


def test_quiet_hours_settings(client, headers):
    r = client.post("/settings/quiet-hours", headers=headers, json={"start": 20, "end": 8, "timezone": "America/Chicago"})
    assert r.json()["start"] == 20 and r.json()["timezone"] == "America/Chicago"
    bad = client.post("/settings/quiet-hours", headers=headers, json={"timezone": "Mars/Olympus"})
    assert bad.status_code == 400
    agent = client.post("/settings/quiet-hours", headers={**headers, "X-Role": "agent"}, json={"start": 22})
    assert agent.status_code == 403


def test_flow_conversation_over_api(client, headers, funded, sent, db):
    lead_id = _lead(db, "+15552010001", "Dana")
    flow = client.post(
        "/flows", headers=headers, json={"name": "Intake", "required_questions": QUESTIONS}
    ).json()
    assert get_balance(db, "t1") == 985

    s = client.post("/conversations/start", headers=headers, json={"flow_id": flow["id"], "lead_id": lead_id}).json()
    assert s["pending_field"] == "household_size"
    assert s["history"][0]["content"] == QUESTIONS[0]["question"]

    r = client.post(f"/conversations/{s['id']}/reply", headers=headers, json={"message": "3 of us"}).json()
    assert r["collected_info"] == {"household_size": "3"}
    assert r["reply"] == QUESTIONS[1]["question"]

    # the lead answers by text; the session replies on its own
    event = {
        "data": {
            "event_type": "message.received",
            "payload": {
                "id": "in-1",
                "text": "78701",
                "from": {"phone_number": "+15552010001"},
                "to": [{"phone_number": TENANT_NUMBER}],
            },
        }
    }
    assert client.post("/webhooks/telnyx/sms", json=event).json()["status"] == "replied"
    assert sent[-1][0] == "+15552010001"
    session = db.query(dbm.ConversationSession).filter(dbm.ConversationSession.id == s["id"]).one()
    assert session.status == "completed"
    assert session.collected_info["zip_code"] == "78701"


def test_flow_test_response_stores_nothing(client, headers, db):
    r = client.post(
        "/flows/test-response",
        headers=headers,
        json={"message": "hi", "required_questions": QUESTIONS},
    )
    assert r.status_code == 200
    assert r.json()["reply"] == QUESTIONS[0]["question"]
    assert r.json()["pending_field"] == "household_size"
    assert db.query(dbm.ConversationSession).count() == 0


def test_campaign_refunds_failed_sends(client, headers, funded, monkeypatch, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    _lead(db, "+15552010002", "Lee", ["spring"])

    def flaky(provider, to, body, from_number, media_urls):
        if to == "+15552010002":
            raise RuntimeError("carrier rejected")
        return {"provider_id": "out-1", "status": "queued"}

    monkeypatch.setattr(messaging, "_provider_send", flaky)
    c = client.post(
        "/campaigns", headers=headers, json={"name": "Half", "tag_filter": ["spring"], "message_template": "Hello there"}
    ).json()
    res = client.post(f"/campaigns/{c['id']}/run", headers=headers).json()
    assert (res["sent"], res["failed"], res["points"]) == (1, 1, 2)
    assert get_balance(db, "t1") == 998
    refunds = db.query(dbm.PointTransaction).filter(dbm.PointTransaction.action_type == "refund").all()
    assert [r.points_amount for r in refunds] == [2]


def test_campaign_with_missing_flow_charges_nothing(client, headers, funded, sent, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    c = client.post(
        "/campaigns", headers=headers, json={"name": "Lost", "tag_filter": ["spring"], "message_template": "Hello there"}
    ).json()
    row = db.query(dbm.Campaign).filter(dbm.Campaign.id == c["id"]).one()
    row.flow_id = 9999
    db.commit()
    r = client.post(f"/campaigns/{c['id']}/run", headers=headers)
    assert r.status_code == 404
    assert r.json()["detail"] == "flow_not_found"
    assert sent == []
    assert get_balance(db, "t1") == 1000
    assert client.get("/campaigns", headers=headers).json()["items"][0]["status"] == "draft"


def test_deleting_flow_detaches_campaigns(client, headers, funded, sent, db):
    _lead(db, "+15552010001", "Dana", ["spring"])
    flow = client.post("/flows", headers=headers, json={"name": "Intake", "required_questions": QUESTIONS}).json()
    c = client.post(
        "/campaigns",
        headers=headers,
        json={"name": "Flowed", "tag_filter": ["spring"], "message_template": "Hello there", "flow_id": flow["id"]},
    ).json()
    assert client.delete(f"/flows/{flow['id']}", headers=headers).json() == {"status": "deleted"}
    assert client.get("/campaigns", headers=headers).json()["items"][0]["flow_id"] is None

    res = client.post(f"/campaigns/{c['id']}/run", headers=headers).json()
    assert res["sent"] == 1
    assert get_balance(db, "t1") == 983
    assert db.query(dbm.ConversationSession).count() == 0


class WritingAI:
    configured = True

    def __init__(self, text):
        self.text = text

    async def generate(self, system, messages, max_tokens=512, temperature=0.4, purpose="chat"):
        return self.text


def test_ai_written_session_reply_charges_points(client, headers, funded, db):
    lead_id = _lead(db, "+15552010001", "Dana")
    flow = client.post("/flows", headers=headers, json={"name": "Intake", "required_questions": QUESTIONS}).json()
    s = client.post("/conversations/start", headers=headers, json={"flow_id": flow["id"], "lead_id": lead_id}).json()
    session = conv_svc.get_session(db, "t1", s["id"])

    res = asyncio.run(conv_svc.reply_to_session(db, "t1", session, "4 of us", ai=WritingAI("Thanks Dana! What zip code are you in?")))
    assert res["ai_generated"] is True
    assert res["reply"] == "Thanks Dana! What zip code are you in?"
    assert get_balance(db, "t1") == 983
    charge = db.query(dbm.PointTransaction).filter(dbm.PointTransaction.action_type == "ai_response").one()
    assert charge.points_amount == -2
