import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from src.backend.app import drips
from src.backend.app import messaging
from src.backend.app import models as dbm
from src.backend.app.ai import AIClient
from src.backend.app.errors import Conflict
from src.backend.app.followups import create_followup
from src.backend.app.points import get_balance
from src.backend.app.scheduler import run_tick

NY = ZoneInfo("America/New_York")
# Monday noon, tenant-local
NOON = int(datetime(2025, 6, 2, 12, 0, tzinfo=NY).timestamp())
HOUR = 3600
TENANT_NUMBER = "+15550000001"


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send(provider, to, body, from_number, media_urls):
        calls.append(body)
        return {"provider_id": f"out-{len(calls)}", "status": "queued"}

    monkeypatch.setattr(messaging, "_provider_send", fake_send)
    return calls


@pytest.fixture
def lead(db, funded):
    row = dbm.Lead(tenant_id="t1", first_name="Dana", phone="+15552017777", tags=[], status="new")
    db.add(row)
    db.commit()
    return row.id


def _start(db, lead_id, **kw):
    return asyncio.run(drips.start_drip(db, "t1", lead_id, ai=AIClient(), now=NOON, **kw))


def _process(db, now):
    return asyncio.run(drips.process_drips(db, ai=AIClient(), now=now))


def test_drip_sends_on_interval_then_expires(db, lead, sent):
    d = _start(db, lead, messages=["first nudge", "second nudge", "third nudge"])
    assert d["next_send_at"] == NOON + 24 * HOUR
    assert [m["scheduled_for"] for m in d["messages"]] == [NOON + 24 * HOUR, NOON + 48 * HOUR, NOON + 72 * HOUR]

    assert _process(db, NOON + HOUR)["total"] == 0
    assert _process(db, NOON + 24 * HOUR)["processed"] == 1
    assert _process(db, NOON + 48 * HOUR)["processed"] == 1
    assert sent == ["first nudge", "second nudge"]

    stats = _process(db, NOON + 72 * HOUR)
    assert stats["completed"] == 1
    status = drips.drip_status(db, "t1", lead_id=lead)
    assert status["status"] == "completed"
    assert [m["status"] for m in status["messages"]] == ["sent", "sent", "cancelled"]
    assert get_balance(db, "t1") == 998


def test_drip_waits_out_quiet_hours(db, lead, sent):
    _start(db, lead, messages=["hello again"])
    late = NOON + 34 * HOUR  # 22:00 the next day
    stats = _process(db, late)
    assert stats["rescheduled"] == 1
    assert sent == []
    d = drips.drip_status(db, "t1", lead_id=lead)
    resume = datetime.fromtimestamp(d["next_send_at"], tz=NY)
    assert (resume.hour, resume.minute) == (9, 0)


def test_one_active_drip_per_lead(db, lead):
    _start(db, lead, messages=["a"])
    with pytest.raises(Conflict):
        _start(db, lead, messages=["b"])


def test_generated_sequence_charges_once(client, headers, lead, db):
    r = client.post("/drips/start", headers=headers, json={"lead_id": lead, "max_messages": 2})
    assert r.status_code == 200
    texts = [m["content"] for m in r.json()["messages"]]
    assert len(texts) == 2
    assert texts[0].startswith("Hi Dana")
    assert get_balance(db, "t1") == 998


def test_inbound_reply_completes_drip(client, headers, lead, db):
    _start(db, lead, messages=["a", "b"])
    event = {
        "data": {
            "event_type": "message.received",
            "payload": {
                "id": "in-1",
                "text": "yes I'm interested",
                "from": {"phone_number": "+15552017777"},
                "to": [{"phone_number": TENANT_NUMBER}],
            },
        }
    }
    assert client.post("/webhooks/telnyx/sms", json=event).json()["status"] == "stored"
    status = client.get("/drips/status", headers=headers, params={"lead_id": lead}).json()["drip"]
    assert status["status"] == "completed"
    assert {m["status"] for m in status["messages"]} == {"cancelled"}


def test_edit_and_stop(client, headers, lead, db):
    d = _start(db, lead, messages=["a", "b"])
    mid = d["messages"][0]["id"]
    r = client.put(f"/drips/messages/{mid}", headers=headers, json={"content": "edited"})
    assert r.json()["content"] == "edited"
    r = client.post("/drips/stop", headers=headers, json={"lead_id": lead})
    assert r.json()["status"] == "stopped"
    r = client.put(f"/drips/messages/{mid}", headers=headers, json={"content": "again"})
    assert r.status_code == 409


def test_tick_sends_due_follow_ups(db, lead, sent):
    create_followup(db, "t1", lead, "Checking in!", due_at=NOON - HOUR)
    res = asyncio.run(run_tick(db, now=NOON))
    assert res["follow_ups"]["sent"] == 1
    assert sent == ["Checking in!"]


def test_cron_requires_secret_when_set(client, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    assert client.post("/cron/tick").status_code == 401
    r = client.post("/cron/tick", headers={"X-Cron-Secret": "s3cret"})
    assert r.status_code == 200
    assert set(r.json()) >= {"follow_ups", "drips", "campaigns"}


def test_failed_drip_backs_off_so_other_drips_send(db, lead, sent):
    broke = dbm.Lead(tenant_id="t2", first_name="Bo", phone="+15552018888", tags=[], status="new")
    db.add(broke)
    db.commit()
    asyncio.run(drips.start_drip(db, "t2", broke.id, ai=AIClient(), now=NOON - 60, messages=["no points for this"]))
    _start(db, lead, messages=["hello"])

    due = NOON + 24 * HOUR
    first = asyncio.run(drips.process_drips(db, ai=AIClient(), now=due, limit=1))
    assert first["errors"] == 1
    second = asyncio.run(drips.process_drips(db, ai=AIClient(), now=due, limit=1))
    assert second["processed"] == 1
    assert sent == ["hello"]

    waiting = drips.drip_status(db, "t2", lead_id=broke.id)
    assert waiting["status"] == "active"
    assert waiting["next_send_at"] == due + HOUR


def test_drip_to_dnc_recipient_is_stopped(db, lead, sent):
    from src.backend.app.messaging import add_dnc

    _start(db, lead, messages=["a", "b"])
    add_dnc(db, "t1", "+15552017777")
    stats = _process(db, NOON + 24 * HOUR)
    assert stats["stopped"] == 1
    assert sent == []
    status = drips.drip_status(db, "t1", lead_id=lead)
    assert status["status"] == "stopped"
    assert {m["status"] for m in status["messages"]} == {"cancelled"}


class DripAI:
    configured = True

    async def generate(self, system, messages, max_tokens=512, temperature=0.4, purpose="chat"):
        return "Hi Dana, fresh idea for your quote today."


def test_ai_written_drip_message_is_charged(db, lead, sent):
    _start(db, lead, messages=["first nudge"], max_messages=2)
    asyncio.run(drips.process_drips(db, ai=DripAI(), now=NOON + 24 * HOUR))
    asyncio.run(drips.process_drips(db, ai=DripAI(), now=NOON + 48 * HOUR))
    assert sent == ["first nudge", "Hi Dana, fresh idea for your quote today."]
    # two texts plus one ai_response
    assert get_balance(db, "t1") == 996
    charges = db.query(dbm.PointTransaction).filter(dbm.PointTransaction.action_type == "ai_response").count()
    assert charges == 1
