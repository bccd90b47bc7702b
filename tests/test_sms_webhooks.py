import pytest

from src.backend.app import messaging
from src.backend.app import models as dbm
from src.backend.app.points import get_balance

TENANT_NUMBER = "+15550000001"
LEAD_PHONE = "+15552019999"


def _telnyx(event_type, **payload):
    return {"data": {"event_type": event_type, "payload": payload}}


def _inbound(text, to=TENANT_NUMBER, frm=LEAD_PHONE, msg_id="in-1"):
    return _telnyx(
        "message.received",
        id=msg_id,
        text=text,
        to=[{"phone_number": to}],
        **{"from": {"phone_number": frm}},
    )


@pytest.fixture
def sent(monkeypatch):
    calls = []

    def fake_send(provider, to, body, from_number, media_urls):
        calls.append({"provider": provider, "to": to, "body": body, "from": from_number})
        return {"provider_id": f"out-{len(calls)}", "status": "queued", "from": from_number}

    monkeypatch.setattr(messaging, "_provider_send", fake_send)
    return calls


def test_send_sms_debits_points_and_records_message(client, headers, funded, sent, db):
    r = client.post("/sms/send", headers=headers, json={"to": "(555) 201-9999", "body": "hello"})
    assert r.status_code == 200
    body = r.json()
    assert body["credits"] == 1
    assert body["provider"] == "telnyx"
    assert sent[0]["to"] == LEAD_PHONE
    assert sent[0]["from"] == TENANT_NUMBER
    assert get_balance(db, "t1") == 999

    thread = client.get("/messages/threads", headers=headers, params={"phone": LEAD_PHONE}).json()
    assert [m["direction"] for m in thread["messages"]] == ["outbound"]


def test_send_to_dnc_is_blocked(client, headers, funded, sent, db):
    assert client.post("/dnc", headers=headers, json={"phone": LEAD_PHONE}).json() == {"added": True}
    r = client.post("/sms/send", headers=headers, json={"to": LEAD_PHONE, "body": "hello"})
    assert r.status_code == 403
    assert r.json()["detail"] == "recipient_on_dnc"
    assert sent == []
    assert get_balance(db, "t1") == 1000


def test_send_without_points_is_402(client, headers, sent):
    r = client.post("/sms/send", headers=headers, json={"to": LEAD_PHONE, "body": "hello"})
    assert r.status_code == 402
    assert r.json()["detail"] == "insufficient_points"
    assert r.json()["info"]["required"] == 1
    assert sent == []


def test_provider_failure_refunds(client, headers, funded, monkeypatch, db):
    def boom(*args, **kwargs):
        raise RuntimeError("carrier rejected")

    monkeypatch.setattr(messaging, "_provider_send", boom)
    r = client.post("/sms/send", headers=headers, json={"to": LEAD_PHONE, "body": "hello"})
    assert r.status_code == 502
    assert get_balance(db, "t1") == 1000
    failed = db.query(dbm.Message).filter(dbm.Message.status == "failed").count()
    assert failed == 1
    assert db.query(dbm.DeadLetter).count() == 1


def test_telnyx_stop_then_start(client, headers, funded, db):
    r = client.post("/webhooks/telnyx/sms", json=_inbound("Stop"))
    assert r.status_code == 200
    assert r.json()["status"] == "opt_out"
    check = client.get("/dnc/check", headers=headers, params={"phone": LEAD_PHONE}).json()
    assert check["dnc"] is True
    lead = db.query(dbm.Lead).filter(dbm.Lead.phone == LEAD_PHONE).one()
    assert lead.opted_out is True
    assert lead.source == "inbound_sms"

    r = client.post("/webhooks/telnyx/sms", json=_inbound("START", msg_id="in-2"))
    assert r.json()["status"] == "opt_in"
    assert client.get("/dnc/check", headers=headers, params={"phone": LEAD_PHONE}).json()["dnc"] is False


def test_inbound_to_unknown_number_is_ignored(client, funded, db):
    r = client.post("/webhooks/telnyx/sms", json=_inbound("hi", to="+15550000099"))
    assert r.json()["status"] == "ignored"
    assert db.query(dbm.Message).count() == 0


def test_plain_reply_is_stored(client, headers, funded):
    r = client.post("/webhooks/telnyx/sms", json=_inbound("sounds good"))
    assert r.json()["status"] == "stored"
    threads = client.get("/messages/threads", headers=headers).json()["items"]
    assert threads[0]["phone"] == LEAD_PHONE


def test_telnyx_delivery_receipt_updates_status(client, headers, funded, sent, db):
    client.post("/sms/send", headers=headers, json={"to": LEAD_PHONE, "body": "hello"})
    receipt = _telnyx("message.finalized", id="out-1", to=[{"phone_number": LEAD_PHONE, "status": "delivered"}])
    r = client.post("/webhooks/telnyx/sms", json=receipt)
    assert r.json() == {"status": "ok", "updated": True}
    assert db.query(dbm.Message).filter(dbm.Message.provider_id == "out-1").one().status == "delivered"


def test_twilio_inbound_returns_twiml(client, funded, db):
    r = client.post(
        "/webhooks/twilio/sms",
        data={"From": LEAD_PHONE, "To": TENANT_NUMBER, "Body": "hello there", "MessageSid": "SM1", "NumMedia": "0"},
    )
    assert r.status_code == 200
    assert r.text == "<Response></Response>"
    assert db.query(dbm.Message).filter(dbm.Message.provider == "twilio").count() == 1


def test_twilio_signature_enforced_when_configured(client, funded, monkeypatch):
    monkeypatch.setenv("TWILIO_AUTH_TOKEN", "secret")
    r = client.post("/webhooks/twilio/sms", data={"From": LEAD_PHONE, "To": TENANT_NUMBER, "Body": "hi"})
    assert r.status_code == 403


def test_limits_status_counts_sends(client, headers, funded, sent):
    client.post("/sms/send", headers=headers, json={"to": LEAD_PHONE, "body": "hello"})
    items = client.get("/limits/status", headers=headers).json()["items"]
    assert items["sms_send"]["count"] == 1
    assert items["sms_send"]["limit"] == 60
    assert items["ai"]["count"] == 0


def test_event_payloads_mask_phone_numbers():
    from src.backend.app.events import mask_phone, redact

    assert mask_phone("+15551234567") == "+1******4567"
    assert mask_phone("911") == "911"
    assert redact({"tenant_id": "t1", "to": "+15551234567", "count": 3}) == {
        "tenant_id": "t1",
        "to": "+1******4567",
        "count": 3,
    }
