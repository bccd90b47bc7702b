from src.backend.app import main
from src.backend.app import models as dbm
from src.backend.app.billing import handle_event
from src.backend.app.points import get_balance, get_or_create_user


def _checkout(session_id="cs_1", points="500", tenant="t1"):
    return {
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "payment_status": "paid",
                "metadata": {"tenant_id": tenant, "pack_id": "starter", "points": points},
            }
        },
    }


def test_checkout_completed_credits_once(db):
    res = handle_event(db, _checkout())
    assert res["status"] == "credited"
    assert res["balance"] == 500
    assert handle_event(db, _checkout())["status"] == "duplicate"
    assert get_balance(db, "t1") == 500
    assert db.query(dbm.PointTransaction).filter(dbm.PointTransaction.action_type == "purchase").count() == 1


def test_checkout_without_metadata_is_ignored(db):
    assert handle_event(db, _checkout(points="0"))["status"] == "ignored"
    assert handle_event(db, {"type": "invoice.created", "data": {"object": {}}})["status"] == "ignored"


def test_subscription_updates_tier(db):
    user = get_or_create_user(db, "t1")
    user.stripe_customer_id = "cus_1"
    db.commit()
    event = {
        "type": "customer.subscription.updated",
        "data": {"object": {"customer": "cus_1", "status": "active", "metadata": {"tier": "scale"}}},
    }
    assert handle_event(db, event) == {"status": "ok", "tenant_id": "t1", "tier": "scale"}
    deleted = {"type": "customer.subscription.deleted", "data": {"object": {"customer": "cus_1", "status": "canceled"}}}
    assert handle_event(db, deleted)["tier"] == "unpaid"


def test_webhook_route_verifies_and_credits(client, monkeypatch):
    seen = {}

    def fake_construct(payload, sig):
        seen["sig"] = sig
        return _checkout(session_id="cs_route")

    monkeypatch.setattr(main, "construct_event", fake_construct)
    r = client.post("/billing/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})
    assert r.status_code == 200
    assert r.json()["status"] == "credited"
    assert seen["sig"] == "t=1,v1=abc"


def test_webhook_bad_signature_is_400(client, monkeypatch):
    def bad(payload, sig):
        raise ValueError("No signatures found")

    monkeypatch.setattr(main, "construct_event", bad)
    r = client.post("/billing/webhook", content=b"{}", headers={"Stripe-Signature": "nope"})
    assert r.status_code == 400
    assert r.json()["detail"] == "invalid_signature"


def test_checkout_without_stripe_key(client, headers):
    r = client.post("/billing/checkout", headers=headers, json={"pack_id": "starter"})
    assert r.status_code == 500
    assert r.json()["detail"] == "stripe_not_configured"


def test_checkout_unknown_pack(client, headers):
    r = client.post("/billing/checkout", headers=headers, json={"pack_id": "mega"})
    assert r.status_code == 404
