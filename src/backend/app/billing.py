import os
import logging
from typing import Any, Dict, Optional

import stripe as _stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models as dbm
from .analytics import ph_capture
from .errors import NotFound
from .events import emit_event
from .points import add_points, find_pack, get_or_create_user, pack_price

logger = logging.getLogger(__name__)


def stripe_client():
    secret = os.getenv("STRIPE_SECRET_KEY")
    if not secret:
        raise RuntimeError("stripe not configured")
    _stripe.api_key = secret
    return _stripe


def _origin() -> str:
    return os.getenv("APP_ORIGIN", "http://localhost:3000").rstrip("/")


def ensure_customer(db: Session, tenant_id: str) -> str:
    user = get_or_create_user(db, tenant_id)
    if user.stripe_customer_id:
        return user.stripe_customer_id
    s = stripe_client()
    customer = s.Customer.create(email=user.email or None, metadata={"tenant_id": tenant_id})
    user.stripe_customer_id = customer["id"]
    db.commit()
    return user.stripe_customer_id


def create_checkout(db: Session, tenant_id: str, pack_id: str) -> Dict[str, Any]:
    """Checkout session for a point pack; metadata carries what the webhook needs to credit."""
    pack = find_pack(pack_id)
    if pack is None:
        raise NotFound("pack_not_found")
    user = get_or_create_user(db, tenant_id)
    price = pack_price(pack, user.subscription_tier or "unpaid")
    s = stripe_client()
    customer_id = ensure_customer(db, tenant_id)
    origin = _origin()
    session = s.checkout.Session.create(
        mode="payment",
        customer=customer_id,
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": f"{pack['name']} Pack ({pack['points']:,} points)"},
                    "unit_amount": int(round(price * 100)),
                },
                "quantity": 1,
            }
        ],
        metadata={"tenant_id": tenant_id, "pack_id": pack["id"], "points": str(pack["points"])},
        success_url=f"{origin}/points?purchase=success",
        cancel_url=f"{origin}/points?purchase=cancelled",
    )
    emit_event("CheckoutStarted", {"tenant_id": tenant_id, "pack_id": pack["id"], "price": price})
    return {"url": session["url"], "id": session["id"], "price": price, "points": pack["points"]}


def construct_event(payload: bytes, signature: str) -> Dict[str, Any]:
    secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    s = stripe_client()
    return s.Webhook.construct_event(payload, signature, secret)


def _claim(db: Session, tenant_id: str, key: str) -> bool:
    """Record an idempotency key; False when it was already processed."""
    if db.query(dbm.IdempotencyKey).filter(dbm.IdempotencyKey.key == key).first() is not None:
        return False
    db.add(dbm.IdempotencyKey(tenant_id=tenant_id, key=key))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _tier_for_subscription(obj: Dict[str, Any]) -> str:
    if obj.get("status") not in ("active", "trialing"):
        return "unpaid"
    tier = str((obj.get("metadata") or {}).get("tier") or "").lower()
    if tier in ("growth", "scale"):
        return tier
    prices = {
        os.getenv("STRIPE_PRICE_GROWTH", ""): "growth",
        os.getenv("STRIPE_PRICE_SCALE", ""): "scale",
    }
    for item in ((obj.get("items") or {}).get("data") or []):
        price_id = ((item or {}).get("price") or {}).get("id")
        if price_id and price_id in prices:
            return prices[price_id]
    return "growth"


def _user_for_customer(db: Session, customer_id: Optional[str]) -> Optional[dbm.User]:
    if not customer_id:
        return None
    return db.query(dbm.User).filter(dbm.User.stripe_customer_id == customer_id).first()


def handle_event(db: Session, event: Dict[str, Any]) -> Dict[str, Any]:
    typ = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    if typ == "checkout.session.completed":
        meta = obj.get("metadata") or {}
        tenant_id = str(meta.get("tenant_id") or "")
        points = int(meta.get("points") or 0)
        session_id = str(obj.get("id") or "")
        if not tenant_id or points <= 0 or not session_id:
            return {"status": "ignored"}
        if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
            return {"status": "ignored"}
        if not _claim(db, tenant_id, f"stripe:checkout:{session_id}"):
            return {"status": "duplicate"}
        balance = add_points(
            db, tenant_id, points, f"Purchased {meta.get('pack_id') or 'points'} pack", kind="purchase", reference=session_id
        )
        ph_capture("points.purchased", tenant_id=tenant_id, properties={"points": points, "pack": meta.get("pack_id") or ""})
        return {"status": "credited", "tenant_id": tenant_id, "points": points, "balance": balance}
    if typ in ("customer.subscription.created", "customer.subscription.updated", "customer.subscription.deleted"):
        user = _user_for_customer(db, obj.get("customer"))
        if user is None:
            tenant_id = str((obj.get("metadata") or {}).get("tenant_id") or "")
            user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first() if tenant_id else None
        if user is None:
            logger.warning("stripe_subscription_unmatched", extra={"customer": obj.get("customer")})
            return {"status": "ignored"}
        tier = "unpaid" if typ == "customer.subscription.deleted" else _tier_for_subscription(obj)
        user.subscription_tier = tier
        db.commit()
        emit_event("BillingUpdated", {"tenant_id": user.tenant_id, "tier": tier, "status": obj.get("status")})
        return {"status": "ok", "tenant_id": user.tenant_id, "tier": tier}
    return {"status": "ignored"}
