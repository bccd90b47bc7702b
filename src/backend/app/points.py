import logging
import time
from typing import Dict, Any, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models as dbm
from .errors import InsufficientPoints, NotFound
from .events import emit_event
from .metrics_counters import POINTS_SPENT

logger = logging.getLogger(__name__)

POINT_COSTS: Dict[str, int] = {
    "sms_sent": 1,
    "ai_response": 2,
    "document_upload": 5,
    "bulk_message": 2,
    "flow_creation": 15,
}

PAID_TIERS = {"growth", "scale"}

POINT_PACKS: List[Dict[str, Any]] = [
    {"id": "starter", "name": "Starter", "points": 4000, "price": 40.00, "premium_price": 36.00},
    {"id": "pro", "name": "Pro", "points": 10000, "price": 95.00, "premium_price": 80.00},
    {"id": "business", "name": "Business", "points": 25000, "price": 225.00, "premium_price": 187.50},
    {"id": "enterprise", "name": "Enterprise", "points": 60000, "price": 510.00, "premium_price": 420.00},
]

CREDIT_KINDS = {"purchase", "earn", "refund", "grant"}


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" + ("" if n == 1 else "s")


def calculate_sms_credits(message: str, media_count: int = 0) -> Dict[str, Any]:
    """1-140 chars cost 1 credit, 141-280 cost 2, longer cost 3; each media attachment adds 6."""
    chars = len(message or "")
    if chars == 0:
        segments = 0
    elif chars <= 140:
        segments = 1
    elif chars <= 280:
        segments = 2
    else:
        segments = 3
    media_count = max(0, int(media_count or 0))
    media_credits = media_count * 6
    parts = []
    if segments:
        parts.append(f"{_plural(segments, 'credit')} ({chars} chars, {_plural(segments, 'segment')})")
    if media_credits:
        parts.append(f"{_plural(media_credits, 'credit')} ({_plural(media_count, 'photo')})")
    return {
        "credits": segments + media_credits,
        "segments": segments,
        "character_count": chars,
        "has_media": media_count > 0,
        "media_count": media_count,
        "breakdown": " + ".join(parts) or "0 credits",
    }


def per_lead_cost(message: str, media_count: int = 0) -> int:
    """Bulk sends charge the bulk rate, or the segment credits when the text is longer."""
    return max(POINT_COSTS["bulk_message"], calculate_sms_credits(message, media_count)["credits"])


def estimate_campaign_cost(message: str, lead_count: int, media_count: int = 0) -> Dict[str, Any]:
    per_lead = per_lead_cost(message, media_count)
    calc = calculate_sms_credits(message, media_count)
    return {
        "per_lead": per_lead,
        "lead_count": int(lead_count),
        "total": per_lead * int(lead_count),
        "segments": calc["segments"],
        "breakdown": calc["breakdown"],
    }


def pack_price(pack: Dict[str, Any], tier: str) -> float:
    return pack["premium_price"] if tier in PAID_TIERS else pack["price"]


def list_packs(tier: str = "unpaid") -> List[Dict[str, Any]]:
    return [
        {"id": p["id"], "name": p["name"], "points": p["points"], "price": pack_price(p, tier)}
        for p in POINT_PACKS
    ]


def find_pack(pack_id: str) -> Optional[Dict[str, Any]]:
    for p in POINT_PACKS:
        if p["id"] == (pack_id or "").lower():
            return p
    return None


def get_or_create_user(db: Session, tenant_id: str) -> dbm.User:
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    if user is None:
        user = dbm.User(tenant_id=tenant_id, credits=0)
        db.add(user)
        db.flush()
    return user


def get_balance(db: Session, tenant_id: str) -> int:
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    return int(user.credits or 0) if user else 0


def spend_points(
    db: Session,
    tenant_id: str,
    amount: int,
    description: str = "",
    action_type: str = "spend",
    reference: Optional[str] = None,
) -> int:
    """Debit points; raises InsufficientPoints instead of going negative. Returns the new balance."""
    amount = int(amount)
    if amount <= 0:
        return get_balance(db, tenant_id)
    get_or_create_user(db, tenant_id)
    # conditional debit: concurrent spends can not overdraw
    res = db.execute(
        update(dbm.User)
        .where(dbm.User.tenant_id == tenant_id, dbm.User.credits >= amount)
        .values(credits=dbm.User.credits - amount, updated_at=int(time.time()))
        .execution_options(synchronize_session="fetch")
    )
    if res.rowcount != 1:
        balance = get_balance(db, tenant_id)
        logger.info("points_insufficient", extra={"tenant_id": tenant_id, "required": amount, "balance": balance})
        raise InsufficientPoints(required=amount, balance=balance)
    balance = get_balance(db, tenant_id)
    db.add(
        dbm.PointTransaction(
            tenant_id=tenant_id,
            action_type=action_type,
            points_amount=-amount,
            balance_after=balance,
            description=description or None,
            reference=reference,
        )
    )
    db.commit()
    POINTS_SPENT.labels(reason=action_type).inc(amount)
    emit_event("PointsSpent", {"tenant_id": tenant_id, "amount": amount, "action_type": action_type, "balance": balance})
    return balance


def charge_action(db: Session, tenant_id: str, action: str, count: int = 1, description: str = "") -> int:
    cost = POINT_COSTS[action] * int(count)
    return spend_points(db, tenant_id, cost, description or f"{action} ({count}x)", action_type=action)


def add_points(
    db: Session,
    tenant_id: str,
    amount: int,
    description: str = "",
    kind: str = "purchase",
    reference: Optional[str] = None,
) -> int:
    if kind not in CREDIT_KINDS:
        raise ValueError(f"unknown credit kind: {kind}")
    amount = int(amount)
    if amount <= 0:
        raise ValueError("amount must be positive")
    user = get_or_create_user(db, tenant_id)
    db.execute(
        update(dbm.User)
        .where(dbm.User.id == user.id)
        .values(credits=dbm.User.credits + amount, updated_at=int(time.time()))
        .execution_options(synchronize_session="fetch")
    )
    balance = get_balance(db, tenant_id)
    db.add(
        dbm.PointTransaction(
            tenant_id=tenant_id,
            action_type=kind,
            points_amount=amount,
            balance_after=balance,
            description=description or None,
            reference=reference,
        )
    )
    db.commit()
    emit_event("PointsAdded", {"tenant_id": tenant_id, "amount": amount, "kind": kind, "balance": balance})
    return balance


def refund_points(db: Session, tenant_id: str, amount: int, description: str = "refund") -> int:
    if int(amount) <= 0:
        return get_balance(db, tenant_id)
    return add_points(db, tenant_id, amount, description, kind="refund")


def recent_transactions(db: Session, tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    rows = (
        db.query(dbm.PointTransaction)
        .filter(dbm.PointTransaction.tenant_id == tenant_id)
        .order_by(dbm.PointTransaction.id.desc())
        .limit(max(1, min(int(limit), 500)))
        .all()
    )
    return [
        {
            "id": r.id,
            "action_type": r.action_type,
            "points_amount": r.points_amount,
            "balance_after": r.balance_after,
            "description": r.description,
            "created_at": r.created_at,
        }
        for r in rows
    ]


def require_user(db: Session, tenant_id: str) -> dbm.User:
    user = db.query(dbm.User).filter(dbm.User.tenant_id == tenant_id).first()
    if user is None:
        raise NotFound("user_not_found")
    return user
