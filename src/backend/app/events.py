from datetime import datetime, timezone
from typing import Dict, Any, Optional
import logging
import os
import json
import re
import time
import redis
from sqlalchemy import text as _sa_text

logger = logging.getLogger("hyvewyre.events")

CHANNEL = "hyvewyre.events"
# payload keys that carry a lead's phone number
PHONE_KEYS = {"phone", "to", "from", "from_number", "to_number", "sender"}
_DIGITS_RE = re.compile(r"\d")

_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        _redis_client = redis.Redis.from_url(url, decode_responses=True)
        _redis_client.ping()
    except redis.RedisError:
        _redis_client = None
    return _redis_client


def mask_phone(value: Optional[str]) -> Optional[str]:
    """'+15551234567' -> '+1******4567'."""
    if not value:
        return value
    digits = _DIGITS_RE.findall(value)
    if len(digits) <= 4:
        return value
    keep = len(digits) - 4
    out, seen = [], 0
    for ch in value:
        if ch.isdigit():
            seen += 1
            out.append(ch if seen == 1 or seen > keep else "*")
        else:
            out.append(ch)
    return "".join(out)


def redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (mask_phone(v) if k in PHONE_KEYS and isinstance(v, str) else v) for k, v in payload.items()}


def emit_event(name: str, payload: Dict[str, Any]) -> None:
    """Log, publish and ledger a domain event.

    Published and logged copies have phone numbers masked. The ledger row keeps
    the full payload since it is tenant-scoped storage.
    """
    ts = datetime.now(timezone.utc).isoformat()
    public = redact(payload)
    logger.info("EVENT %s %s: %s", ts, name, public)
    client = _get_redis()
    if client is not None:
        body = json.dumps({"name": name, "ts": ts, "payload": public}, default=str)
        try:
            client.publish(CHANNEL, body)
            tenant_id = payload.get("tenant_id")
            if tenant_id:
                client.publish(f"{CHANNEL}.{tenant_id}", body)
        except redis.RedisError:
            logger.warning("event_publish_failed", extra={"event": name})
    if os.getenv("EVENTS_LEDGER", "1") != "1":
        return
    try:
        from .db import engine  # local import to avoid circulars at startup
        with engine.begin() as conn:
            conn.execute(
                _sa_text("INSERT INTO events_ledger (ts, tenant_id, name, payload) VALUES (:ts, :tenant_id, :name, :payload)"),
                {
                    "ts": int(time.time()),
                    "tenant_id": str(payload.get("tenant_id", "")),
                    "name": name,
                    "payload": json.dumps(payload, default=str),
                },
            )
    except Exception:
        logger.warning("event_ledger_write_failed", extra={"event": name})
