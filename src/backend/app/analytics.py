import logging
import os
from typing import Any, Dict, Optional

from posthog import Posthog

from .events import PHONE_KEYS

logger = logging.getLogger(__name__)

_ph = None


def _get_posthog():
    """Lazy PostHog client; None when POSTHOG_API_KEY is unset or under tests."""
    global _ph
    if _ph is not None:
        return _ph or None
    api_key = os.getenv("POSTHOG_API_KEY", "").strip()
    if not api_key or os.getenv("TESTING") == "1":
        _ph = False
        return None
    host = os.getenv("POSTHOG_HOST", "https://us.i.posthog.com").strip()
    _ph = Posthog(api_key, host=host, timeout=3)
    return _ph


def ph_capture(event: str, tenant_id: str, properties: Optional[Dict[str, Any]] = None) -> None:
    """Product analytics keyed by tenant (sends, imports, point purchases).

    Phone numbers never leave the service. Best-effort: failures are logged.
    """
    client = _get_posthog()
    if not client:
        return
    props = {k: v for k, v in (properties or {}).items() if k not in PHONE_KEYS}
    try:
        client.capture(
            distinct_id=tenant_id or "anonymous",
            event=event,
            properties=props,
            groups={"tenant": tenant_id} if tenant_id else None,
        )
    except Exception as e:
        logger.debug("posthog_capture_failed", extra={"event": event, "error": str(e)[:200]})
