import time
from typing import Tuple

from .cache import cache_get, cache_incr

# Per-tier multipliers; paid tiers get more headroom for bulk sends and AI calls
TIER_MULTIPLIER = {"unpaid": 1, "growth": 2, "scale": 5}


def check_and_increment(
    tenant_id: str,
    key: str,
    max_per_minute: int = 60,
    burst: int = 30,
    tier: str = "unpaid",
) -> Tuple[bool, int]:
    """Fixed one-minute window with a burst allowance, scaled by subscription tier.
    Returns (allowed, current_count).
    """
    mult = TIER_MULTIPLIER.get(tier, 1)
    ceiling = (max_per_minute + burst) * mult
    bucket = f"rl:{tenant_id}:{key}:{int(time.time() // 60)}"
    current = cache_get(bucket)
    if current is not None and int(current) >= ceiling:
        return False, int(current)
    val = cache_incr(bucket, 1, expire_seconds=65)
    return val <= ceiling, val


def get_bucket_status(tenant_id: str, key: str, max_per_minute: int = 60, burst: int = 30, tier: str = "unpaid") -> dict:
    mult = TIER_MULTIPLIER.get(tier, 1)
    bucket = f"rl:{tenant_id}:{key}:{int(time.time() // 60)}"
    count = int(cache_get(bucket) or 0)
    return {
        "key": key,
        "count": count,
        "limit": max_per_minute * mult,
        "burst": burst * mult,
        "ttl_s": 60 - int(time.time() % 60),
    }
