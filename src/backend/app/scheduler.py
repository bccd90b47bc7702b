import os
import time
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .ai import AIClient
from .campaigns import run_due_campaigns
from .drips import process_drips
from .events import emit_event
from .followups import process_due
from .metrics_counters import SCHED_TICKS


async def run_tick(
    db: Session,
    tenant_id: Optional[str] = None,
    now: Optional[int] = None,
    ai: Optional[AIClient] = None,
) -> Dict[str, Any]:
    """One scheduler pass: due follow-ups, then drips, then scheduled campaigns."""
    now = int(now or time.time())
    # configurable batch size per tick, shared across the three queues
    batch_limit = int(os.getenv("SCHEDULER_TICK_LIMIT", "200"))
    followups = process_due(db, now=now, limit=batch_limit, tenant_id=tenant_id)
    remaining = max(1, batch_limit - followups["sent"] - followups["failed"])
    drips = await process_drips(db, ai=ai, now=now, limit=remaining, tenant_id=tenant_id)
    remaining = max(1, remaining - drips["processed"] - drips["errors"])
    campaigns = run_due_campaigns(db, now=now, limit=remaining, tenant_id=tenant_id)
    SCHED_TICKS.labels(scope=tenant_id or "all").inc()
    result = {"follow_ups": followups, "drips": drips, "campaigns": campaigns, "ts": now}
    emit_event("SchedulerTick", {"tenant_id": tenant_id or "", **{k: v for k, v in result.items() if k != "ts"}})
    return result
