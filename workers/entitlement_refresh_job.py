from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from entitlement_engine.service import RefreshOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class RefreshStats:
    started_at: str
    completed_at: Optional[str] = None
    tier: Optional[str] = None
    source: Optional[str] = None
    is_stale: bool = False
    errors: int = 0


async def run_entitlement_refresh_cycle(service: RefreshOrchestrator) -> RefreshStats:
    """Background revalidation.

    Responsibilities:
    - force a live reconciliation so revocations land within one interval
    - keep the persisted snapshot young enough for fast-path reads
    """

    stats = RefreshStats(started_at=datetime.now(timezone.utc).isoformat())

    snapshot = await service.resolve(force_refresh=True)
    stats.tier = snapshot.tier.value
    stats.source = snapshot.source.value
    stats.is_stale = snapshot.is_stale
    if snapshot.error:
        stats.errors += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info("Entitlement refresh cycle completed", extra=vars(stats))
    return stats


async def run_forever(service: RefreshOrchestrator, interval_seconds: int = 3600) -> None:
    while True:
        await run_entitlement_refresh_cycle(service)
        await asyncio.sleep(interval_seconds)
