"""Scheduled audit-retention purge."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from warehouse_custody.config import CustodyConfig

if TYPE_CHECKING:
    from warehouse_custody.flow import CustodyFlow

logger = logging.getLogger(__name__)

RETENTION_JOB_ID = "custody-audit-retention"


async def purge_expired_audit_entries(
    flow: CustodyFlow, config: CustodyConfig
) -> int:
    """Run one retention pass; returns the number of purged entries."""
    try:
        purged = await flow.purge_audit(config.audit_retention_days)
    except Exception:
        logger.exception("Audit retention purge failed")
        return 0
    if purged:
        logger.info("Audit retention removed %d entries", purged)
    return purged


def start_retention_scheduler(
    flow: CustodyFlow, config: CustodyConfig
) -> AsyncIOScheduler:
    """Start the interval job that purges expired audit entries.

    Must be called with a running event loop. ``max_instances=1`` keeps
    overlapping runs from stacking up behind a slow purge.
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        purge_expired_audit_entries,
        "interval",
        seconds=config.retention_interval_seconds,
        args=(flow, config),
        id=RETENTION_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        "Audit retention scheduled every %ds, keeping %d days",
        config.retention_interval_seconds,
        config.audit_retention_days,
    )
    return scheduler
