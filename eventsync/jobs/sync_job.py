"""
Periodic upstream sync.

Complements the storage change notifications on ``/sync/gcs`` so a missed
notification is picked up within SYNC_INTERVAL_SECONDS.
"""

import asyncio

from eventsync.config import settings
from eventsync.context import AppContext, build_context
from eventsync.features.schedule.services.sync_service import SyncError
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 60


async def start_sync_scheduler(ctx: AppContext | None = None):
    """Run a trusted sync every SYNC_INTERVAL_SECONDS."""
    owned = ctx is None
    ctx = ctx or await build_context(settings)
    interval = ctx.settings.SYNC_INTERVAL_SECONDS
    logger.info("Starting sync scheduler", interval_seconds=interval)

    try:
        while True:
            try:
                result = await ctx.sync.run(trusted=True)
                logger.info("Sync cycle completed", status=result.status.value)
                await asyncio.sleep(interval)
            except SyncError as e:
                logger.error("Sync cycle failed", error=str(e), operation=e.operation)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        if owned:
            await ctx.close()
