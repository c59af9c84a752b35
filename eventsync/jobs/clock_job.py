"""
Clock Job for time-driven session notifications.
Announces sessions about to start, the keynote a day ahead and session
surveys once a session is over. Each (session, kind) pair is announced once.
"""

import asyncio
from datetime import UTC, datetime

from eventsync.config import settings
from eventsync.context import AppContext, build_context
from eventsync.features.notifications.services.dispatcher import enqueue_notify_subscribers
from eventsync.features.schedule.domain.clock import (
    collapse_candidates,
    upcoming_sessions,
    upcoming_surveys,
)
from eventsync.features.schedule.domain.models import ChangeSet
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 60


class ClockJob:
    """
    Background job that turns the schedule into start, soon and survey
    changes as time passes.
    """

    def __init__(self, ctx: AppContext):
        self.ctx = ctx
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.last_result: dict | None = None

    async def run(
        self,
        now: datetime | None = None,
        *,
        delivery_attempt: int = 0,
        scheduled: bool = True,
    ) -> ChangeSet | None:
        """
        Store and fan out one ChangeSet with every newly due session.

        Args:
            now: Evaluation time, defaults to the current time
            delivery_attempt: Redelivery counter of the triggering task
            scheduled: True when triggered by the scheduler loop

        Returns:
            The stored ChangeSet, or None when nothing was due or the
            invocation was a redelivery
        """
        if delivery_attempt > 0 and not scheduled:
            logger.info("Ignoring redelivered clock run", delivery_attempt=delivery_attempt)
            return None

        now = now or datetime.now(UTC)
        cfg = self.ctx.settings
        snapshot = await self.ctx.snapshots.get_latest()
        sessions = list(snapshot.sessions.values())

        candidates = upcoming_sessions(
            now,
            sessions,
            start_lookahead=cfg.start_lookahead(),
            soon_lookahead=cfg.soon_lookahead(),
            soon_ids=cfg.SOON_SESSION_IDS,
        )
        candidates += upcoming_surveys(
            now, sessions, grace=cfg.survey_grace(), survey_ids=cfg.SURVEY_SESSION_IDS
        )
        if not candidates:
            logger.debug("No upcoming sessions", sessions=len(sessions))
            return None

        async with self.ctx.datastore.transaction() as txn:
            new_keys = set(
                await self.ctx.ledger.filter_new([c.ledger_key for c in candidates], txn=txn)
            )
            due = collapse_candidates(c for c in candidates if c.ledger_key in new_keys)
            claimed = set(await self.ctx.ledger.claim([c.ledger_key for c in due], txn=txn))
            due = [c for c in due if c.ledger_key in claimed]
            if not due:
                logger.debug("Upcoming sessions already announced", candidates=len(candidates))
                return None

            changes = ChangeSet(
                updated_at=now,
                sessions={c.session.id: c.session.with_change(c.kind) for c in due},
            )
            await self.ctx.change_log.store(changes, txn=txn)
            await enqueue_notify_subscribers(self.ctx.queue, changes, txn=txn)

        logger.info(
            "Clock changes stored",
            sessions=len(changes.sessions),
            kinds=sorted({c.kind.value for c in due}),
        )
        return changes

    async def run_once(self) -> dict:
        """Run a single scheduled iteration and return its summary."""
        if self.is_running:
            logger.warning("Clock job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            changes = await self.run()
            self.last_run_time = datetime.now(UTC)
            self.last_result = {
                "job_run": "clock",
                "sessions": len(changes.sessions) if changes else 0,
            }
            return self.last_result
        finally:
            self.is_running = False

    def get_job_status(self) -> dict:
        """Get current job status."""
        return {
            "job_name": "clock",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": self.ctx.settings.CLOCK_INTERVAL_SECONDS,
            "last_result": self.last_result,
        }


async def start_clock_scheduler(ctx: AppContext | None = None):
    """
    Start the clock job scheduler.

    Runs in a separate worker process; builds its own context when none is given.
    """
    owned = ctx is None
    ctx = ctx or await build_context(settings)
    job = ClockJob(ctx)
    interval = ctx.settings.CLOCK_INTERVAL_SECONDS
    logger.info("Starting clock job scheduler", interval_seconds=interval)

    try:
        while True:
            try:
                result = await job.run_once()
                if result.get("sessions"):
                    logger.info("Clock job cycle completed", **result)
                await asyncio.sleep(interval)
            except Exception as e:
                logger.error(
                    "Error in clock job scheduler", error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        if owned:
            await ctx.close()
