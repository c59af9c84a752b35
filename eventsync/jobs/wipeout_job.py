"""
Wipeout Job for inactive user data.
Deletes bookmarks and user records of users inactive for longer than the
retention window, across every user store shard.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from eventsync.config import settings
from eventsync.context import AppContext, build_context
from eventsync.features.notifications.repository.user_store import FirebaseUserStore
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 1800


class WipeoutError(Exception):
    """Custom exception for wipeout failures."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def cutoff_millis(now: datetime, days: int) -> int:
    """Activity cutoff as milliseconds since the epoch."""
    return int((now - timedelta(days=days)).timestamp() * 1000)


def seconds_until_hour(now: datetime, hour: int) -> float:
    """Seconds from now until the next occurrence of hour:00 UTC."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class WipeoutJob:
    def __init__(self, user_store: FirebaseUserStore, cutoff_days: int = 30):
        self.user_store = user_store
        self.cutoff_days = cutoff_days
        self.is_running = False
        self.last_run_time: datetime | None = None

    async def run(self, now: datetime | None = None) -> dict[str, int]:
        """
        Wipe inactive users on every shard concurrently.

        Returns:
            Number of users wiped per shard

        Raises:
            WipeoutError: any shard failed; the other shards still ran to completion
        """
        now = now or datetime.now(UTC)
        cutoff = cutoff_millis(now, self.cutoff_days)
        shards = self.user_store.shards
        logger.info("Starting wipeout", shards=len(shards), cutoff_ms=cutoff)

        self.is_running = True
        try:
            results = await asyncio.gather(
                *(self._wipe_shard(shard, cutoff) for shard in shards), return_exceptions=True
            )
        finally:
            self.is_running = False

        wiped: dict[str, int] = {}
        failed: list[str] = []
        for shard, result in zip(shards, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Wipeout failed for shard", shard=shard, error=str(result))
                failed.append(shard)
            else:
                wiped[shard] = result

        if failed:
            raise WipeoutError(f"wipeout failed for {len(failed)} shard(s)", operation="wipeout")

        self.last_run_time = now
        logger.info("Wipeout completed", users=sum(wiped.values()), shards=len(wiped))
        return wiped

    async def _wipe_shard(self, shard: str, cutoff_ms: int) -> int:
        users = await self.user_store.list_inactive_users(shard, cutoff_ms)
        logger.info("Inactive users found", shard=shard, users=len(users))

        results = await asyncio.gather(
            *(self._wipe_user(uid, shard) for uid in users), return_exceptions=True
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise WipeoutError(
                f"{len(errors)} of {len(users)} users failed on {shard}: {errors[0]}",
                operation="wipe_shard",
            )
        return len(users)

    async def _wipe_user(self, uid: str, shard: str) -> None:
        # bookmark data strictly before the user record
        await self.user_store.delete_user_data(uid, shard)
        await self.user_store.delete_user(uid, shard)
        logger.info("User wiped", uid=uid, shard=shard)

    def get_job_status(self) -> dict:
        return {
            "job_name": "wipeout",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "cutoff_days": self.cutoff_days,
        }


async def start_wipeout_scheduler(ctx: AppContext | None = None):
    """
    Start the daily wipeout scheduler.

    Runs once a day at WIPEOUT_SCHEDULE_HOUR (UTC).
    """
    owned = ctx is None
    ctx = ctx or await build_context(settings)
    job = WipeoutJob(ctx.user_store, cutoff_days=ctx.settings.WIPEOUT_CUTOFF_DAYS)
    hour = ctx.settings.WIPEOUT_SCHEDULE_HOUR
    logger.info("Starting wipeout job scheduler", schedule_hour=hour)

    try:
        while True:
            await asyncio.sleep(seconds_until_hour(datetime.now(UTC), hour))
            try:
                await job.run()
            except Exception as e:
                logger.error(
                    "Error in wipeout job scheduler", error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        if owned:
            await ctx.close()
