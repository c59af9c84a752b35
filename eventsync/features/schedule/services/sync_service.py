"""
Sync orchestrator: pull the upstream schedule, diff it against the stored
snapshot, persist both and queue notification fan-out.

Only one sync runs at a time, enforced best-effort by a guard counter in the
result cache. The snapshot, the change log entry and the fan-out task are
written in one datastore transaction.
"""

import hmac
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from eventsync.features.notifications.services.dispatcher import enqueue_notify_subscribers
from eventsync.features.schedule.domain.diff import diff_snapshots
from eventsync.features.schedule.domain.models import ChangeSet
from eventsync.features.schedule.repository.change_log_repository import ChangeLogRepository
from eventsync.features.schedule.repository.snapshot_repository import SnapshotRepository
from eventsync.features.schedule.services.manifest_client import ManifestClient
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.services.infrastructure.cache import CacheError
from eventsync.services.work_queue import WorkQueue
from eventsync.storage.datastore import Datastore

logger = get_logger(__name__)

SYNC_GUARD_KEY = "sync-guard"


class SyncError(Exception):
    """Custom exception for a failed sync run."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class SyncStatus(str, Enum):
    UNAUTHORIZED = "unauthorized"
    ALREADY_RUNNING = "already_running"
    NOT_MODIFIED = "not_modified"
    EMPTY_DIFF = "empty_diff"
    SYNCED = "synced"


@dataclass
class SyncResult:
    status: SyncStatus
    fingerprint: str = ""
    changes: ChangeSet | None = None


class SyncService:
    def __init__(
        self,
        *,
        datastore: Datastore,
        cache,
        snapshots: SnapshotRepository,
        change_log: ChangeLogRepository,
        manifest: ManifestClient,
        queue: WorkQueue,
        sync_token: str = "",
        guard_ttl_s: int = 300,
    ):
        self.datastore = datastore
        self.cache = cache
        self.snapshots = snapshots
        self.change_log = change_log
        self.manifest = manifest
        self.queue = queue
        self.sync_token = sync_token
        self.guard_ttl_s = guard_ttl_s

    def is_authorized(self, token: str | None, trusted: bool) -> bool:
        if trusted:
            return True
        if not self.sync_token or not token:
            return False
        return hmac.compare_digest(token.encode(), self.sync_token.encode())

    async def run(self, token: str | None = None, trusted: bool = False) -> SyncResult:
        """
        Run one sync.

        Args:
            token: Shared secret presented by the caller
            trusted: Invocation by the scheduler or work queue

        Returns:
            SyncResult describing which gate ended the run

        Raises:
            SyncError: guard, fetch, diff or persistence failure
        """
        if not self.is_authorized(token, trusted):
            logger.warning("Not performing sync: bad or missing token")
            return SyncResult(SyncStatus.UNAUTHORIZED)

        try:
            running = await self.cache.increment(SYNC_GUARD_KEY, 1, 0, ttl_s=self.guard_ttl_s)
        except CacheError as e:
            raise SyncError(f"sync guard: {e}", operation="guard") from e

        if running > 1:
            logger.info("Sync already running", guard=running)
            return SyncResult(SyncStatus.ALREADY_RUNNING)

        try:
            return await self._sync()
        except SyncError:
            raise
        except Exception as e:
            logger.error("Sync failed", error=str(e), error_type=type(e).__name__)
            raise SyncError(f"sync: {e}", operation="sync") from e
        finally:
            try:
                await self.cache.delete_multi([SYNC_GUARD_KEY])
            except CacheError as e:
                logger.error("Failed to clear sync guard", error=str(e))

    async def _sync(self) -> SyncResult:
        async with self.datastore.transaction() as txn:
            old = await self.snapshots.get_latest(txn=txn)
            new = await self.manifest.fetch(since=old.modified_at)
            if new is None:
                return SyncResult(SyncStatus.NOT_MODIFIED, fingerprint=old.fingerprint)

            changes = diff_snapshots(old, new, now=datetime.now(UTC))
            if changes.is_empty():
                logger.info("Sync diff is empty", last_modified=str(old.modified_at))
                return SyncResult(SyncStatus.EMPTY_DIFF, fingerprint=old.fingerprint)

            fingerprint = await self.snapshots.store(new, txn=txn)
            await self.change_log.store(changes, txn=txn)
            await enqueue_notify_subscribers(self.queue, changes, txn=txn)

        logger.info(
            "Sync completed",
            fingerprint=fingerprint,
            sessions=len(changes.sessions),
            speakers=len(changes.speakers),
            videos=len(changes.videos),
            tags=len(changes.tags),
        )
        return SyncResult(SyncStatus.SYNCED, fingerprint=fingerprint, changes=changes)
