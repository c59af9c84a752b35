"""
Explicitly constructed collaborators shared by the API and the workers.

Nothing in the core reaches for a process-wide store or cache handle; it is
handed an AppContext instead, so tests can assemble one from in-memory
implementations.
"""

from dataclasses import dataclass

import httpx
from fastapi import Request

from eventsync.config import Settings
from eventsync.db.pool import DatabasePoolManager
from eventsync.db.schema import apply_schema
from eventsync.features.notifications.repository.user_store import FirebaseUserStore
from eventsync.features.notifications.services.dispatcher import NotificationDispatcher
from eventsync.features.notifications.services.push_service import PushService
from eventsync.features.schedule.repository.change_log_repository import ChangeLogRepository
from eventsync.features.schedule.repository.dedup_ledger_repository import (
    DedupLedgerRepository,
)
from eventsync.features.schedule.repository.snapshot_repository import SnapshotRepository
from eventsync.features.schedule.services.manifest_client import ManifestClient
from eventsync.features.schedule.services.sync_service import SyncService
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.services.infrastructure.cache import (
    MemoryResultCache,
    RedisResultCache,
    SnapshotCacheShards,
)
from eventsync.services.work_queue import MemoryWorkQueue, PostgresWorkQueue, WorkQueue
from eventsync.storage.datastore import Datastore
from eventsync.storage.memory_datastore import MemoryDatastore
from eventsync.storage.postgres_datastore import PostgresDatastore

logger = get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    datastore: Datastore
    cache: MemoryResultCache | RedisResultCache
    queue: WorkQueue
    snapshots: SnapshotRepository
    change_log: ChangeLogRepository
    ledger: DedupLedgerRepository
    manifest: ManifestClient
    user_store: FirebaseUserStore
    push: PushService
    dispatcher: NotificationDispatcher
    sync: SyncService
    db_pool: DatabasePoolManager | None = None

    async def close(self) -> None:
        await self.cache.close()
        if self.db_pool is not None:
            await self.db_pool.close()


def assemble_context(
    settings: Settings,
    *,
    datastore: Datastore,
    cache: MemoryResultCache | RedisResultCache,
    queue: WorkQueue,
    db_pool: DatabasePoolManager | None = None,
    manifest_transport: httpx.AsyncBaseTransport | None = None,
    user_store_transport: httpx.AsyncBaseTransport | None = None,
) -> AppContext:
    """Wire repositories and services on top of the given backends."""
    snapshots = SnapshotRepository(
        datastore,
        cache,
        SnapshotCacheShards(settings.CACHE_SHARD_COUNT),
        cache_ttl_s=settings.CACHE_TTL_SECONDS,
    )
    change_log = ChangeLogRepository(datastore)
    manifest = ManifestClient(
        settings.MANIFEST_URL,
        tz=settings.event_tz(),
        timeout=settings.MANIFEST_TIMEOUT_SECONDS,
        transport=manifest_transport,
    )
    user_store = FirebaseUserStore(
        settings.FIREBASE_SHARDS,
        settings.FIREBASE_SECRET,
        timeout=settings.FIREBASE_TIMEOUT_SECONDS,
        transport=user_store_transport,
    )
    push = PushService(
        settings.VAPID_PRIVATE_KEY,
        settings.VAPID_SUBJECT,
        timeout=settings.PUSH_TIMEOUT_SECONDS,
        default_retry_s=settings.PUSH_DEFAULT_RETRY_SECONDS,
    )
    sync = SyncService(
        datastore=datastore,
        cache=cache,
        snapshots=snapshots,
        change_log=change_log,
        manifest=manifest,
        queue=queue,
        sync_token=settings.SYNC_TOKEN,
        guard_ttl_s=settings.SYNC_GUARD_TTL_SECONDS,
    )
    return AppContext(
        settings=settings,
        datastore=datastore,
        cache=cache,
        queue=queue,
        snapshots=snapshots,
        change_log=change_log,
        ledger=DedupLedgerRepository(datastore),
        manifest=manifest,
        user_store=user_store,
        push=push,
        dispatcher=NotificationDispatcher(
            user_store, push, queue, max_retry=settings.MAX_TASK_RETRY
        ),
        sync=sync,
        db_pool=db_pool,
    )


async def build_context(settings: Settings) -> AppContext:
    """Create and initialize the configured backends."""
    if settings.REDIS_URL:
        cache = RedisResultCache(settings.REDIS_URL)
        await cache.initialize()
    else:
        cache = MemoryResultCache()

    if settings.STORAGE_BACKEND == "memory":
        logger.warning("Using in-process storage, data is lost on restart")
        return assemble_context(
            settings,
            datastore=MemoryDatastore(),
            cache=cache,
            queue=MemoryWorkQueue(lease_s=settings.TASK_LEASE_SECONDS),
        )

    if settings.STORAGE_BACKEND != "postgres":
        raise ValueError(f"Unknown STORAGE_BACKEND {settings.STORAGE_BACKEND!r}")

    db_pool = DatabasePoolManager(
        settings.DATABASE_URL,
        settings.get_db_pool_config(),
        application_name=f"eventsync-{settings.environment}",
    )
    await db_pool.initialize()
    await apply_schema(db_pool)
    return assemble_context(
        settings,
        datastore=PostgresDatastore(db_pool),
        cache=cache,
        queue=PostgresWorkQueue(db_pool, lease_s=settings.TASK_LEASE_SECONDS),
        db_pool=db_pool,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the context built in the app lifespan."""
    return request.app.state.ctx
