"""
Persistence for full event snapshots.

Every stored snapshot is a new immutable record; the latest one (by
modification time) is what readers get. Reads go through a sharded result
cache that every write invalidates.
"""

import hashlib
import json
from datetime import UTC, datetime

from eventsync.errors import ErrorKind, ScheduleError
from eventsync.features.schedule.domain.models import (
    EventSnapshot,
    Session,
    format_timestamp,
    parse_timestamp,
)
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.services.infrastructure.cache import CacheError, SnapshotCacheShards
from eventsync.storage.datastore import Datastore, EntityKey, Transaction

logger = get_logger(__name__)

EVENT_DATA_KIND = "EventData"
ROOT_PARENT = "root"


def fingerprint_for(key: EntityKey) -> str:
    """Stable, opaque etag derived from a record key."""
    return hashlib.md5(str(key).encode()).hexdigest()


def _etag_matches(fingerprint: str, etags: list[str]) -> bool:
    for tag in etags:
        tag = tag.strip().strip('"')
        if tag == "*" or tag == fingerprint:
            return True
    return False


class SnapshotRepository:
    """Latest-snapshot reads and append-only snapshot writes."""

    def __init__(
        self,
        datastore: Datastore,
        cache,
        shards: SnapshotCacheShards,
        cache_ttl_s: int = 3600,
    ):
        self.datastore = datastore
        self.cache = cache
        self.shards = shards
        self.cache_ttl_s = cache_ttl_s

    async def _read_cached(self, cache_key: str) -> dict | None:
        try:
            raw = await self.cache.get(cache_key)
        except CacheError as e:
            logger.warning("Snapshot cache read failed", key=cache_key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cached snapshot", key=cache_key)
            return None

    async def _write_cached(self, cache_key: str, record: dict) -> None:
        try:
            await self.cache.set(cache_key, json.dumps(record), self.cache_ttl_s)
        except CacheError as e:
            logger.error("Snapshot cache write failed", key=cache_key, error=str(e))

    async def get_latest(
        self,
        etags: list[str] | None = None,
        *,
        request_id: str | None = None,
        txn: Transaction | None = None,
    ) -> EventSnapshot:
        """
        Return the most recently stored snapshot.

        Args:
            etags: Fingerprints the caller already holds (quotes allowed)
            request_id: Picks the cache shard; same id, same shard
            txn: Read inside this transaction on a cache miss

        Returns:
            The latest snapshot, or an empty one with no fingerprint when
            nothing was ever stored.

        Raises:
            ScheduleError: NOT_MODIFIED when an etag matches, carrying a
                snapshot with only fingerprint and modified_at set;
                UNAVAILABLE when storage cannot be read.
        """
        cache_key = self.shards.key_for(request_id)
        record = await self._read_cached(cache_key)

        if record is None:
            try:
                rows = await self.datastore.query(
                    EVENT_DATA_KIND, ROOT_PARENT, descending=True, limit=1, txn=txn
                )
            except ScheduleError:
                raise
            except Exception as e:
                raise ScheduleError(f"get_latest: {e}") from e

            if not rows:
                return EventSnapshot()

            row = rows[0]
            record = {
                "fingerprint": fingerprint_for(row.key),
                "modified": format_timestamp(row.ts),
                "data": json.loads(row.data),
            }
            await self._write_cached(cache_key, record)

        fingerprint = record["fingerprint"]
        modified_at = parse_timestamp(record.get("modified"))
        if etags and _etag_matches(fingerprint, etags):
            raise ScheduleError(
                "snapshot not modified",
                kind=ErrorKind.NOT_MODIFIED,
                snapshot=EventSnapshot(modified_at=modified_at, fingerprint=fingerprint),
            )

        try:
            return EventSnapshot.from_dict(
                record["data"], modified_at=modified_at, fingerprint=fingerprint
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ScheduleError(
                f"get_latest: bad snapshot record: {e}", kind=ErrorKind.BAD_DATA
            ) from e

    async def store(self, snapshot: EventSnapshot, *, txn: Transaction | None = None) -> str:
        """
        Persist snapshot as a new record and return its fingerprint.

        The snapshot's fingerprint field is updated too. Cache keys are
        invalidated once the surrounding transaction commits.
        """
        ts = snapshot.modified_at or datetime.now(UTC)
        payload = json.dumps(snapshot.to_dict()).encode()
        key = await self.datastore.put(EVENT_DATA_KIND, ROOT_PARENT, payload, ts=ts, txn=txn)
        snapshot.fingerprint = fingerprint_for(key)

        async def _invalidate() -> None:
            try:
                await self.cache.delete_multi(self.shards.all_keys())
            except CacheError as e:
                logger.error("Snapshot cache invalidation failed", error=str(e))

        if txn is not None:
            txn.on_commit(_invalidate)
        else:
            await _invalidate()

        logger.info(
            "Snapshot stored",
            fingerprint=snapshot.fingerprint,
            sessions=len(snapshot.sessions),
            modified_at=format_timestamp(ts),
        )
        return snapshot.fingerprint

    async def get_session(self, session_id: str) -> Session:
        snapshot = await self.get_latest()
        session = snapshot.sessions.get(session_id)
        if session is None:
            raise ScheduleError(f"session {session_id!r} not found", kind=ErrorKind.NOT_FOUND)
        return session

    async def clear(self) -> int:
        """Flush the cache and delete every stored snapshot."""
        await self.cache.flush()
        rows = await self.datastore.query(EVENT_DATA_KIND, ROOT_PARENT, keys_only=True)
        await self.datastore.delete_multi([r.key for r in rows])
        logger.warning("All snapshots cleared", deleted=len(rows))
        return len(rows)
