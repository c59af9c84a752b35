import pytest
from conftest import T0, make_session

from eventsync.errors import ErrorKind, ScheduleError
from eventsync.features.schedule.domain.models import EventSnapshot
from eventsync.features.schedule.repository.snapshot_repository import SnapshotRepository
from eventsync.services.infrastructure.cache import (
    CacheError,
    MemoryResultCache,
    SnapshotCacheShards,
)
from eventsync.storage.memory_datastore import MemoryDatastore


class BrokenCache(MemoryResultCache):
    async def get(self, key):
        raise CacheError("cache down", operation="get")

    async def set(self, key, value, ttl_s=None):
        raise CacheError("cache down", operation="set")


def _repo(cache=None) -> SnapshotRepository:
    return SnapshotRepository(MemoryDatastore(), cache or MemoryResultCache(), SnapshotCacheShards())


def _snapshot(title: str = "Keynote") -> EventSnapshot:
    return EventSnapshot(sessions={"a": make_session("a", title)}, modified_at=T0)


@pytest.mark.asyncio
async def test_empty_store_returns_empty_snapshot():
    snapshot = await _repo().get_latest()

    assert snapshot.is_empty()
    assert snapshot.fingerprint == ""


@pytest.mark.asyncio
async def test_store_then_fetch_round_trip():
    repo = _repo()

    fingerprint = await repo.store(_snapshot())
    latest = await repo.get_latest()

    assert fingerprint
    assert latest.fingerprint == fingerprint
    assert latest.modified_at == T0
    assert latest.sessions["a"].title == "Keynote"


@pytest.mark.asyncio
async def test_matching_etag_is_not_modified():
    repo = _repo()
    fingerprint = await repo.store(_snapshot())

    with pytest.raises(ScheduleError) as exc_info:
        await repo.get_latest([f'"{fingerprint}"'])

    assert exc_info.value.kind is ErrorKind.NOT_MODIFIED
    assert exc_info.value.snapshot.fingerprint == fingerprint
    assert exc_info.value.snapshot.sessions == {}


@pytest.mark.asyncio
async def test_wildcard_etag_matches_any_stored_snapshot():
    repo = _repo()
    fingerprint = await repo.store(_snapshot())

    with pytest.raises(ScheduleError) as exc_info:
        await repo.get_latest(["*"])

    assert exc_info.value.kind is ErrorKind.NOT_MODIFIED
    assert exc_info.value.snapshot.fingerprint == fingerprint


@pytest.mark.asyncio
async def test_wildcard_etag_on_empty_store_returns_empty_snapshot():
    snapshot = await _repo().get_latest(["*"])

    assert snapshot.is_empty()
    assert snapshot.fingerprint == ""


@pytest.mark.asyncio
async def test_stale_etag_returns_full_snapshot():
    repo = _repo()
    await repo.store(_snapshot("Old"))
    await repo.store(_snapshot("New"))

    latest = await repo.get_latest(['"stale"'])

    assert latest.sessions["a"].title == "New"


@pytest.mark.asyncio
async def test_store_invalidates_cached_reads():
    repo = _repo()
    first = await repo.store(_snapshot("Old"))
    assert (await repo.get_latest(request_id="r1")).fingerprint == first

    second = await repo.store(_snapshot("New"))

    latest = await repo.get_latest(request_id="r1")
    assert latest.fingerprint == second != first


@pytest.mark.asyncio
async def test_cache_failure_falls_back_to_storage():
    repo = _repo(BrokenCache())
    fingerprint = await repo.store(_snapshot())

    assert (await repo.get_latest()).fingerprint == fingerprint


@pytest.mark.asyncio
async def test_get_session_not_found():
    repo = _repo()
    await repo.store(_snapshot())

    assert (await repo.get_session("a")).title == "Keynote"
    with pytest.raises(ScheduleError) as exc_info:
        await repo.get_session("missing")
    assert exc_info.value.is_not_found


@pytest.mark.asyncio
async def test_clear_removes_every_snapshot():
    repo = _repo()
    await repo.store(_snapshot("Old"))
    await repo.store(_snapshot("New"))

    assert await repo.clear() == 2
    assert (await repo.get_latest()).is_empty()
