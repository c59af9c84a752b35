from datetime import UTC, datetime, timedelta

import httpx
import pytest
from conftest import FirebaseStub

from eventsync.features.notifications.repository.user_store import FirebaseUserStore
from eventsync.jobs.wipeout_job import (
    WipeoutError,
    WipeoutJob,
    cutoff_millis,
    seconds_until_hour,
)

NOW = datetime(2016, 6, 30, 12, 0, tzinfo=UTC)
SHARDS = ["https://users-0.example.org", "https://users-1.example.org"]


def _millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


@pytest.fixture
def stubs():
    first, second = FirebaseStub(), FirebaseStub()
    first.add_user("stale", bookmarks=["a"], last_activity=_millis(NOW - timedelta(days=45)))
    first.add_user("active", bookmarks=["b"], last_activity=_millis(NOW - timedelta(days=2)))
    second.add_user("gone", last_activity=_millis(NOW - timedelta(days=90)))
    return {"users-0.example.org": first, "users-1.example.org": second}


@pytest.fixture
def job(stubs):
    def route(request: httpx.Request) -> httpx.Response:
        return stubs[request.url.host].handler(request)

    store = FirebaseUserStore(SHARDS, transport=httpx.MockTransport(route))
    return WipeoutJob(store, cutoff_days=30)


def test_cutoff_millis():
    assert cutoff_millis(NOW, 30) == _millis(NOW - timedelta(days=30))


def test_seconds_until_hour():
    assert seconds_until_hour(NOW, 13) == 3600
    assert seconds_until_hour(NOW, 12) == 24 * 3600
    assert seconds_until_hour(NOW, 3) == 15 * 3600


@pytest.mark.asyncio
async def test_wipes_inactive_users_on_every_shard(job, stubs):
    first, second = stubs.values()

    wiped = await job.run(now=NOW)

    assert wiped == {SHARDS[0]: 1, SHARDS[1]: 1}
    assert set(first.users) == {"active"}
    assert set(first.data) == {"active"}
    assert second.users == {}
    assert job.get_job_status()["last_run_time"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_user_data_is_deleted_before_user_record(job, stubs):
    first = stubs["users-0.example.org"]

    await job.run(now=NOW)

    deletes = [path for method, path in first.requests if method == "DELETE"]
    assert deletes == ["data/stale", "users/stale"]


@pytest.mark.asyncio
async def test_failed_shard_raises_after_others_finish(job, stubs):
    first, second = stubs.values()
    first.fail_paths.add("data/stale")

    with pytest.raises(WipeoutError):
        await job.run(now=NOW)

    # the user record stays when its data could not be removed
    assert "stale" in first.users
    assert second.users == {}
    assert job.is_running is False
    assert job.last_run_time is None
