from datetime import UTC, datetime, timedelta

import httpx
import pytest
from conftest import SHARD_URL, FirebaseStub, raw_session

from eventsync.features.notifications.domain.models import DeliveryOutcome, Notification
from eventsync.features.notifications.repository.user_store import FirebaseUserStore
from eventsync.features.notifications.services.dispatcher import (
    NOTIFY_SUBSCRIBERS_TASK,
    NOTIFY_USER_TASK,
    notify_user_payload,
)
from eventsync.features.schedule.domain.models import ChangeKind
from eventsync.jobs.task_handlers import TaskQueueWorker

UPCOMING = datetime.now(UTC).replace(microsecond=0) + timedelta(days=30)


@pytest.fixture
def upstream(upstream):
    upstream.set_sessions(
        raw_session("a", "Alpha", UPCOMING),
        raw_session("b", "Beta", UPCOMING),
        raw_session("c", "Gamma", UPCOMING),
    )
    return upstream


@pytest.fixture
def firebase(firebase):
    firebase.add_user("ann", subscriptions={"phone": "{}", "laptop": "{}"}, bookmarks=["a", "b"])
    firebase.add_user("bob", subscriptions={"tablet": "{}"}, bookmarks=["c"])
    firebase.add_user("cid", subscriptions={"desk": "{}"}, bookmarks=[])
    firebase.add_user("dee", enabled=False, subscriptions={"old": "{}"}, bookmarks=["a"])
    return firebase


def _message(title: str = "Hello") -> Notification:
    return Notification(kind=ChangeKind.DETAILS, title=title, body="body", url="schedule")


@pytest.mark.asyncio
async def test_sync_fans_out_to_bookmarking_users(ctx, upstream, fake_push):
    await ctx.sync.run(trusted=True)

    ran = await TaskQueueWorker(ctx).drain()

    # one notify-subscribers task plus one notify-user task per concerned user
    assert ran == 3
    assert sorted(fake_push.sent) == [
        ("laptop", "Some events in My Schedule have been updated"),
        ("phone", "Some events in My Schedule have been updated"),
        ("tablet", "Some events in My Schedule have been updated"),
    ]
    assert ctx.queue.pending() == []


@pytest.mark.asyncio
async def test_notify_user_payload_lists_only_bookmarked_sessions(ctx, upstream):
    await ctx.sync.run(trusted=True)
    worker = TaskQueueWorker(ctx)

    await worker.process_one()

    tasks = {t.payload["uid"]: t.payload for t in ctx.queue.pending(NOTIFY_USER_TASK)}
    assert set(tasks) == {"ann", "bob"}
    (message,) = tasks["ann"]["messages"]
    assert message["notification"]["body"] == "Alpha, Beta were updated"
    assert message["sessions"] == ["a", "b"]
    assert tasks["ann"]["shard"] == SHARD_URL


@pytest.mark.asyncio
async def test_gone_endpoint_is_removed(ctx, firebase, fake_push):
    fake_push.outcomes["phone"] = DeliveryOutcome.remove("410 Gone")

    summary = await ctx.dispatcher.notify_user("ann", SHARD_URL, [_message()])

    assert summary == {"delivered": 1, "removed": 1, "retried": 0, "dropped": 0}
    assert set(firebase.users["ann"]["web_push_subscriptions"]) == {"laptop"}
    assert ctx.queue.pending() == []


@pytest.mark.asyncio
async def test_retryable_endpoints_share_one_delayed_task(ctx, firebase, fake_push):
    firebase.add_user("eve", subscriptions={"k1": "{}", "k2": "{}", "k3": "{}"})
    fake_push.outcomes["k1"] = DeliveryOutcome.retry(30)
    fake_push.outcomes["k2"] = DeliveryOutcome.retry(90)
    before = datetime.now(UTC)

    summary = await ctx.dispatcher.notify_user("eve", SHARD_URL, [_message()])

    assert summary == {"delivered": 1, "removed": 0, "retried": 2, "dropped": 0}
    (task,) = ctx.queue.pending(NOTIFY_USER_TASK)
    assert sorted(task.payload["endpoints"]) == ["k1", "k2"]
    assert task.run_at >= before + timedelta(seconds=90)


@pytest.mark.asyncio
async def test_retry_carries_only_missed_messages(ctx, firebase, fake_push):
    firebase.add_user("eve", subscriptions={"k1": "{}"})
    first, second = _message("First"), _message("Second")

    async def deliver(endpoint, message):
        fake_push.sent.append((endpoint.key, message.title))
        if message.title == "Second":
            return DeliveryOutcome.retry(5)
        return DeliveryOutcome.delivered()

    fake_push.deliver = deliver

    await ctx.dispatcher.notify_user("eve", SHARD_URL, [first, second])

    (task,) = ctx.queue.pending(NOTIFY_USER_TASK)
    assert [m["notification"]["title"] for m in task.payload["messages"]] == ["Second"]


@pytest.mark.asyncio
async def test_restricted_retry_only_hits_named_endpoints(ctx, fake_push):
    summary = await ctx.dispatcher.notify_user("ann", SHARD_URL, [_message()], ["laptop"])

    assert summary["delivered"] == 1
    assert fake_push.sent == [("laptop", "Hello")]


@pytest.mark.asyncio
async def test_disabled_user_is_skipped(ctx, fake_push):
    summary = await ctx.dispatcher.notify_user("dee", SHARD_URL, [_message()])

    assert summary == {"delivered": 0, "removed": 0, "retried": 0, "dropped": 0}
    assert fake_push.sent == []


@pytest.mark.asyncio
async def test_failed_fanout_is_retried_by_worker(ctx, upstream, firebase):
    await ctx.sync.run(trusted=True)
    firebase.fail_paths.add("users")
    worker = TaskQueueWorker(ctx)

    await worker.process_one()

    assert worker.failed == 1
    (task,) = ctx.queue.pending()
    assert task.delivery_attempt == 1


def _make_due(queue) -> None:
    for task in queue.pending():
        task.run_at = datetime.now(UTC)


@pytest.mark.asyncio
async def test_retryable_endpoint_gives_up_after_max_retry(ctx, fake_push):
    fake_push.outcomes["tablet"] = DeliveryOutcome.retry(10.0)
    ctx.dispatcher.max_retry = 3
    await ctx.queue.enqueue(NOTIFY_USER_TASK, notify_user_payload("bob", SHARD_URL, [_message()]))
    worker = TaskQueueWorker(ctx)

    attempts = []
    for _ in range(10):
        attempts += [t.payload["attempt"] for t in ctx.queue.pending(NOTIFY_USER_TASK)]
        _make_due(ctx.queue)
        await worker.process_one()

    assert ctx.queue.pending() == []
    assert attempts == [0, 1, 2, 3]
    assert fake_push.sent == [("tablet", "Hello")] * 4
    assert worker.failed == 0


@pytest.mark.asyncio
async def test_last_allowed_attempt_drops_instead_of_requeueing(ctx, fake_push):
    fake_push.outcomes["phone"] = DeliveryOutcome.retry(5)
    ctx.dispatcher.max_retry = 2

    summary = await ctx.dispatcher.notify_user("ann", SHARD_URL, [_message()], attempt=2)

    assert summary == {"delivered": 1, "removed": 0, "retried": 0, "dropped": 1}
    assert ctx.queue.pending() == []


@pytest.mark.asyncio
async def test_failed_shard_is_retried_alone(ctx, upstream, firebase, fake_push):
    second_shard = "https://users-1.example.org"
    second = FirebaseStub()
    second.add_user("zed", subscriptions={"watch": "{}"}, bookmarks=["a"])
    second.fail_paths.add("data")
    stubs = {"users-0.example.org": firebase, "users-1.example.org": second}
    ctx.dispatcher.user_store = FirebaseUserStore(
        [SHARD_URL, second_shard],
        transport=httpx.MockTransport(lambda r: stubs[r.url.host].handler(r)),
    )
    await ctx.sync.run(trusted=True)
    worker = TaskQueueWorker(ctx)

    await worker.process_one()

    assert worker.failed == 0
    assert {t.payload["uid"] for t in ctx.queue.pending(NOTIFY_USER_TASK)} == {"ann", "bob"}
    (follow_up,) = ctx.queue.pending(NOTIFY_SUBSCRIBERS_TASK)
    assert follow_up.payload["shards"] == [second_shard]

    second.fail_paths.clear()
    _make_due(ctx.queue)
    await worker.drain()

    assert sorted(key for key, _ in fake_push.sent) == ["laptop", "phone", "tablet", "watch"]
    assert ctx.queue.pending() == []
