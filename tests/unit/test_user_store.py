import httpx
import pytest
from conftest import SHARD_URL, FirebaseStub

from eventsync.features.notifications.repository.user_store import (
    FirebaseUserStore,
    UserStoreError,
)


@pytest.fixture
def firebase():
    stub = FirebaseStub()
    stub.add_user("u1", subscriptions={"k1": '{"endpoint": "e1"}'}, bookmarks=["a", "b"])
    stub.add_user("u2", enabled=False, bookmarks=["c"], last_activity=500)
    return stub


@pytest.fixture
def store(firebase):
    return FirebaseUserStore([SHARD_URL + "/"], "secret", transport=firebase.transport)


def test_shard_for_is_stable():
    store = FirebaseUserStore(["https://a", "https://b", "https://c"])

    assert store.shard_for("user-1") == store.shard_for("user-1")
    assert store.shard_for("user-1") in store.shards
    assert FirebaseUserStore([]).shard_for("user-1") == ""


@pytest.mark.asyncio
async def test_list_push_users_only_enabled(store):
    assert await store.list_push_users(SHARD_URL) == ["u1"]


@pytest.mark.asyncio
async def test_get_push_info(store):
    info = await store.get_push_info("u1", SHARD_URL)

    assert info.enabled is True
    assert [e.key for e in info.endpoints()] == ["k1"]


@pytest.mark.asyncio
async def test_get_push_info_for_unknown_user(store):
    info = await store.get_push_info("nobody", SHARD_URL)

    assert info.enabled is False
    assert info.endpoints() == []


@pytest.mark.asyncio
async def test_list_bookmarks(store, firebase):
    firebase.data["u1"]["my_sessions"]["b"]["in_schedule"] = False

    bookmarks = await store.list_bookmarks(SHARD_URL)

    assert bookmarks == {"u1": ["a"], "u2": ["c"]}


@pytest.mark.asyncio
async def test_list_inactive_users(store):
    assert sorted(await store.list_inactive_users(SHARD_URL, 600)) == ["u1", "u2"]
    assert await store.list_inactive_users(SHARD_URL, 100) == ["u1"]


@pytest.mark.asyncio
async def test_delete_subscription(store, firebase):
    await store.delete_subscription("u1", SHARD_URL, "k1")

    assert firebase.users["u1"]["web_push_subscriptions"] == {}


@pytest.mark.asyncio
async def test_requests_carry_secret(firebase):
    seen = []

    def recording(request):
        seen.append(request.url.params.get("auth"))
        return firebase.handler(request)

    store = FirebaseUserStore([SHARD_URL], "secret", transport=httpx.MockTransport(recording))
    await store.list_push_users(SHARD_URL)

    assert seen == ["secret"]


@pytest.mark.asyncio
async def test_error_status_raises(store, firebase):
    firebase.fail_paths.add("users")

    with pytest.raises(UserStoreError) as exc_info:
        await store.list_push_users(SHARD_URL)

    assert exc_info.value.recoverable is True
