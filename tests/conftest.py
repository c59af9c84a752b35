from datetime import UTC, datetime, timedelta
from email.utils import format_datetime, parsedate_to_datetime

import httpx
import pytest

from eventsync.config import Settings
from eventsync.context import assemble_context
from eventsync.features.notifications.domain.models import DeliveryOutcome
from eventsync.features.schedule.domain.models import Session
from eventsync.services.infrastructure.cache import MemoryResultCache
from eventsync.services.work_queue import MemoryWorkQueue
from eventsync.storage.memory_datastore import MemoryDatastore

MANIFEST_URL = "https://schedule.example.org/manifest.json"
SHARD_URL = "https://users-0.example.org"

T0 = datetime(2016, 5, 18, 16, 0, tzinfo=UTC)


def make_session(sid: str, title: str = "", start: datetime | None = None, **kwargs) -> Session:
    start = start or T0
    kwargs.setdefault("end_time", start + timedelta(hours=1))
    return Session(id=sid, title=title or sid, start_time=start, **kwargs)


def raw_session(sid: str, title: str = "", start: datetime | None = None, **fields) -> dict:
    """A session as it appears in an upstream data file."""
    start = start or T0
    end = fields.pop("end", start + timedelta(hours=1))
    return {
        "id": sid,
        "title": title or sid,
        "startTimestamp": start.isoformat(),
        "endTimestamp": end.isoformat(),
        **fields,
    }


class UpstreamStub:
    """Manifest host serving a manifest plus one data file."""

    def __init__(self):
        self.last_modified = datetime(2016, 5, 1, 12, 0, tzinfo=UTC)
        self.honor_if_modified_since = True
        self.fail_status: int | None = None
        self.files = {
            "/manifest.json": {"data_files": ["schedule.json"]},
            "/schedule.json": {"sessions": [], "speakers": [], "tags": [], "rooms": []},
        }
        self.requests: list[httpx.Request] = []

    @property
    def data(self) -> dict:
        return self.files["/schedule.json"]

    def set_sessions(self, *sessions: dict, modified: datetime | None = None) -> None:
        self.data["sessions"] = list(sessions)
        if modified is not None:
            self.last_modified = modified

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status)

        path = request.url.path
        ims = request.headers.get("if-modified-since")
        if path == "/manifest.json" and ims and self.honor_if_modified_since:
            if parsedate_to_datetime(ims) >= self.last_modified:
                return httpx.Response(304)

        if path not in self.files:
            return httpx.Response(404)
        return httpx.Response(
            200,
            json=self.files[path],
            headers={"Last-Modified": format_datetime(self.last_modified, usegmt=True)},
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FirebaseStub:
    """One user store shard: ``users/{uid}`` and ``data/{uid}`` trees."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.data: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.fail_paths: set[str] = set()

    def add_user(
        self,
        uid: str,
        *,
        enabled: bool = True,
        subscriptions: dict[str, str] | None = None,
        bookmarks: tuple[str, ...] | list[str] = (),
        last_activity: int = 0,
    ) -> None:
        self.users[uid] = {
            "web_notifications_enabled": enabled,
            "web_push_subscriptions": dict(subscriptions or {}),
            "last_activity_timestamp": last_activity,
        }
        self.data[uid] = {"my_sessions": {sid: {"in_schedule": True} for sid in bookmarks}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.strip("/").removesuffix(".json")
        self.requests.append((request.method, path))
        if path in self.fail_paths:
            return httpx.Response(500)

        parts = path.split("/")
        if request.method == "DELETE":
            if parts[0] == "users" and len(parts) == 2:
                self.users.pop(parts[1], None)
            elif parts[0] == "data" and len(parts) == 2:
                self.data.pop(parts[1], None)
            elif parts[0] == "users" and parts[2:3] == ["web_push_subscriptions"]:
                self.users[parts[1]]["web_push_subscriptions"].pop(parts[3], None)
            return httpx.Response(200, json=None)

        params = request.url.params
        if parts == ["users"]:
            order = params.get("orderBy", "").strip('"')
            users = self.users
            if order == "web_notifications_enabled":
                users = {k: v for k, v in users.items() if v.get(order) is True}
            elif order == "last_activity_timestamp":
                end = int(params["endAt"])
                users = {k: v for k, v in users.items() if v.get(order, 0) <= end}
            return httpx.Response(200, json=users)
        if parts[0] == "users" and len(parts) == 2:
            return httpx.Response(200, json=self.users.get(parts[1]))
        if parts == ["data"]:
            return httpx.Response(200, json=self.data)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakePush:
    """Push service answering from a per-endpoint outcome table."""

    def __init__(self):
        self.outcomes: dict[str, DeliveryOutcome] = {}
        self.sent: list[tuple[str, str]] = []

    async def deliver(self, endpoint, message) -> DeliveryOutcome:
        self.sent.append((endpoint.key, message.title))
        return self.outcomes.get(endpoint.key, DeliveryOutcome.delivered())


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        STORAGE_BACKEND="memory",
        MANIFEST_URL=MANIFEST_URL,
        SYNC_TOKEN="sync-secret",
        FIREBASE_SHARDS=[SHARD_URL],
        FIREBASE_SECRET="firebase-secret",
        SOON_SESSION_IDS=["__keynote__"],
        SURVEY_SESSION_IDS=[],
    )


@pytest.fixture
def upstream():
    return UpstreamStub()


@pytest.fixture
def firebase():
    return FirebaseStub()


@pytest.fixture
def fake_push():
    return FakePush()


@pytest.fixture
def ctx(test_settings, upstream, firebase, fake_push):
    context = assemble_context(
        test_settings,
        datastore=MemoryDatastore(),
        cache=MemoryResultCache(),
        queue=MemoryWorkQueue(),
        manifest_transport=upstream.transport,
        user_store_transport=firebase.transport,
    )
    context.dispatcher.push = fake_push
    return context
