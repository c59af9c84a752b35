from datetime import UTC, datetime, timedelta

import pytest
from conftest import SHARD_URL, raw_session
from fastapi.testclient import TestClient

from eventsync.features.notifications.services.dispatcher import (
    NOTIFY_SUBSCRIBERS_TASK,
    NOTIFY_USER_TASK,
)
from eventsync.main import create_app

UPCOMING = datetime.now(UTC).replace(microsecond=0) + timedelta(days=30)


@pytest.fixture
def upstream(upstream):
    upstream.data["video_library"] = [
        {"id": "v1", "title": "Old", "year": 2015},
        {"id": "v2", "title": "New", "year": 2016},
    ]
    upstream.set_sessions(
        raw_session("late", "Late", UPCOMING + timedelta(hours=2)),
        raw_session("early", "Early", UPCOMING),
    )
    return upstream


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx)) as c:
        yield c


@pytest.fixture
def synced(client):
    response = client.post("/debug/sync")
    assert response.json()["status"] == "synced"
    return response.json()["fingerprint"]


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "eventsync"}


def test_readyz(client):
    body = client.get("/readyz").json()

    assert body["overall_ok"] is True
    assert body["checks"]["cache"]["ok"] is True
    assert "database" not in body["checks"]
    assert body["checks"]["configuration"]["storage_backend"] == "memory"


def test_readyz_reports_missing_config(client, ctx):
    ctx.settings.FIREBASE_SHARDS = []

    body = client.get("/readyz").json()

    assert body["overall_ok"] is False
    assert body["checks"]["configuration"]["issues"] == ["FIREBASE_SHARDS not set"]


def test_schedule_before_first_sync_is_empty(client):
    response = client.get("/api/v1/schedule")

    assert response.status_code == 200
    assert "etag" not in response.headers
    assert response.json()["sessions"] == []


def test_schedule_is_ordered_and_tagged(client, synced):
    response = client.get("/api/v1/schedule")

    assert response.status_code == 200
    assert response.headers["etag"] == f'"{synced}"'
    body = response.json()
    assert [s["id"] for s in body["sessions"]] == ["early", "late"]
    assert [v["id"] for v in body["video_library"]] == ["v2", "v1"]


def test_schedule_not_modified(client, synced):
    response = client.get("/api/v1/schedule", headers={"If-None-Match": f'"{synced}"'})

    assert response.status_code == 304
    assert response.headers["etag"] == f'"{synced}"'


def test_schedule_stale_etag_gets_full_body(client, synced):
    response = client.get("/api/v1/schedule", headers={"If-None-Match": '"stale"'})

    assert response.status_code == 200
    assert len(response.json()["sessions"]) == 2


def test_changes_since(client, synced, upstream):
    before = (upstream.last_modified - timedelta(seconds=1)).isoformat()

    body = client.get("/api/v1/changes", params={"since": before}).json()

    assert set(body["sessions"]) == {"early", "late"}

    after = client.get("/api/v1/changes", params={"since": upstream.last_modified.isoformat()})
    assert after.json()["sessions"] == {}


def test_changes_rejects_bad_timestamp(client):
    assert client.get("/api/v1/changes", params={"since": "yesterday"}).status_code == 400
    assert client.get("/api/v1/changes").status_code == 422


def test_session_lookup(client, synced):
    assert client.get("/api/v1/sessions/early").json()["title"] == "Early"
    assert client.get("/api/v1/sessions/missing").status_code == 404


def test_storage_notification_requires_token(client, upstream):
    denied = client.post("/sync/gcs", headers={"X-Goog-Channel-Token": "wrong"})

    assert denied.status_code == 200
    assert denied.content == b""
    missing = client.post("/sync/gcs")
    assert missing.status_code == 200
    assert missing.content == b""
    assert upstream.requests == []

    accepted = client.post("/sync/gcs", headers={"X-Goog-Channel-Token": "sync-secret"})
    assert accepted.json()["status"] == "synced"


def test_storage_notification_upstream_failure(client, upstream):
    upstream.fail_status = 502

    response = client.post("/sync/gcs", headers={"X-Goog-Channel-Token": "sync-secret"})

    assert response.status_code == 500


def test_debug_push_stores_and_fans_out(client, ctx):
    payload = {
        "ts": UPCOMING.isoformat(),
        "token": "ignored",
        "sessions": {"x": {"id": "x", "title": "Injected", "update": "details"}},
    }

    response = client.post("/debug/push", json=payload)

    assert response.json() == {"stored": True, "sessions": ["x"]}
    (task,) = ctx.queue.pending(NOTIFY_SUBSCRIBERS_TASK)
    assert task.payload["changes"]["token"] == ""
    since = (UPCOMING - timedelta(seconds=1)).isoformat()
    changes = client.get("/api/v1/changes", params={"since": since}).json()
    assert changes["sessions"]["x"]["title"] == "Injected"


def test_debug_notify_queues_per_user(client, ctx):
    response = client.post("/debug/notify", json={"users": ["u1", "u2"], "title": "Hi"})

    assert response.json() == {"queued": 2}
    tasks = ctx.queue.pending(NOTIFY_USER_TASK)
    assert [t.payload["uid"] for t in tasks] == ["u1", "u2"]
    assert {t.payload["shard"] for t in tasks} == {SHARD_URL}


def test_debug_notify_requires_users(client):
    assert client.post("/debug/notify", json={"users": [], "title": "Hi"}).status_code == 422


def test_debug_clear(client, synced):
    assert client.post("/debug/clear").json() == {"deleted": 1}
    assert client.get("/api/v1/schedule").json()["sessions"] == []
