"""
External per-user store: Firebase Realtime Database REST API, sharded.

Users live under ``users/{uid}`` (push settings, last activity) and their
bookmarks under ``data/{uid}/my_sessions``. Every request is authenticated
with the database secret as the ``auth`` query parameter.
"""

import json
import zlib
from typing import Any

import httpx

from eventsync.features.notifications.domain.models import UserPushInfo
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class UserStoreError(Exception):
    """Custom exception for user store requests."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class FirebaseUserStore:
    def __init__(
        self,
        shards: list[str],
        secret: str | None = None,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.shards = [s.rstrip("/") for s in shards]
        self.secret = secret
        self.timeout = timeout
        self._transport = transport

    def shard_for(self, uid: str) -> str:
        """Shard URL holding uid, or "" when no shards are configured."""
        if not self.shards:
            return ""
        return self.shards[zlib.crc32(uid.encode()) % len(self.shards)]

    async def _request(
        self,
        method: str,
        shard: str,
        path: str,
        operation: str,
        params: dict[str, str] | None = None,
    ) -> Any:
        query = dict(params or {})
        if self.secret:
            query["auth"] = self.secret
        url = f"{shard}/{path}.json"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, params=query)
        except httpx.RequestError as e:
            logger.error("User store request failed", operation=operation, error=str(e))
            raise UserStoreError(f"{operation}: {e}", operation=operation) from e

        if response.status_code >= 400:
            logger.error(
                "User store error response",
                operation=operation,
                status_code=response.status_code,
                path=path,
            )
            raise UserStoreError(
                f"{operation}: status {response.status_code}",
                operation=operation,
                recoverable=response.status_code >= 500,
            )

        if method == "DELETE" or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UserStoreError(f"{operation}: invalid JSON: {e}", operation=operation) from e

    async def list_push_users(self, shard: str) -> list[str]:
        """Ids of users with web notifications enabled."""
        data = await self._request(
            "GET",
            shard,
            "users",
            "list_push_users",
            params={"orderBy": '"web_notifications_enabled"', "equalTo": "true"},
        )
        return list((data or {}).keys())

    async def get_push_info(self, uid: str, shard: str) -> UserPushInfo:
        data = await self._request("GET", shard, f"users/{uid}", "get_push_info") or {}
        subs = data.get("web_push_subscriptions") or {}
        return UserPushInfo(
            uid=uid,
            enabled=bool(data.get("web_notifications_enabled")),
            subscriptions={
                k: v if isinstance(v, str) else json.dumps(v) for k, v in subs.items()
            },
        )

    async def list_bookmarks(self, shard: str) -> dict[str, list[str]]:
        """Every user's scheduled session ids on the shard."""
        data = await self._request("GET", shard, "data", "list_bookmarks") or {}
        result = {}
        for uid, user_data in data.items():
            sessions = (user_data or {}).get("my_sessions") or {}
            result[uid] = [
                sid for sid, s in sessions.items() if (s or {}).get("in_schedule")
            ]
        return result

    async def delete_subscription(self, uid: str, shard: str, key: str) -> None:
        await self._request(
            "DELETE", shard, f"users/{uid}/web_push_subscriptions/{key}", "delete_subscription"
        )
        logger.info("Push subscription removed", uid=uid, key=key)

    async def list_inactive_users(self, shard: str, cutoff_ms: int) -> list[str]:
        """Users whose last activity is at or before cutoff_ms (ms since epoch)."""
        data = await self._request(
            "GET",
            shard,
            "users",
            "list_inactive_users",
            params={"orderBy": '"last_activity_timestamp"', "endAt": str(cutoff_ms)},
        )
        return list((data or {}).keys())

    async def delete_user_data(self, uid: str, shard: str) -> None:
        await self._request("DELETE", shard, f"data/{uid}", "delete_user_data")

    async def delete_user(self, uid: str, shard: str) -> None:
        await self._request("DELETE", shard, f"users/{uid}", "delete_user")
