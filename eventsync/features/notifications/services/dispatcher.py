"""
Notification fan-out.

A stored ChangeSet becomes one ``notify-subscribers`` task. That task reads
every shard's push-enabled users and bookmarks and enqueues one
``notify-user`` task per user with the notifications built for them. The
``notify-user`` task delivers to each of the user's endpoints independently.
"""

import asyncio
from typing import Any

from eventsync.features.notifications.domain.models import (
    DeliveryOutcome,
    DeliveryStatus,
    Notification,
    SubscriberEndpoint,
)
from eventsync.features.notifications.repository.user_store import FirebaseUserStore
from eventsync.features.notifications.services.builder import build_notifications
from eventsync.features.notifications.services.push_service import PushService
from eventsync.features.schedule.domain.models import ChangeSet
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.services.work_queue import WorkQueue
from eventsync.storage.datastore import Transaction

logger = get_logger(__name__)

NOTIFY_SUBSCRIBERS_TASK = "notify-subscribers"
NOTIFY_USER_TASK = "notify-user"

SHARD_RETRY_DELAY_SECONDS = 10


async def enqueue_notify_subscribers(
    queue: WorkQueue,
    changes: ChangeSet,
    *,
    shards: list[str] | None = None,
    delay_s: float = 0,
    txn: Transaction | None = None,
) -> None:
    payload: dict[str, Any] = {"changes": changes.to_dict()}
    if shards is not None:
        payload["shards"] = shards
    await queue.enqueue(NOTIFY_SUBSCRIBERS_TASK, payload, delay_s, txn=txn)


def notify_user_payload(
    uid: str,
    shard: str,
    messages: list[Notification],
    endpoint_keys: list[str] | None = None,
    attempt: int = 0,
) -> dict[str, Any]:
    return {
        "uid": uid,
        "shard": shard,
        "messages": [m.to_payload() for m in messages],
        "endpoints": endpoint_keys,
        "attempt": attempt,
    }


class NotificationDispatcher:
    def __init__(
        self,
        user_store: FirebaseUserStore,
        push: PushService,
        queue: WorkQueue,
        max_retry: int = 10,
    ):
        self.user_store = user_store
        self.push = push
        self.queue = queue
        self.max_retry = max_retry

    async def notify_subscribers(self, changes: ChangeSet, shards: list[str] | None = None) -> int:
        """
        Enqueue a notify-user task for every push-enabled user the changes
        concern. Returns the number of tasks enqueued.

        Shards are read independently. When only some of them fail, a new
        notify-subscribers task restricted to the failed shards is enqueued
        so users on the others are not notified twice; when all of them
        fail the first error is raised and the whole task is retried.
        """
        targets = self.user_store.shards
        if shards is not None:
            targets = [s for s in targets if s in shards]
        if not targets:
            logger.warning("No user store shards to notify, skipping fan-out")
            return 0

        results = await asyncio.gather(
            *(self._notify_shard(shard, changes) for shard in targets),
            return_exceptions=True,
        )
        errors = {
            s: r for s, r in zip(targets, results, strict=True) if isinstance(r, BaseException)
        }
        if len(errors) == len(targets):
            raise next(iter(errors.values()))

        for shard, error in errors.items():
            logger.error("Shard fan-out failed", shard=shard, error=str(error))
        failed = list(errors)
        if failed:
            await enqueue_notify_subscribers(
                self.queue, changes, shards=failed, delay_s=SHARD_RETRY_DELAY_SECONDS
            )

        total = sum(r for r in results if not isinstance(r, BaseException))
        logger.info(
            "Subscriber fan-out complete", users=total, shards=len(targets), failed=len(failed)
        )
        return total

    async def _notify_shard(self, shard: str, changes: ChangeSet) -> int:
        users, bookmarks = await asyncio.gather(
            self.user_store.list_push_users(shard),
            self.user_store.list_bookmarks(shard),
        )
        logger.info("Users with push enabled", shard=shard, users=len(users))

        enqueued = 0
        for uid in users:
            messages = build_notifications(changes, bookmarks.get(uid, []))
            if not messages:
                continue
            await self.queue.enqueue(NOTIFY_USER_TASK, notify_user_payload(uid, shard, messages))
            enqueued += 1
        return enqueued

    async def notify_user(
        self,
        uid: str,
        shard: str,
        messages: list[Notification],
        endpoint_keys: list[str] | None = None,
        attempt: int = 0,
    ) -> dict[str, int]:
        """
        Deliver messages to the user's endpoints.

        Endpoints answering with a permanent failure are removed from the
        user store. Endpoints with retryable failures get a new notify-user
        task carrying only the messages they missed, delayed by the largest
        retry hint among them. After max_retry such attempts the remaining
        deliveries are dropped.

        Args:
            uid: User id
            shard: User store shard holding the user
            messages: Notifications to deliver
            endpoint_keys: Restrict delivery to these subscription keys
            attempt: How many times these deliveries were already retried

        Returns:
            Counts of delivered, removed, retried and dropped endpoints
        """
        summary = {"delivered": 0, "removed": 0, "retried": 0, "dropped": 0}

        info = await self.user_store.get_push_info(uid, shard)
        if not info.enabled:
            logger.info("User does not have notifications enabled", uid=uid)
            return summary

        endpoints = info.endpoints()
        if endpoint_keys is not None:
            wanted = set(endpoint_keys)
            endpoints = [e for e in endpoints if e.key in wanted]
        if not endpoints or not messages:
            return summary

        pairs = [(e, i) for e in endpoints for i in range(len(messages))]
        outcomes = await asyncio.gather(*(self.push.deliver(e, messages[i]) for e, i in pairs))

        per_endpoint: dict[str, list[tuple[int, DeliveryOutcome]]] = {}
        for (endpoint, i), outcome in zip(pairs, outcomes, strict=True):
            per_endpoint.setdefault(endpoint.key, []).append((i, outcome))

        to_remove: list[SubscriberEndpoint] = []
        # failed message indexes -> (endpoint keys, largest delay)
        retries: dict[tuple[int, ...], tuple[list[str], float]] = {}

        for endpoint in endpoints:
            results = per_endpoint[endpoint.key]
            if any(o.status is DeliveryStatus.REMOVE for _, o in results):
                to_remove.append(endpoint)
                continue
            failed = [(i, o) for i, o in results if o.status is DeliveryStatus.RETRY]
            if not failed:
                summary["delivered"] += 1
                continue
            group = tuple(i for i, _ in failed)
            delay = max(o.retry_after_s or 0 for _, o in failed)
            keys, prev = retries.get(group, ([], 0.0))
            retries[group] = (keys + [endpoint.key], max(prev, delay))

        removals = await asyncio.gather(
            *(self.user_store.delete_subscription(uid, shard, e.key) for e in to_remove),
            return_exceptions=True,
        )
        for endpoint, result in zip(to_remove, removals, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to remove push subscription",
                    uid=uid,
                    key=endpoint.key,
                    error=str(result),
                )
            else:
                summary["removed"] += 1

        for group, (keys, delay) in retries.items():
            if attempt >= self.max_retry:
                logger.error(
                    "Push delivery exceeded retry limit, dropping it",
                    uid=uid,
                    keys=keys,
                    attempt=attempt,
                    max_retry=self.max_retry,
                )
                summary["dropped"] += len(keys)
                continue
            await self.queue.enqueue(
                NOTIFY_USER_TASK,
                notify_user_payload(
                    uid, shard, [messages[i] for i in group], keys, attempt=attempt + 1
                ),
                delay_s=delay,
            )
            summary["retried"] += len(keys)

        logger.info("User notified", uid=uid, **summary)
        return summary
