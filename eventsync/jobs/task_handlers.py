"""
Work queue consumer.

Claims tasks from the durable queue and dispatches them by name. A task
whose handler raises is handed back with exponential backoff; after
MAX_TASK_RETRY redeliveries it is dropped.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from eventsync.config import settings
from eventsync.context import AppContext, build_context
from eventsync.features.notifications.domain.models import Notification
from eventsync.features.notifications.services.dispatcher import (
    NOTIFY_SUBSCRIBERS_TASK,
    NOTIFY_USER_TASK,
)
from eventsync.features.schedule.domain.models import ChangeSet
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.jobs.clock_job import ClockJob
from eventsync.services.work_queue import JobEnvelope

logger = get_logger(__name__)

CLOCK_TASK = "clock"

POLL_INTERVAL_SECONDS = 1.0
RETRY_BASE_SECONDS = 10
RETRY_MAX_SECONDS = 600

TaskHandler = Callable[[AppContext, JobEnvelope], Awaitable[None]]


async def handle_notify_subscribers(ctx: AppContext, envelope: JobEnvelope) -> None:
    changes = ChangeSet.from_dict(envelope.payload["changes"])
    await ctx.dispatcher.notify_subscribers(changes, envelope.payload.get("shards"))


async def handle_notify_user(ctx: AppContext, envelope: JobEnvelope) -> None:
    payload = envelope.payload
    messages = [Notification.from_payload(m) for m in payload.get("messages") or []]
    await ctx.dispatcher.notify_user(
        payload["uid"],
        payload["shard"],
        messages,
        payload.get("endpoints"),
        attempt=payload.get("attempt", 0),
    )


async def handle_clock(ctx: AppContext, envelope: JobEnvelope) -> None:
    await ClockJob(ctx).run(delivery_attempt=envelope.delivery_attempt, scheduled=False)


TASK_HANDLERS: dict[str, TaskHandler] = {
    NOTIFY_SUBSCRIBERS_TASK: handle_notify_subscribers,
    NOTIFY_USER_TASK: handle_notify_user,
    CLOCK_TASK: handle_clock,
}


def retry_delay(delivery_attempt: int) -> float:
    return min(RETRY_BASE_SECONDS * 2**delivery_attempt, RETRY_MAX_SECONDS)


class TaskQueueWorker:
    def __init__(
        self,
        ctx: AppContext,
        handlers: dict[str, TaskHandler] | None = None,
        max_retry: int | None = None,
    ):
        self.ctx = ctx
        self.handlers = handlers if handlers is not None else TASK_HANDLERS
        self.max_retry = max_retry if max_retry is not None else ctx.settings.MAX_TASK_RETRY
        self.processed = 0
        self.failed = 0

    async def process_one(self) -> bool:
        """Claim and run one task. Returns False when the queue had nothing due."""
        queue = self.ctx.queue
        envelope = await queue.claim()
        if envelope is None:
            return False

        structlog.contextvars.bind_contextvars(task=envelope.name, task_id=envelope.id)
        try:
            handler = self.handlers.get(envelope.name)
            if handler is None:
                logger.error("No handler for task, dropping it")
                await queue.ack(envelope)
                return True

            if envelope.delivery_attempt > self.max_retry:
                logger.error(
                    "Task exceeded retry limit, dropping it",
                    delivery_attempt=envelope.delivery_attempt,
                    max_retry=self.max_retry,
                )
                await queue.ack(envelope)
                return True

            try:
                await handler(self.ctx, envelope)
            except Exception as e:
                self.failed += 1
                delay = retry_delay(envelope.delivery_attempt)
                logger.error(
                    "Task failed, will retry",
                    error=str(e),
                    error_type=type(e).__name__,
                    delivery_attempt=envelope.delivery_attempt,
                    retry_in_s=delay,
                )
                await queue.retry(envelope, delay_s=delay, error=str(e))
            else:
                self.processed += 1
                await queue.ack(envelope)
            return True
        finally:
            structlog.contextvars.unbind_contextvars("task", "task_id")

    async def drain(self, limit: int | None = None) -> int:
        """Run tasks until none is due (or limit reached); returns how many ran."""
        count = 0
        while limit is None or count < limit:
            if not await self.process_one():
                break
            count += 1
        return count


async def start_task_queue_worker(ctx: AppContext | None = None):
    """Consume the work queue forever."""
    owned = ctx is None
    ctx = ctx or await build_context(settings)
    worker = TaskQueueWorker(ctx)
    logger.info("Starting task queue worker", max_retry=worker.max_retry)

    try:
        while True:
            try:
                if not await worker.process_one():
                    await asyncio.sleep(POLL_INTERVAL_SECONDS)
            except Exception as e:
                logger.error(
                    "Error in task queue worker", error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(POLL_INTERVAL_SECONDS * 10)
    finally:
        if owned:
            await ctx.close()
