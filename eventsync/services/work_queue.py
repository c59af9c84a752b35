# eventsync/services/work_queue.py
"""
Durable work queue for notification fan-out.

Tasks are enqueued inside the caller's datastore transaction, so a task
exists if and only if the writes it describes were committed. Claimed
tasks are leased; a worker that dies before ack'ing lets the lease lapse
and the task is handed out again with a higher ``delivery_attempt``.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from psycopg.types.json import Jsonb

from eventsync.db.helpers import DatabaseError, execute_query, fetch_one
from eventsync.db.pool import DatabasePoolManager
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.storage.datastore import Transaction

logger = get_logger(__name__)


class WorkQueueError(Exception):
    """Custom exception for work queue operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@dataclass
class JobEnvelope:
    """A claimed task. delivery_attempt is 0 on first delivery."""

    id: int
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    delivery_attempt: int = 0


class WorkQueue(Protocol):
    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        delay_s: float = 0,
        *,
        txn: Transaction | None = None,
    ) -> None: ...

    async def claim(self) -> JobEnvelope | None: ...

    async def ack(self, envelope: JobEnvelope) -> None: ...

    async def retry(
        self, envelope: JobEnvelope, delay_s: float = 0, error: str | None = None
    ) -> None: ...


class PostgresWorkQueue:
    """Work queue on the ``task_queue`` table."""

    def __init__(self, pool: DatabasePoolManager, lease_s: int = 300):
        self.pool = pool
        self.lease_s = lease_s

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        delay_s: float = 0,
        *,
        txn: Transaction | None = None,
    ) -> None:
        try:
            await execute_query(
                """
                INSERT INTO task_queue (name, payload, run_at)
                VALUES (%s, %s, NOW() + make_interval(secs => %s))
                """,
                (name, Jsonb(payload), float(delay_s)),
                connection=txn.connection if txn is not None else None,
                pool=self.pool,
            )
        except DatabaseError as e:
            raise WorkQueueError(f"Enqueue failed: {e}", operation="enqueue") from e

        logger.debug("Task enqueued", task=name, delay_s=delay_s)

    async def claim(self) -> JobEnvelope | None:
        """Lease the oldest due task, or return None when nothing is due."""
        try:
            async with self.pool.transaction() as conn:
                row = await fetch_one(
                    """
                    UPDATE task_queue
                    SET leased_until = NOW() + make_interval(secs => %s),
                        delivery_attempt = delivery_attempt + 1
                    WHERE id = (
                        SELECT id FROM task_queue
                        WHERE run_at <= NOW()
                          AND (leased_until IS NULL OR leased_until < NOW())
                        ORDER BY run_at, id
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    RETURNING id, name, payload, delivery_attempt - 1 AS delivery_attempt
                    """,
                    (self.lease_s,),
                    connection=conn,
                )
        except DatabaseError as e:
            raise WorkQueueError(f"Claim failed: {e}", operation="claim") from e

        if not row:
            return None
        return JobEnvelope(
            id=row["id"],
            name=row["name"],
            payload=row["payload"] or {},
            delivery_attempt=row["delivery_attempt"],
        )

    async def ack(self, envelope: JobEnvelope) -> None:
        try:
            await execute_query(
                "DELETE FROM task_queue WHERE id = %s", (envelope.id,), pool=self.pool
            )
        except DatabaseError as e:
            raise WorkQueueError(f"Ack failed: {e}", operation="ack") from e

    async def retry(
        self, envelope: JobEnvelope, delay_s: float = 0, error: str | None = None
    ) -> None:
        """Release the lease so the task is redelivered after delay_s."""
        try:
            await execute_query(
                """
                UPDATE task_queue
                SET leased_until = NULL,
                    run_at = NOW() + make_interval(secs => %s),
                    last_error = %s
                WHERE id = %s
                """,
                (float(delay_s), error, envelope.id),
                pool=self.pool,
            )
        except DatabaseError as e:
            raise WorkQueueError(f"Retry failed: {e}", operation="retry") from e


@dataclass
class _QueuedTask:
    id: int
    name: str
    payload: dict[str, Any]
    run_at: datetime
    delivery_attempt: int = 0
    leased_until: datetime | None = None


class MemoryWorkQueue:
    """In-process work queue; transactional enqueues land on commit."""

    def __init__(self, lease_s: int = 300):
        self.lease_s = lease_s
        self._tasks: dict[int, _QueuedTask] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        delay_s: float = 0,
        *,
        txn: Transaction | None = None,
    ) -> None:
        async def _add() -> None:
            task_id = next(self._ids)
            self._tasks[task_id] = _QueuedTask(
                id=task_id,
                name=name,
                payload=payload,
                run_at=datetime.now(UTC) + timedelta(seconds=delay_s),
            )
            logger.debug("Task enqueued", task=name, delay_s=delay_s)

        if txn is not None:
            txn.on_commit(_add)
        else:
            await _add()

    async def claim(self) -> JobEnvelope | None:
        async with self._lock:
            now = datetime.now(UTC)
            due = [
                t
                for t in self._tasks.values()
                if t.run_at <= now and (t.leased_until is None or t.leased_until < now)
            ]
            if not due:
                return None
            task = min(due, key=lambda t: (t.run_at, t.id))
            task.leased_until = now + timedelta(seconds=self.lease_s)
            envelope = JobEnvelope(
                id=task.id,
                name=task.name,
                payload=task.payload,
                delivery_attempt=task.delivery_attempt,
            )
            task.delivery_attempt += 1
            return envelope

    async def ack(self, envelope: JobEnvelope) -> None:
        self._tasks.pop(envelope.id, None)

    async def retry(
        self, envelope: JobEnvelope, delay_s: float = 0, error: str | None = None
    ) -> None:
        task = self._tasks.get(envelope.id)
        if task is None:
            return
        task.leased_until = None
        task.run_at = datetime.now(UTC) + timedelta(seconds=delay_s)

    def pending(self, name: str | None = None) -> list[_QueuedTask]:
        """Queued tasks in delivery order, optionally filtered by name."""
        tasks = sorted(self._tasks.values(), key=lambda t: (t.run_at, t.id))
        return [t for t in tasks if name is None or t.name == name]

