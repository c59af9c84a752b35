# eventsync/db/schema.py
"""
Idempotent DDL applied at startup.

``entities`` holds every stored record (snapshots, change log entries, the
dedup ledger) partitioned by kind and parent. ``task_queue`` is the work
queue polled by the task_queue worker.
"""

from eventsync.db.pool import DatabasePoolManager
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS entities (
        id BIGSERIAL PRIMARY KEY,
        kind TEXT NOT NULL,
        parent TEXT NOT NULL,
        name TEXT,
        ts TIMESTAMPTZ,
        data BYTEA NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS entities_named_idx
        ON entities (kind, parent, name) WHERE name IS NOT NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS entities_kind_ts_idx
        ON entities (kind, parent, ts, id)
    """,
    """
    CREATE TABLE IF NOT EXISTS task_queue (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        payload JSONB NOT NULL,
        delivery_attempt INTEGER NOT NULL DEFAULT 0,
        run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        leased_until TIMESTAMPTZ,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS task_queue_due_idx
        ON task_queue (run_at, id)
    """,
)


async def apply_schema(pool: DatabasePoolManager) -> None:
    async with pool.transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("Database schema ensured", statements=len(SCHEMA_STATEMENTS))
