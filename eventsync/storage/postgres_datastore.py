"""
PostgreSQL implementation of the Datastore protocol on the ``entities`` table.

Auto-id records get the BIGSERIAL id; named records are upserted on
(kind, parent, name). Query order ties break on id, so records written in
the same transaction keep their insertion order.
"""

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime

from eventsync.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from eventsync.db.pool import DatabasePoolManager
from eventsync.errors import ErrorKind, ScheduleError
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.storage.datastore import Entity, EntityKey, Transaction

logger = get_logger(__name__)


def _to_schedule_error(e: DatabaseError) -> ScheduleError:
    kind = ErrorKind.CONFLICT if e.conflict else ErrorKind.UNAVAILABLE
    return ScheduleError(str(e), kind=kind)


def _row_key(row: dict, kind: str, parent: str) -> EntityKey:
    if row.get("name") is not None:
        return EntityKey(kind, parent, name=row["name"])
    return EntityKey(kind, parent, id=row["id"])


class PostgresDatastore:
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    def _conn(self, txn: Transaction | None):
        return txn.connection if txn is not None else None

    async def put(
        self,
        kind: str,
        parent: str,
        data: bytes,
        *,
        ts: datetime | None = None,
        name: str | None = None,
        txn: Transaction | None = None,
    ) -> EntityKey:
        try:
            if name is None:
                row = await fetch_one(
                    """
                    INSERT INTO entities (kind, parent, ts, data)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id
                    """,
                    (kind, parent, ts, data),
                    connection=self._conn(txn),
                    pool=self.pool,
                )
                return EntityKey(kind, parent, id=row["id"])

            await execute_query(
                """
                INSERT INTO entities (kind, parent, name, ts, data)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (kind, parent, name) WHERE name IS NOT NULL
                DO UPDATE SET ts = EXCLUDED.ts, data = EXCLUDED.data
                """,
                (kind, parent, name, ts, data),
                connection=self._conn(txn),
                pool=self.pool,
            )
            return EntityKey(kind, parent, name=name)
        except DatabaseError as e:
            raise _to_schedule_error(e) from e

    async def get_multi(
        self, kind: str, parent: str, names: Sequence[str], *, txn: Transaction | None = None
    ) -> list[Entity | None]:
        if not names:
            return []
        try:
            rows = await fetch_all(
                """
                SELECT id, name, ts, data FROM entities
                WHERE kind = %s AND parent = %s AND name = ANY(%s)
                """,
                (kind, parent, list(names)),
                connection=self._conn(txn),
                pool=self.pool,
            )
        except DatabaseError as e:
            raise _to_schedule_error(e) from e

        found = {
            r["name"]: Entity(key=_row_key(r, kind, parent), ts=r["ts"], data=bytes(r["data"]))
            for r in rows
        }
        return [found.get(n) for n in names]

    async def query(
        self,
        kind: str,
        parent: str,
        *,
        ts_after: datetime | None = None,
        descending: bool = False,
        limit: int | None = None,
        keys_only: bool = False,
        txn: Transaction | None = None,
    ) -> list[Entity]:
        columns = "id, name, ts" if keys_only else "id, name, ts, data"
        order = "DESC" if descending else "ASC"
        query = f"SELECT {columns} FROM entities WHERE kind = %s AND parent = %s"
        params: list = [kind, parent]
        if ts_after is not None:
            query += " AND ts > %s"
            params.append(ts_after)
        query += f" ORDER BY ts {order} NULLS LAST, id {order}"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        try:
            rows = await fetch_all(
                query, tuple(params), connection=self._conn(txn), pool=self.pool
            )
        except DatabaseError as e:
            raise _to_schedule_error(e) from e

        return [
            Entity(
                key=_row_key(r, kind, parent),
                ts=r["ts"],
                data=b"" if keys_only else bytes(r["data"]),
            )
            for r in rows
        ]

    async def delete_multi(
        self, keys: Sequence[EntityKey], *, txn: Transaction | None = None
    ) -> None:
        try:
            for key in keys:
                if key.name is not None:
                    await execute_query(
                        "DELETE FROM entities WHERE kind = %s AND parent = %s AND name = %s",
                        (key.kind, key.parent, key.name),
                        connection=self._conn(txn),
                        pool=self.pool,
                    )
                else:
                    await execute_query(
                        "DELETE FROM entities WHERE kind = %s AND id = %s",
                        (key.kind, key.id),
                        connection=self._conn(txn),
                        pool=self.pool,
                    )
        except DatabaseError as e:
            raise _to_schedule_error(e) from e

        logger.debug("Entities deleted", count=len(keys))

    async def insert_absent(
        self,
        kind: str,
        parent: str,
        names: Sequence[str],
        *,
        ts: datetime | None = None,
        txn: Transaction | None = None,
    ) -> list[str]:
        """
        Create empty named records that do not exist yet; returns the names
        this call created. A concurrent transaction inserting the same name
        blocks until that one finishes, so each name is created exactly once.
        """
        names = list(dict.fromkeys(names))
        if not names:
            return []
        try:
            rows = await fetch_all(
                """
                INSERT INTO entities (kind, parent, name, ts, data)
                SELECT %s::text, %s::text, n, %s::timestamptz, %s::bytea
                FROM unnest(%s::text[]) AS n
                ON CONFLICT (kind, parent, name) WHERE name IS NOT NULL DO NOTHING
                RETURNING name
                """,
                (kind, parent, ts, b"", names),
                connection=self._conn(txn),
                pool=self.pool,
            )
        except DatabaseError as e:
            raise _to_schedule_error(e) from e

        created = {r["name"] for r in rows}
        return [n for n in names if n in created]

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Transaction, None]:
        async with self.pool.transaction() as conn:
            txn = Transaction(connection=conn)
            yield txn
        await txn.run_hooks()
