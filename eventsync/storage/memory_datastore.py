"""
In-process datastore for the single-process dev server and tests.

Transactions are serialized with a lock; writes made inside a transaction
are staged and applied only when the block exits without an exception.
Reads inside a transaction see committed state.
"""

import asyncio
import itertools
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime

from eventsync.infrastructure.observability.logging import get_logger
from eventsync.storage.datastore import Entity, EntityKey, Transaction

logger = get_logger(__name__)


class MemoryDatastore:
    def __init__(self):
        self._entities: dict[EntityKey, Entity] = {}
        self._ids = itertools.count(1)
        self._txn_lock = asyncio.Lock()

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
        if name is None:
            key = EntityKey(kind, parent, id=next(self._ids))
        else:
            key = EntityKey(kind, parent, name=name)
        ent = Entity(key=key, ts=ts, data=bytes(data))
        if txn is not None:
            txn.connection.append(("put", ent))
        else:
            self._entities[key] = ent
        return key

    async def get_multi(
        self, kind: str, parent: str, names: Sequence[str], *, txn: Transaction | None = None
    ) -> list[Entity | None]:
        return [self._entities.get(EntityKey(kind, parent, name=n)) for n in names]

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
        matching = [
            e
            for k, e in self._entities.items()
            if k.kind == kind
            and k.parent == parent
            and (ts_after is None or (e.ts is not None and e.ts > ts_after))
        ]
        # ts then id, undated records last in both directions
        res = sorted(
            (e for e in matching if e.ts is not None),
            key=lambda e: (e.ts, e.key.id or 0),
            reverse=descending,
        )
        res += [e for e in matching if e.ts is None]
        if limit is not None:
            res = res[:limit]
        if keys_only:
            res = [Entity(key=e.key, ts=e.ts, data=b"") for e in res]
        return res

    async def delete_multi(
        self, keys: Sequence[EntityKey], *, txn: Transaction | None = None
    ) -> None:
        if txn is not None:
            txn.connection.extend(("delete", k) for k in keys)
            return
        for k in keys:
            self._entities.pop(k, None)

    async def insert_absent(
        self,
        kind: str,
        parent: str,
        names: Sequence[str],
        *,
        ts: datetime | None = None,
        txn: Transaction | None = None,
    ) -> list[str]:
        """Create empty named records that do not exist yet; returns the names created."""
        taken = set(self._entities)
        if txn is not None:
            taken.update(item.key for op, item in txn.connection if op == "put")
        created = []
        for n in dict.fromkeys(names):
            key = EntityKey(kind, parent, name=n)
            if key in taken:
                continue
            taken.add(key)
            await self.put(kind, parent, b"", ts=ts, name=n, txn=txn)
            created.append(n)
        return created

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Transaction, None]:
        async with self._txn_lock:
            txn = Transaction(connection=[])
            yield txn
            for op, item in txn.connection:
                if op == "put":
                    self._entities[item.key] = item
                else:
                    self._entities.pop(item, None)
            logger.debug("Memory transaction committed", operations=len(txn.connection))
        await txn.run_hooks()
