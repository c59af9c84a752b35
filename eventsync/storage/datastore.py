"""
Kind-partitioned entity storage used by the schedule stores.

Every record belongs to a kind and a parent (the ancestor scope), has an
optional timestamp used for ordering and range queries, and an opaque
payload. Records either get an auto-allocated numeric id or a caller
supplied name. No cross-kind joins are needed anywhere.
"""

from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

CommitHook = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class EntityKey:
    kind: str
    parent: str
    id: int | None = None
    name: str | None = None

    def __str__(self) -> str:
        return f"/{self.kind},{self.parent}/{self.kind},{self.name or self.id}"


@dataclass(slots=True)
class Entity:
    key: EntityKey
    ts: datetime | None
    data: bytes


@dataclass
class Transaction:
    """
    Handle passed to store operations that must commit together.

    ``connection`` is backend specific (a psycopg connection for Postgres).
    Hooks registered with on_commit run only after a successful commit.
    """

    connection: Any = None
    hooks: list[CommitHook] = field(default_factory=list)

    def on_commit(self, hook: CommitHook) -> None:
        self.hooks.append(hook)

    async def run_hooks(self) -> None:
        for hook in self.hooks:
            await hook()


class Datastore(Protocol):
    async def put(
        self,
        kind: str,
        parent: str,
        data: bytes,
        *,
        ts: datetime | None = None,
        name: str | None = None,
        txn: Transaction | None = None,
    ) -> EntityKey: ...

    async def get_multi(
        self, kind: str, parent: str, names: Sequence[str], *, txn: Transaction | None = None
    ) -> list[Entity | None]: ...

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
    ) -> list[Entity]: ...

    async def delete_multi(
        self, keys: Sequence[EntityKey], *, txn: Transaction | None = None
    ) -> None: ...

    async def insert_absent(
        self,
        kind: str,
        parent: str,
        names: Sequence[str],
        *,
        ts: datetime | None = None,
        txn: Transaction | None = None,
    ) -> list[str]: ...

    def transaction(self) -> AbstractAsyncContextManager[Transaction]: ...
