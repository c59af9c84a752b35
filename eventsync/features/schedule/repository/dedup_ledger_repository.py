"""
Write-once record of (session, kind) pairs the clock job already announced.
"""

from collections.abc import Iterable
from datetime import UTC, datetime

from eventsync.infrastructure.observability.logging import get_logger
from eventsync.storage.datastore import Datastore, Transaction

logger = get_logger(__name__)

NEXT_KIND = "Next"
ROOT_PARENT = "root"


class DedupLedgerRepository:
    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def filter_new(
        self, keys: Iterable[str], *, txn: Transaction | None = None
    ) -> list[str]:
        """Return the keys that were never recorded, in input order."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return []
        found = await self.datastore.get_multi(NEXT_KIND, ROOT_PARENT, keys, txn=txn)
        return [k for k, ent in zip(keys, found, strict=True) if ent is None]

    async def claim(self, keys: Iterable[str], *, txn: Transaction | None = None) -> list[str]:
        """
        Record keys and return the ones this call recorded first.

        Only the returned keys may be announced: when two runs overlap, a
        key goes to whichever transaction inserted it.
        """
        claimed = await self.datastore.insert_absent(
            NEXT_KIND, ROOT_PARENT, list(keys), ts=datetime.now(UTC), txn=txn
        )
        logger.debug("Ledger entries claimed", count=len(claimed))
        return claimed
