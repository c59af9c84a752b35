"""
Append-only log of ChangeSets, read back by clients catching up.
"""

import json
from datetime import datetime

from eventsync.features.schedule.domain.models import ChangeSet, format_timestamp
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.storage.datastore import Datastore, EntityKey, Transaction

logger = get_logger(__name__)

CHANGES_KIND = "Changes"
ROOT_PARENT = "root"

# maximum number of log entries merged into one changes_since() result
MAX_CHANGES_BATCH = 1000


class ChangeLogRepository:
    def __init__(self, datastore: Datastore):
        self.datastore = datastore

    async def store(self, changes: ChangeSet, *, txn: Transaction | None = None) -> EntityKey:
        """Append changes as a new entry timestamped with changes.updated_at."""
        payload = json.dumps(changes.to_dict()).encode()
        key = await self.datastore.put(
            CHANGES_KIND, ROOT_PARENT, payload, ts=changes.updated_at, txn=txn
        )
        logger.info(
            "Changes stored",
            ts=format_timestamp(changes.updated_at),
            sessions=len(changes.sessions),
            speakers=len(changes.speakers),
            videos=len(changes.videos),
            tags=len(changes.tags),
        )
        return key

    async def changes_since(self, t: datetime) -> ChangeSet:
        """
        Merge every entry stored strictly after t, oldest first.

        Later entries win per entity id. The result's updated_at is the last
        merged entry's timestamp, or t itself when there is nothing newer.
        """
        rows = await self.datastore.query(
            CHANGES_KIND, ROOT_PARENT, ts_after=t, limit=MAX_CHANGES_BATCH
        )

        result = ChangeSet(updated_at=t)
        for row in rows:
            try:
                entry = ChangeSet.from_dict(json.loads(row.data), trust_token=False)
            except (KeyError, TypeError, ValueError) as e:
                logger.error("Skipping undecodable change entry", key=str(row.key), error=str(e))
                continue
            # the record timestamp is authoritative over the payload copy
            if row.ts is not None:
                entry.updated_at = row.ts
            result.merge(entry)

        return result
