"""Debug-only endpoints; the router is not mounted in prod."""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field

from eventsync.context import AppContext, get_context
from eventsync.errors import ScheduleError
from eventsync.features.notifications.domain.models import Notification
from eventsync.features.notifications.services.dispatcher import (
    NOTIFY_USER_TASK,
    enqueue_notify_subscribers,
    notify_user_payload,
)
from eventsync.features.schedule.domain.models import ChangeKind, ChangeSet
from eventsync.features.schedule.services.sync_service import SyncError
from eventsync.infrastructure.observability.logging import get_logger
from eventsync.services.infrastructure.cache import CacheError

logger = get_logger(__name__)

router = APIRouter(prefix="/debug", tags=["debug"])


class DebugNotifyRequest(BaseModel):
    users: list[str] = Field(min_length=1)
    title: str
    body: str = ""
    url: str = "schedule"
    kind: ChangeKind = ChangeKind.DETAILS


@router.post("/push")
async def debug_push(
    payload: dict[str, Any] = Body(...),
    ctx: AppContext = Depends(get_context),
):
    """Store a ChangeSet as if a sync produced it and fan it out."""
    try:
        changes = ChangeSet.from_dict(payload, trust_token=False)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    try:
        async with ctx.datastore.transaction() as txn:
            await ctx.change_log.store(changes, txn=txn)
            await enqueue_notify_subscribers(ctx.queue, changes, txn=txn)
    except ScheduleError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e

    logger.info("Debug changes stored", sessions=len(changes.sessions))
    return {"stored": True, "sessions": sorted(changes.sessions)}


@router.post("/notify")
async def debug_notify(request: DebugNotifyRequest, ctx: AppContext = Depends(get_context)):
    """Queue one notification straight to the given users."""
    message = Notification(
        kind=request.kind, title=request.title, body=request.body, url=request.url
    )
    for uid in request.users:
        shard = ctx.user_store.shard_for(uid)
        await ctx.queue.enqueue(NOTIFY_USER_TASK, notify_user_payload(uid, shard, [message]))
    return {"queued": len(request.users)}


@router.post("/sync")
async def debug_sync(ctx: AppContext = Depends(get_context)):
    """Run a sync without the shared secret."""
    try:
        result = await ctx.sync.run(trusted=True)
    except SyncError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return {"status": result.status.value, "fingerprint": result.fingerprint}


@router.post("/clear")
async def debug_clear(ctx: AppContext = Depends(get_context)):
    """Delete every stored snapshot and flush the result cache."""
    try:
        deleted = await ctx.snapshots.clear()
    except (ScheduleError, CacheError) as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return {"deleted": deleted}
