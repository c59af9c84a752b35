"""
Schedule read API and the upstream change notification endpoint.
"""

from dataclasses import asdict
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status

from eventsync.context import AppContext, get_context
from eventsync.errors import ScheduleError
from eventsync.features.schedule.domain.models import EventSnapshot, parse_timestamp
from eventsync.features.schedule.services.sync_service import SyncError, SyncStatus
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["schedule"])

_NO_TIME = datetime.min.replace(tzinfo=UTC)


def _parse_etags(header: str | None) -> list[str]:
    if not header:
        return []
    return [tag.strip() for tag in header.split(",") if tag.strip()]


def schedule_payload(snapshot: EventSnapshot) -> dict:
    """Sessions and videos as lists ordered by time, speakers and tags keyed by id."""
    sessions = sorted(
        snapshot.sessions.values(),
        key=lambda s: (s.start_time is None, s.start_time or _NO_TIME, s.id),
    )
    videos = sorted(snapshot.videos.values(), key=lambda v: (-v.year, v.title, v.id))
    return {
        "sessions": [s.to_dict() for s in sessions],
        "speakers": {k: asdict(v) for k, v in snapshot.speakers.items()},
        "video_library": [asdict(v) for v in videos],
        "tags": {k: asdict(v) for k, v in snapshot.tags.items()},
    }


@router.get("/api/v1/schedule")
async def get_schedule(
    response: Response,
    if_none_match: str | None = Header(default=None),
    x_request_id: str | None = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    """Latest schedule; 304 when the caller's etag is current."""
    try:
        snapshot = await ctx.snapshots.get_latest(
            _parse_etags(if_none_match), request_id=x_request_id
        )
    except ScheduleError as e:
        if e.is_not_modified:
            return Response(
                status_code=status.HTTP_304_NOT_MODIFIED,
                headers={"etag": f'"{e.snapshot.fingerprint}"'},
            )
        logger.error("Schedule read failed", error=str(e), kind=e.kind.value)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e

    if snapshot.fingerprint:
        response.headers["etag"] = f'"{snapshot.fingerprint}"'
    return schedule_payload(snapshot)


@router.get("/api/v1/changes")
async def get_changes(
    since: str = Query(..., description="ISO 8601 timestamp"),
    ctx: AppContext = Depends(get_context),
):
    """Everything that changed strictly after since, merged last-write-wins."""
    try:
        t = parse_timestamp(since)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    if t is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="since is required")

    try:
        changes = await ctx.change_log.changes_since(t)
    except ScheduleError as e:
        logger.error("Change log read failed", error=str(e), kind=e.kind.value)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return changes.to_dict()


@router.get("/api/v1/sessions/{session_id}")
async def get_session(session_id: str, ctx: AppContext = Depends(get_context)):
    try:
        session = await ctx.snapshots.get_session(session_id)
    except ScheduleError as e:
        if e.is_not_found:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
        logger.error("Session read failed", session_id=session_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return session.to_dict()


@router.post("/sync/gcs")
async def sync_from_storage_notification(
    x_goog_channel_token: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    ctx: AppContext = Depends(get_context),
):
    """
    Storage change notification. Concurrent and no-op syncs still answer
    200 so the notification channel is not retried. A rejected token gets
    an empty 200 that says nothing about the check.
    """
    logger.info("Storage notification received", resource_state=x_goog_resource_state)
    try:
        result = await ctx.sync.run(token=x_goog_channel_token)
    except SyncError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    if result.status is SyncStatus.UNAUTHORIZED:
        return Response(status_code=status.HTTP_200_OK)
    return {"status": result.status.value, "fingerprint": result.fingerprint}
