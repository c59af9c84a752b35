"""
Client for the upstream schedule manifest.

The manifest is fetched with If-Modified-Since. Its body either lists
``data_files`` to fetch relative to the manifest URL, or is itself a data
file. Data files carry sessions, speakers, videos, tags and rooms, as lists
or id-keyed maps.
"""

from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any
from urllib.parse import urljoin
from zoneinfo import ZoneInfo

import httpx

from eventsync.features.schedule.domain.formatting import apply_presentation_fields
from eventsync.features.schedule.domain.models import (
    EventSnapshot,
    Session,
    Speaker,
    Tag,
    Video,
    parse_timestamp,
)
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ManifestError(Exception):
    """Custom exception for manifest fetch and parse failures."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _items(value: Any) -> list[dict[str, Any]]:
    if not value:
        return []
    if isinstance(value, dict):
        return [dict(v, id=v.get("id") or k) for k, v in value.items()]
    return list(value)


def _parse_session(raw: dict[str, Any], rooms: dict[str, str]) -> Session:
    room = raw.get("room") or ""
    return Session(
        id=raw["id"],
        title=raw.get("title") or "",
        description=raw.get("description") or "",
        url=raw.get("url") or "",
        room=rooms.get(room, room),
        start_time=parse_timestamp(raw.get("startTimestamp")),
        end_time=parse_timestamp(raw.get("endTimestamp")),
        is_live=bool(raw.get("isLivestream", False)),
        video_url=raw.get("youtubeUrl") or "",
        photo_url=raw.get("photoUrl") or "",
        tags=list(raw.get("tags") or []),
        speaker_ids=list(raw.get("speakers") or []),
    )


def _parse_speaker(raw: dict[str, Any]) -> Speaker:
    return Speaker(
        id=raw["id"],
        name=raw.get("name") or "",
        bio=raw.get("bio") or "",
        company=raw.get("company") or "",
        thumb_url=raw.get("thumbnailUrl") or "",
        plusone_url=raw.get("plusoneUrl") or "",
        twitter_url=raw.get("twitterUrl") or "",
    )


def _parse_video(raw: dict[str, Any]) -> Video:
    return Video(
        id=raw["id"],
        title=raw.get("title") or "",
        description=raw.get("desc") or raw.get("description") or "",
        topic=raw.get("topic") or "",
        speakers=raw.get("speakers") or "",
        thumb_url=raw.get("thumbnailUrl") or "",
        year=int(raw.get("year") or 0),
    )


def _parse_tag(raw: dict[str, Any]) -> Tag:
    return Tag(
        id=raw.get("tag") or raw["id"],
        category=raw.get("category") or "",
        name=raw.get("name") or "",
    )


def parse_data_file(data: dict[str, Any], into: EventSnapshot) -> None:
    """Merge one data file into a snapshot; later files win per id."""
    rooms = {r["id"]: r.get("name") or r["id"] for r in _items(data.get("rooms"))}

    for raw in _items(data.get("sessions")):
        s = _parse_session(raw, rooms)
        into.sessions[s.id] = s
    for raw in _items(data.get("speakers")):
        sp = _parse_speaker(raw)
        into.speakers[sp.id] = sp
    for raw in _items(data.get("video_library") or data.get("videos")):
        v = _parse_video(raw)
        into.videos[v.id] = v
    for raw in _items(data.get("tags")):
        t = _parse_tag(raw)
        into.tags[t.id] = t


class ManifestClient:
    """Fetches the schedule manifest and turns it into an EventSnapshot."""

    def __init__(
        self,
        manifest_url: str,
        *,
        tz: ZoneInfo,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.manifest_url = manifest_url
        self.tz = tz
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, since: datetime | None = None) -> EventSnapshot | None:
        """
        Fetch the schedule if it changed after since.

        Returns:
            The parsed snapshot (modified_at from Last-Modified), or None
            when upstream reports no change.

        Raises:
            ManifestError: network failure, unexpected status or bad payload
        """
        if not self.manifest_url:
            raise ManifestError(
                "MANIFEST_URL not configured", operation="fetch", recoverable=False
            )

        headers = {}
        if since is not None:
            headers["If-Modified-Since"] = format_datetime(since.astimezone(UTC), usegmt=True)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await self._get(client, self.manifest_url, headers)
            if response.status_code == 304:
                logger.info("Manifest not modified", since=headers.get("If-Modified-Since"))
                return None

            modified_at = self._last_modified(response)
            if since is not None and modified_at <= since:
                logger.info(
                    "Manifest not newer than stored snapshot",
                    since=since.isoformat(),
                    modified_at=modified_at.isoformat(),
                )
                return None

            manifest = self._json(response, self.manifest_url)
            snapshot = EventSnapshot(modified_at=modified_at)

            data_files = manifest.get("data_files")
            try:
                if data_files:
                    for name in data_files:
                        url = urljoin(self.manifest_url, name)
                        parse_data_file(self._json(await self._get(client, url), url), snapshot)
                else:
                    parse_data_file(manifest, snapshot)
            except (KeyError, TypeError, ValueError) as e:
                raise ManifestError(f"malformed schedule data: {e}", operation="parse") from e

        for session in snapshot.sessions.values():
            apply_presentation_fields(session, snapshot.tags, self.tz)

        logger.info(
            "Manifest fetched",
            modified_at=modified_at.isoformat(),
            data_files=len(data_files or []),
            sessions=len(snapshot.sessions),
            speakers=len(snapshot.speakers),
            videos=len(snapshot.videos),
            tags=len(snapshot.tags),
        )
        return snapshot

    async def _get(
        self, client: httpx.AsyncClient, url: str, headers: dict | None = None
    ) -> httpx.Response:
        try:
            response = await client.get(url, headers=headers)
        except httpx.RequestError as e:
            logger.error("Manifest request failed", url=url, error=str(e))
            raise ManifestError(f"GET {url}: {e}", operation="fetch") from e

        if response.status_code not in (200, 304):
            logger.error("Unexpected manifest response", url=url, status_code=response.status_code)
            raise ManifestError(
                f"GET {url}: status {response.status_code}",
                operation="fetch",
                recoverable=response.status_code >= 500,
            )
        return response

    def _json(self, response: httpx.Response, url: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise ManifestError(f"{url}: invalid JSON: {e}", operation="parse") from e
        if not isinstance(data, dict):
            raise ManifestError(f"{url}: expected a JSON object", operation="parse")
        return data

    def _last_modified(self, response: httpx.Response) -> datetime:
        value = response.headers.get("last-modified")
        if value:
            try:
                return parsedate_to_datetime(value).astimezone(UTC)
            except (TypeError, ValueError):
                logger.warning("Ignoring unparsable Last-Modified", value=value)
        return datetime.now(UTC)
