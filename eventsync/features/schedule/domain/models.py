"""
Domain models for the event schedule.

Sessions, speakers, videos and tags are plain dataclasses keyed by their
upstream ids. ``EventSnapshot`` is the full dataset at one point in time and
``ChangeSet`` is the partial record produced by diffing two snapshots or by
the clock job. Both carry their own JSON codec since they are stored as
opaque payloads.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ChangeKind(str, Enum):
    """Reason a session appears in a ChangeSet."""

    DETAILS = "details"
    VIDEO = "video"
    START = "start"
    SOON = "soon"
    SURVEY = "survey"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class Session:
    """A conference talk."""

    id: str
    title: str = ""
    description: str = ""
    url: str = ""
    room: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_live: bool = False
    video_url: str = ""
    photo_url: str = ""
    tags: list[str] = field(default_factory=list)
    speaker_ids: list[str] = field(default_factory=list)

    # presentation-only fields, derived when parsing the manifest
    filters: dict[str, bool] = field(default_factory=dict)
    day: int = 0
    block: str = ""
    start: str = ""
    end: str = ""
    duration: str = ""

    # set only on copies placed inside a ChangeSet
    change_kind: ChangeKind | None = None

    def has_ended(self, now: datetime) -> bool:
        return self.end_time is not None and self.end_time <= now

    def with_change(self, kind: ChangeKind) -> "Session":
        return replace(self, tags=list(self.tags), speaker_ids=list(self.speaker_ids),
                       filters=dict(self.filters), change_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "room": self.room,
            "startTimestamp": format_timestamp(self.start_time),
            "endTimestamp": format_timestamp(self.end_time),
            "isLivestream": self.is_live,
            "youtubeUrl": self.video_url,
            "photoUrl": self.photo_url,
            "tags": list(self.tags),
            "speakers": list(self.speaker_ids),
            "filters": dict(self.filters),
            "day": self.day,
            "block": self.block,
            "start": self.start,
            "end": self.end,
            "duration": self.duration,
            "update": self.change_kind.value if self.change_kind else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        update = data.get("update")
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            url=data.get("url") or "",
            room=data.get("room") or "",
            start_time=parse_timestamp(data.get("startTimestamp")),
            end_time=parse_timestamp(data.get("endTimestamp")),
            is_live=bool(data.get("isLivestream", False)),
            video_url=data.get("youtubeUrl") or "",
            photo_url=data.get("photoUrl") or "",
            tags=list(data.get("tags") or []),
            speaker_ids=list(data.get("speakers") or []),
            filters=dict(data.get("filters") or {}),
            day=int(data.get("day") or 0),
            block=data.get("block") or "",
            start=data.get("start") or "",
            end=data.get("end") or "",
            duration=data.get("duration") or "",
            change_kind=ChangeKind(update) if update else None,
        )


@dataclass(slots=True)
class Speaker:
    id: str
    name: str = ""
    bio: str = ""
    company: str = ""
    thumb_url: str = ""
    plusone_url: str = ""
    twitter_url: str = ""


@dataclass(slots=True)
class Video:
    id: str
    title: str = ""
    description: str = ""
    topic: str = ""
    speakers: str = ""
    thumb_url: str = ""
    year: int = 0


@dataclass(slots=True)
class Tag:
    id: str
    category: str = ""
    name: str = ""


def _entity_from_dict(cls, data: dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def _maps_to_dict(obj) -> dict[str, Any]:
    return {
        "sessions": {k: s.to_dict() for k, s in obj.sessions.items()},
        "speakers": {k: asdict(s) for k, s in obj.speakers.items()},
        "videos": {k: asdict(v) for k, v in obj.videos.items()},
        "tags": {k: asdict(t) for k, t in obj.tags.items()},
    }


def _maps_from_dict(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "sessions": {k: Session.from_dict(v) for k, v in (data.get("sessions") or {}).items()},
        "speakers": {
            k: _entity_from_dict(Speaker, v) for k, v in (data.get("speakers") or {}).items()
        },
        "videos": {k: _entity_from_dict(Video, v) for k, v in (data.get("videos") or {}).items()},
        "tags": {k: _entity_from_dict(Tag, v) for k, v in (data.get("tags") or {}).items()},
    }


@dataclass(slots=True)
class EventSnapshot:
    """The full conference dataset at a point in time."""

    sessions: dict[str, Session] = field(default_factory=dict)
    speakers: dict[str, Speaker] = field(default_factory=dict)
    videos: dict[str, Video] = field(default_factory=dict)
    tags: dict[str, Tag] = field(default_factory=dict)
    modified_at: datetime | None = None
    # assigned at persistence time; empty for the never-persisted snapshot
    fingerprint: str = ""

    def is_empty(self) -> bool:
        return not (self.sessions or self.speakers or self.videos or self.tags)

    def to_dict(self) -> dict[str, Any]:
        """Entity content only; fingerprint and modification time live on the record."""
        return _maps_to_dict(self)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], *, modified_at: datetime | None = None, fingerprint: str = ""
    ) -> "EventSnapshot":
        return cls(**_maps_from_dict(data), modified_at=modified_at, fingerprint=fingerprint)


@dataclass(slots=True)
class ChangeSet:
    """Partial update record: only entities that changed, plus a timestamp."""

    updated_at: datetime
    token: str = ""
    sessions: dict[str, Session] = field(default_factory=dict)
    speakers: dict[str, Speaker] = field(default_factory=dict)
    videos: dict[str, Video] = field(default_factory=dict)
    tags: dict[str, Tag] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.sessions or self.speakers or self.videos or self.tags)

    def merge(self, other: "ChangeSet") -> None:
        """Copy entries of other over self (no deep copy) and adopt its timestamp."""
        self.sessions.update(other.sessions)
        self.speakers.update(other.speakers)
        self.videos.update(other.videos)
        self.tags.update(other.tags)
        self.updated_at = other.updated_at

    def to_dict(self) -> dict[str, Any]:
        return {"token": self.token, "ts": format_timestamp(self.updated_at), **_maps_to_dict(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, trust_token: bool = True) -> "ChangeSet":
        return cls(
            updated_at=parse_timestamp(data.get("ts")) or datetime.now(UTC),
            token=(data.get("token") or "") if trust_token else "",
            **_maps_from_dict(data),
        )
