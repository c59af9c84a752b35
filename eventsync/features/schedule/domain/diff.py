"""
Structural diff between two event snapshots.

Only additions and changes are reported; an entity missing from the new
snapshot is never part of the result. Sessions carry a change kind so the
notification layer knows what to tell subscribers.
"""

from datetime import UTC, datetime

from eventsync.features.schedule.domain.models import (
    ChangeKind,
    ChangeSet,
    EventSnapshot,
    Session,
)


def diff_snapshots(
    old: EventSnapshot, new: EventSnapshot, now: datetime | None = None
) -> ChangeSet:
    """
    Compute the ChangeSet turning old into new.

    Neither snapshot is modified: sessions in the result are copies with
    ``change_kind`` set.

    Args:
        old: Last stored snapshot (may be empty)
        new: Freshly fetched snapshot
        now: Reference time for "has the session ended" checks

    Returns:
        ChangeSet with updated_at = new.modified_at (or now when unknown)
    """
    now = now or datetime.now(UTC)
    changes = ChangeSet(updated_at=new.modified_at or now)

    for sid, session in new.sessions.items():
        kind = session_change_kind(old.sessions.get(sid), session, now)
        if kind is not None:
            changes.sessions[sid] = session.with_change(kind)

    changes.speakers = _changed_entities(old.speakers, new.speakers)
    changes.videos = _changed_entities(old.videos, new.videos)
    changes.tags = _changed_entities(old.tags, new.tags)
    return changes


def session_change_kind(
    old: Session | None, new: Session, now: datetime
) -> ChangeKind | None:
    """
    Classify the change of a single session, or None when nothing worth
    notifying about changed. A session absent from the old snapshot is
    compared against an empty one.
    """
    if old is None:
        old = Session(id=new.id)

    ended = new.has_ended(now)
    if not ended and _details_changed(old, new):
        return ChangeKind.DETAILS
    if ended and _video_published(old, new):
        return ChangeKind.VIDEO
    return None


def _details_changed(a: Session, b: Session) -> bool:
    return (
        a.title != b.title
        or a.description != b.description
        or a.room != b.room
        or a.start_time != b.start_time
        or a.end_time != b.end_time
        or set(a.tags) != set(b.tags)
        or list(a.speaker_ids or []) != list(b.speaker_ids or [])
    )


def _video_published(a: Session, b: Session) -> bool:
    # a recording exists only once the live stream is over and a link is set
    if b.is_live or not b.video_url:
        return False
    return a.is_live != b.is_live or a.video_url != b.video_url


def _changed_entities(old: dict, new: dict) -> dict:
    return {eid: item for eid, item in new.items() if old.get(eid) != item}
