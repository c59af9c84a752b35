"""
Presentation-only session fields.

These are recomputed on every manifest parse and never take part in
diffing: a timezone change alone must not notify anyone.
"""

from datetime import datetime, timedelta, tzinfo

from eventsync.features.schedule.domain.models import Session, Tag

LIVE_STREAMED_FILTER = "Live streamed"


def duration_str(d: timedelta) -> str:
    """Human readable duration: "30 minutes", "1 hour", "1.5 hour", "2 hours"."""
    minutes = int(d.total_seconds() // 60)
    if minutes < 60:
        return f"{minutes} minutes"
    hours = minutes / 60
    unit = "hour" if hours < 2 else "hours"
    return f"{hours:g} {unit}"


def clock_str(ts: datetime) -> str:
    return ts.strftime("%I:%M %p").lstrip("0")


def block_str(ts: datetime) -> str:
    return ts.strftime("%I %p").lstrip("0")


def apply_presentation_fields(
    session: Session,
    tags: dict[str, Tag],
    tz: tzinfo,
) -> None:
    """Fill filters, day, block, start, end and duration of session in place."""
    filters = {tags[t].name: True for t in session.tags if t in tags and tags[t].name}
    if session.is_live:
        filters[LIVE_STREAMED_FILTER] = True
    session.filters = filters

    if session.start_time is None:
        return
    local_start = session.start_time.astimezone(tz)
    session.day = local_start.day
    session.block = block_str(local_start)
    session.start = clock_str(local_start)

    if session.end_time is None:
        return
    session.end = clock_str(session.end_time.astimezone(tz))
    session.duration = duration_str(session.end_time - session.start_time)
