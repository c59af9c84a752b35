"""
Turns a ChangeSet into the notifications one user should receive.

At most one notification per change kind: several sessions of the same kind
are listed together instead of flooding the notification tray.
"""

from collections.abc import Iterable
from datetime import datetime

from eventsync.features.notifications.domain.models import Notification
from eventsync.features.schedule.domain.models import ChangeKind, ChangeSet, Session

MY_SCHEDULE_URL = "schedule#myschedule"
LIVESTREAM_URL = "schedule#livestream"

# emission order of grouped notifications
NOTIFICATION_ORDER = (
    ChangeKind.DETAILS,
    ChangeKind.VIDEO,
    ChangeKind.START,
    ChangeKind.SOON,
    ChangeKind.SURVEY,
)


def session_url(session_id: str) -> str:
    return f"schedule?sid={session_id}"


def _sort_key(s: Session):
    return (s.start_time is None, s.start_time or datetime.min, s.title)


def _titles(sessions: list[Session]) -> str:
    return ", ".join(s.title or s.id for s in sessions)


def filter_bookmarked(changes: ChangeSet, bookmarked_ids: Iterable[str]) -> list[Session]:
    """Sessions of changes the user bookmarked; surveys always pass."""
    bookmarks = set(bookmarked_ids)
    return [
        s
        for sid, s in changes.sessions.items()
        if s.change_kind is ChangeKind.SURVEY or sid in bookmarks
    ]


def _details(sessions: list[Session]) -> Notification:
    verb = "was updated" if len(sessions) == 1 else "were updated"
    return Notification(
        kind=ChangeKind.DETAILS,
        title="Some events in My Schedule have been updated",
        body=f"{_titles(sessions)} {verb}",
        url=MY_SCHEDULE_URL,
    )


def _video(sessions: list[Session]) -> Notification:
    if len(sessions) == 1:
        s = sessions[0]
        return Notification(
            kind=ChangeKind.VIDEO,
            title="Session recording is available",
            body=f"Watch {s.title} now",
            url=session_url(s.id),
        )
    return Notification(
        kind=ChangeKind.VIDEO,
        title="New session recordings are available",
        body=_titles(sessions),
        url=MY_SCHEDULE_URL,
    )


def _start(sessions: list[Session]) -> Notification:
    if len(sessions) == 1:
        s = sessions[0]
        body = f"{s.title} is starting in {s.room}" if s.room else f"{s.title} is starting"
        return Notification(
            kind=ChangeKind.START,
            title="Session starting soon",
            body=body,
            url=session_url(s.id),
        )
    return Notification(
        kind=ChangeKind.START,
        title="Sessions in My Schedule are starting soon",
        body=_titles(sessions),
        url=MY_SCHEDULE_URL,
    )


def _soon(sessions: list[Session]) -> Notification:
    return Notification(
        kind=ChangeKind.SOON,
        title="The event is starting soon",
        body="Tune in to the livestream and follow along",
        url=LIVESTREAM_URL,
    )


def _survey(sessions: list[Session]) -> Notification:
    return Notification(
        kind=ChangeKind.SURVEY,
        title="How were the sessions?",
        body="Rate the sessions you attended and help us improve",
        url=MY_SCHEDULE_URL,
    )


_BUILDERS = {
    ChangeKind.DETAILS: _details,
    ChangeKind.VIDEO: _video,
    ChangeKind.START: _start,
    ChangeKind.SOON: _soon,
    ChangeKind.SURVEY: _survey,
}


def build_notifications(
    changes: ChangeSet, bookmarked_ids: Iterable[str]
) -> list[Notification]:
    """
    Build the notifications for one user.

    Args:
        changes: ChangeSet whose sessions carry a change_kind
        bookmarked_ids: Session ids in the user's schedule

    Returns:
        One notification per kind present after filtering, in
        NOTIFICATION_ORDER. Empty when nothing concerns the user.
    """
    groups: dict[ChangeKind, list[Session]] = {}
    for s in filter_bookmarked(changes, bookmarked_ids):
        if s.change_kind is None:
            continue
        groups.setdefault(s.change_kind, []).append(s)

    result = []
    for kind in NOTIFICATION_ORDER:
        sessions = groups.get(kind)
        if not sessions:
            continue
        sessions.sort(key=_sort_key)
        n = _BUILDERS[kind](sessions)
        n.session_ids = [s.id for s in sessions]
        result.append(n)
    return result
