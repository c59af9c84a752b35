from datetime import timedelta

from conftest import T0, make_session

from eventsync.features.notifications.services.builder import (
    MY_SCHEDULE_URL,
    build_notifications,
    session_url,
)
from eventsync.features.schedule.domain.models import ChangeKind, ChangeSet


def _changes(*sessions) -> ChangeSet:
    return ChangeSet(updated_at=T0, sessions={s.id: s for s in sessions})


def test_two_details_sessions_make_one_notification():
    changes = _changes(
        make_session("b", "Beta", start=T0 + timedelta(hours=1)).with_change(ChangeKind.DETAILS),
        make_session("a", "Alpha", start=T0).with_change(ChangeKind.DETAILS),
    )

    notifications = build_notifications(changes, ["a", "b"])

    assert len(notifications) == 1
    n = notifications[0]
    assert n.kind is ChangeKind.DETAILS
    assert n.body == "Alpha, Beta were updated"
    assert n.url == MY_SCHEDULE_URL
    assert n.session_ids == ["a", "b"]


def test_single_details_session_uses_singular():
    changes = _changes(make_session("a", "Alpha").with_change(ChangeKind.DETAILS))

    (n,) = build_notifications(changes, ["a"])

    assert n.body == "Alpha was updated"


def test_sessions_sharing_a_start_time_sort_by_title():
    changes = _changes(
        make_session("z", "Zed").with_change(ChangeKind.DETAILS),
        make_session("y", "Apple").with_change(ChangeKind.DETAILS),
    )

    (n,) = build_notifications(changes, ["y", "z"])

    assert n.body.startswith("Apple, Zed")


def test_unbookmarked_sessions_are_filtered_out():
    changes = _changes(make_session("a").with_change(ChangeKind.DETAILS))

    assert build_notifications(changes, ["other"]) == []


def test_survey_reaches_users_without_bookmarks():
    changes = _changes(make_session("a").with_change(ChangeKind.SURVEY))

    (n,) = build_notifications(changes, [])

    assert n.kind is ChangeKind.SURVEY


def test_single_video_and_start_link_to_the_session():
    changes = _changes(
        make_session("v", "Recorded talk").with_change(ChangeKind.VIDEO),
        make_session("s", "Next talk", room="Amphitheatre").with_change(ChangeKind.START),
    )

    video, start = build_notifications(changes, ["v", "s"])

    assert video.url == session_url("v")
    assert start.url == session_url("s")
    assert "Next talk" in start.body
    assert "Amphitheatre" in start.body


def test_notifications_follow_kind_order():
    changes = _changes(
        make_session("1").with_change(ChangeKind.SURVEY),
        make_session("2").with_change(ChangeKind.SOON),
        make_session("3").with_change(ChangeKind.START),
        make_session("4").with_change(ChangeKind.VIDEO),
        make_session("5").with_change(ChangeKind.DETAILS),
    )

    kinds = [n.kind for n in build_notifications(changes, ["1", "2", "3", "4", "5"])]

    assert kinds == [
        ChangeKind.DETAILS,
        ChangeKind.VIDEO,
        ChangeKind.START,
        ChangeKind.SOON,
        ChangeKind.SURVEY,
    ]


def test_payload_round_trip_keeps_session_ids():
    changes = _changes(make_session("a").with_change(ChangeKind.DETAILS))
    (n,) = build_notifications(changes, ["a"])

    payload = n.to_payload()

    assert payload["notification"]["tag"] == "session-details"
    assert payload["sessions"] == ["a"]
