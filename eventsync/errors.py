"""
Error kinds shared by the schedule read and write paths.

Callers branch on ``ScheduleError.kind`` instead of comparing exception
instances, so "doesn't exist" can be told apart from "couldn't check".
"""

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from eventsync.features.schedule.domain.models import EventSnapshot


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    NOT_MODIFIED = "not_modified"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    BAD_DATA = "bad_data"


class ScheduleError(Exception):
    """
    Error raised by schedule stores and read APIs.

    NOT_MODIFIED is a control-flow signal: ``snapshot`` then carries only the
    fingerprint and modification time so a cache validation response can
    still be produced.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNAVAILABLE,
        snapshot: "EventSnapshot | None" = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.snapshot = snapshot

    @property
    def is_not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND

    @property
    def is_not_modified(self) -> bool:
        return self.kind is ErrorKind.NOT_MODIFIED

    @property
    def is_conflict(self) -> bool:
        return self.kind is ErrorKind.CONFLICT
