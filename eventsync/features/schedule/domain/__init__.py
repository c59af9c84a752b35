"""
Domain subpackage for the schedule feature.
"""

from .models import ChangeKind, ChangeSet, EventSnapshot, Session, Speaker, Tag, Video

__all__ = [
    "ChangeKind",
    "ChangeSet",
    "EventSnapshot",
    "Session",
    "Speaker",
    "Tag",
    "Video",
]
