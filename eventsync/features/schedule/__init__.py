"""
Schedule feature package.

Domain models, persistence, the upstream manifest client, the sync
orchestrator and the read API for the conference schedule.
"""

# Re-export the domain building blocks for easy access.
from .domain.models import ChangeKind, ChangeSet, EventSnapshot, Session  # noqa: F401
