"""
Push notification feature package.

Builds user-facing notifications from schedule changes and delivers them to
every Web Push endpoint of the users who bookmarked the affected sessions.
"""

from .domain.models import DeliveryOutcome, DeliveryStatus, Notification  # noqa: F401
