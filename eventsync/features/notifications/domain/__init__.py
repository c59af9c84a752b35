"""
Domain subpackage for push notifications.
"""

from .models import (
    DeliveryOutcome,
    DeliveryStatus,
    Notification,
    SubscriberEndpoint,
    UserPushInfo,
)

__all__ = [
    "DeliveryOutcome",
    "DeliveryStatus",
    "Notification",
    "SubscriberEndpoint",
    "UserPushInfo",
]
