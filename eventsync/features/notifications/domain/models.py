"""
Domain models for push notifications.

A Notification is what a user sees; it is serialized into the Web Push
payload as ``{"notification": {...}, "sessions": [...]}``. Subscriber
endpoints are opaque subscription blobs stored per user in the external
user store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from eventsync.features.schedule.domain.models import ChangeKind


@dataclass(slots=True)
class Notification:
    """One user-visible message, covering one or more sessions of one kind."""

    kind: ChangeKind
    title: str
    body: str
    url: str
    session_ids: list[str] = field(default_factory=list)

    @property
    def tag(self) -> str:
        # notifications with the same tag replace each other on the device
        return f"session-{self.kind.value}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "notification": {
                "title": self.title,
                "body": self.body,
                "tag": self.tag,
                "data": {"url": self.url},
            },
            "kind": self.kind.value,
            "sessions": list(self.session_ids),
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Notification":
        n = data["notification"]
        return cls(
            kind=ChangeKind(data["kind"]),
            title=n.get("title") or "",
            body=n.get("body") or "",
            url=(n.get("data") or {}).get("url") or "",
            session_ids=list(data.get("sessions") or []),
        )


@dataclass(slots=True)
class SubscriberEndpoint:
    """A push subscription: its key in the user store plus the subscription JSON."""

    key: str
    subscription: str


@dataclass(slots=True)
class UserPushInfo:
    uid: str
    enabled: bool = False
    subscriptions: dict[str, str] = field(default_factory=dict)

    def endpoints(self) -> list[SubscriberEndpoint]:
        return [SubscriberEndpoint(k, v) for k, v in self.subscriptions.items()]


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    RETRY = "retry"
    REMOVE = "remove"


@dataclass(slots=True)
class DeliveryOutcome:
    status: DeliveryStatus
    retry_after_s: float | None = None
    detail: str = ""

    @classmethod
    def delivered(cls) -> "DeliveryOutcome":
        return cls(DeliveryStatus.DELIVERED)

    @classmethod
    def remove(cls, detail: str = "") -> "DeliveryOutcome":
        return cls(DeliveryStatus.REMOVE, detail=detail)

    @classmethod
    def retry(cls, retry_after_s: float, detail: str = "") -> "DeliveryOutcome":
        return cls(DeliveryStatus.RETRY, retry_after_s=retry_after_s, detail=detail)
