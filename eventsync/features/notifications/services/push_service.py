"""
Web Push delivery.

pywebpush encrypts the payload and signs the VAPID header; it is a blocking
(requests-based) call, so each delivery runs in a worker thread bounded by
the requests timeout passed to webpush. Outcomes are classified per
endpoint and never raised.
"""

import asyncio
import json
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from pywebpush import WebPushException, webpush
from requests.exceptions import RequestException

from eventsync.features.notifications.domain.models import (
    DeliveryOutcome,
    Notification,
    SubscriberEndpoint,
)
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_RETRY_AFTER_S = 10.0

# push services answer a stored message with 201 Created
DELIVERED_STATUS = 201

# how long the push service keeps an undelivered message
PUSH_TTL_SECONDS = 24 * 60 * 60


def parse_retry_after(value: str | None, default: float = DEFAULT_RETRY_AFTER_S) -> float:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


class PushService:
    """Delivers notifications to single Web Push subscriptions."""

    def __init__(
        self,
        vapid_private_key: str | None,
        vapid_subject: str,
        *,
        timeout: float = 10.0,
        default_retry_s: float = DEFAULT_RETRY_AFTER_S,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.timeout = timeout
        self.default_retry_s = default_retry_s

    def _send(self, subscription: dict, data: str):
        kwargs = {}
        if self.vapid_private_key:
            kwargs["vapid_private_key"] = self.vapid_private_key
            kwargs["vapid_claims"] = {"sub": self.vapid_subject}
        return webpush(
            subscription_info=subscription,
            data=data,
            ttl=PUSH_TTL_SECONDS,
            timeout=self.timeout,
            **kwargs,
        )

    async def deliver(
        self, endpoint: SubscriberEndpoint, notification: Notification
    ) -> DeliveryOutcome:
        """
        Send one notification to one endpoint.

        201 is delivered, 4xx means the subscription is gone and must be
        removed. Anything else is retried after the endpoint's Retry-After
        or the default delay: other 2xx, 5xx, network errors and malformed
        subscriptions.
        """
        try:
            subscription = json.loads(endpoint.subscription)
            if not isinstance(subscription, dict) or not subscription.get("endpoint"):
                raise ValueError("subscription has no endpoint")
        except ValueError as e:
            logger.warning("Malformed push subscription", key=endpoint.key, error=str(e))
            return DeliveryOutcome.retry(self.default_retry_s, detail=f"malformed: {e}")

        data = json.dumps(notification.to_payload())

        try:
            response = await asyncio.to_thread(self._send, subscription, data)
        except WebPushException as e:
            response = e.response
            if response is None:
                logger.warning("Push rejected before sending", key=endpoint.key, error=str(e))
                return DeliveryOutcome.retry(self.default_retry_s, detail=str(e))
        except RequestException as e:
            logger.warning(
                "Push request failed", key=endpoint.key, error=str(e), error_type=type(e).__name__
            )
            return DeliveryOutcome.retry(self.default_retry_s, detail=str(e))
        except (TypeError, ValueError) as e:
            # pywebpush could not encrypt for the subscription keys
            logger.warning("Push encryption failed", key=endpoint.key, error=str(e))
            return DeliveryOutcome.retry(self.default_retry_s, detail=str(e))

        status = response.status_code
        if status == DELIVERED_STATUS:
            logger.debug("Push delivered", key=endpoint.key, status_code=status)
            return DeliveryOutcome.delivered()
        if 400 <= status < 500:
            logger.info("Push subscription rejected", key=endpoint.key, status_code=status)
            return DeliveryOutcome.remove(detail=f"status {status}")

        retry_after = parse_retry_after(response.headers.get("Retry-After"), self.default_retry_s)
        logger.warning(
            "Push endpoint failed, will retry",
            key=endpoint.key,
            status_code=status,
            retry_after_s=retry_after,
        )
        return DeliveryOutcome.retry(retry_after, detail=f"status {status}")
