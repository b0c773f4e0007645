"""
Outbound partner events.

After a pairing transaction commits, the counterpart is told about it on
its own channel ``partner-events:{account_id}``. Delivery to devices (push,
sockets) happens elsewhere; this module only publishes.

Events are fire-and-forget: a publish failure is logged and never undoes or
fails the committed change.
"""

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

import redis

from couplelink.models.base import utcnow

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "partner-events"


class PartnerEventType(str, enum.Enum):
    PARTNER_CONNECTED = "partner_connected"
    PARTNER_DISCONNECTED = "partner_disconnected"
    PARTNER_ACCOUNT_DELETED = "partner_account_deleted"


@dataclass
class PartnerEvent:
    """A change the recipient should react to."""
    event_type: PartnerEventType
    recipient_id: str
    partner_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def channel(self) -> str:
        return f"{CHANNEL_PREFIX}:{self.recipient_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type.value,
            "recipient_id": self.recipient_id,
            "partner_id": self.partner_id,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "occurred_at": self.occurred_at.isoformat(),
        }


class PartnerEventPublisher(Protocol):
    def publish(self, event: PartnerEvent) -> None: ...


class RedisEventPublisher:
    """Publishes partner events over Redis pub/sub."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://redis:6379/0")
        self._redis: Optional[redis.Redis] = None

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    def publish(self, event: PartnerEvent) -> None:
        self._get_redis().publish(event.channel, json.dumps(event.to_dict()))


class NullEventPublisher:
    """Drops events. Used when no channel is configured."""

    def publish(self, event: PartnerEvent) -> None:
        logger.debug("Partner event dropped", extra={"event_type": event.event_type.value})


def publish_safely(publisher: Optional[PartnerEventPublisher], event: PartnerEvent) -> bool:
    """
    Publish without letting a delivery failure reach the caller.

    Returns:
        True if the publisher accepted the event
    """
    if publisher is None:
        return False
    try:
        publisher.publish(event)
    except Exception as e:
        logger.warning(
            "Failed to publish partner event",
            extra={
                "event_type": event.event_type.value,
                "account_id": event.recipient_id,
                "partner_id": event.partner_id,
                "correlation_id": event.correlation_id,
                "error": str(e),
            }
        )
        return False

    logger.info(
        "Partner event published",
        extra={
            "event_type": event.event_type.value,
            "account_id": event.recipient_id,
            "partner_id": event.partner_id,
            "correlation_id": event.correlation_id,
        }
    )
    return True


_publisher_instance: Optional[PartnerEventPublisher] = None


def get_event_publisher() -> PartnerEventPublisher:
    """Module-level publisher: Redis when REDIS_URL is set, otherwise a no-op."""
    global _publisher_instance
    if _publisher_instance is None:
        if os.getenv("REDIS_URL"):
            _publisher_instance = RedisEventPublisher()
        else:
            _publisher_instance = NullEventPublisher()
    return _publisher_instance
