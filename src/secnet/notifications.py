"""
Notification sinks.

The core publishes events (consent_request, access_granted, access_denied,
access_revoked, consent_expired, ai_alert, ai_insight) to a recipient
identity. Delivery is best effort: a failing sink never aborts the
operation that produced the event.

Usage:
    sink = RedisNotificationSink(redis_client)
    notify(sink, owner.address, "consent_request", {"request_id": str(request.id)})
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Fire-and-forget event publisher."""

    @abstractmethod
    def publish(self, recipient: str, event_type: str, payload: Dict[str, Any]) -> None:
        """Publish an event to a recipient identity."""


class RedisNotificationSink(NotificationSink):
    """
    Publishes JSON events on a per-recipient Redis channel.

    Channel name: ``<prefix>:<recipient>``
    """

    CHANNEL_PREFIX = "secnet:notifications"

    def __init__(self, redis_client, channel_prefix: str = CHANNEL_PREFIX):
        self.redis = redis_client
        self.channel_prefix = channel_prefix

    def publish(self, recipient: str, event_type: str, payload: Dict[str, Any]) -> None:
        message = {
            "type": event_type,
            "recipient": recipient,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.redis.publish(f"{self.channel_prefix}:{recipient}", json.dumps(message, default=str))


class LoggingNotificationSink(NotificationSink):
    """Writes events to the log. Used when no transport is configured."""

    def publish(self, recipient: str, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notification {event_type} -> {recipient}: {payload}")


@dataclass
class PublishedEvent:
    recipient: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


class InMemoryNotificationSink(NotificationSink):
    """Collects events in a list; thread-safe."""

    def __init__(self):
        self._events: List[PublishedEvent] = []
        self._lock = threading.Lock()

    def publish(self, recipient: str, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append(PublishedEvent(recipient, event_type, dict(payload)))

    def events(self, event_type: Optional[str] = None) -> List[PublishedEvent]:
        with self._lock:
            return [e for e in self._events if event_type is None or e.event_type == event_type]


def notify(sink: Optional[NotificationSink], recipient: str, event_type: str, payload: Dict[str, Any]) -> bool:
    """
    Publish without letting a sink failure escape.

    Returns:
        True if the sink accepted the event
    """
    if sink is None:
        return False
    try:
        sink.publish(recipient, event_type, payload)
        return True
    except Exception as e:
        logger.warning(f"Notification {event_type} to {recipient} failed: {e}")
        return False
