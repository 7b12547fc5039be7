# Overview: In-process change stream; publish/subscribe over committed row changes.

"""
Event Stream

WHY: Staff screens need to hear about new orders, stock movements and
registrations as they happen. The ledger store publishes a ChangeEvent after
each successful commit; the notification watcher subscribes per topic.

DESIGN:
- A subscription is an explicit handle with close(); delivery is a plain
  callback invoked on the publisher's thread.
- Channel status (SUBSCRIBED / CLOSED / CHANNEL_ERROR) is reported through an
  optional status callback so a supervisor can resubscribe.
- While the stream is disconnected, subscribe() raises ConnectivityError and
  published events are dropped (push delivery, no replay).
- A failing subscriber never breaks the publisher: the error is logged and
  delivery continues with the next subscriber.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ..time_utils import utcnow

logger = logging.getLogger(__name__)


TOPIC_ORDERS = "orders"
TOPIC_PRODUCTS = "products"
TOPIC_CUSTOMERS = "customers"

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"

STATUS_SUBSCRIBED = "SUBSCRIBED"
STATUS_CLOSED = "CLOSED"
STATUS_CHANNEL_ERROR = "CHANNEL_ERROR"


class ConnectivityError(Exception):
    """Raised when a subscription cannot be established or was dropped."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class ChangeEvent:
    """One committed row change: topic (table), kind (insert/update), new row, old row."""
    topic: str
    kind: str
    row: dict
    old: dict | None = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=utcnow)


EventCallback = Callable[[ChangeEvent], Any]
StatusCallback = Callable[[str, "str | None"], Any]


class SubscriptionHandle:
    """Live subscription to one topic. close() is idempotent."""

    def __init__(self, bus: "EventBus", topic: str, on_event: EventCallback, on_status: StatusCallback | None):
        self._bus = bus
        self.topic = topic
        self.on_event = on_event
        self.on_status = on_status
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._remove(self)

    def _report(self, status: str, reason: str | None = None) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(status, reason)
        except Exception:
            logger.exception("Status callback for topic %s failed", self.topic)


class EventBus:
    """Thread-safe topic registry with synchronous delivery."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscriptions: dict[str, list[SubscriptionHandle]] = defaultdict(list)
        self._connected = True
        self._disconnect_reason: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic, ()))

    def subscribe(
        self,
        topic: str,
        on_event: EventCallback,
        on_status: StatusCallback | None = None,
    ) -> SubscriptionHandle:
        if not topic:
            raise ValueError("topic is required")

        with self._lock:
            if not self._connected:
                raise ConnectivityError(
                    f"Cannot subscribe to {topic}: stream disconnected",
                    details={"topic": topic, "reason": self._disconnect_reason},
                )
            handle = SubscriptionHandle(self, topic, on_event, on_status)
            self._subscriptions[topic].append(handle)

        handle._report(STATUS_SUBSCRIBED)
        return handle

    def publish(self, event: ChangeEvent) -> int:
        """Deliver event to current subscribers of its topic. Returns delivery count."""
        with self._lock:
            if not self._connected:
                logger.debug("Dropping %s/%s event while disconnected", event.topic, event.kind)
                return 0
            handles = list(self._subscriptions.get(event.topic, ()))

        delivered = 0
        for handle in handles:
            if not handle.is_open:
                continue
            try:
                handle.on_event(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber for topic %s failed on event %s", event.topic, event.event_id)
        return delivered

    def disconnect(self, reason: str = "connection lost") -> None:
        """Drop every subscription and report CLOSED to each channel."""
        with self._lock:
            self._connected = False
            self._disconnect_reason = reason
            handles = [h for subs in self._subscriptions.values() for h in subs]
            self._subscriptions.clear()

        for handle in handles:
            handle._closed = True
            handle._report(STATUS_CLOSED, reason)

    def reconnect(self) -> None:
        with self._lock:
            self._connected = True
            self._disconnect_reason = None

    def _remove(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            subs = self._subscriptions.get(handle.topic)
            if subs and handle in subs:
                subs.remove(handle)
