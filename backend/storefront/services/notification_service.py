# Overview: Staff notifications; turns order, stock and registration changes into a capped, de-duplicated list.

"""
Event Watcher & Notification Center

WHY: Back-office staff need to hear about new orders, stock running out and
new registrations without polling. The watcher subscribes to the event
stream and translates each committed row change into zero or more
notifications; the center keeps them for display.

CATEGORIES:
- new_order         orders insert
- milestone         orders insert with total >= LARGE_ORDER_MILESTONE_CENTS
- order_update      orders update where status changed
- low_stock         products update, 0 < stock <= LOW_STOCK_THRESHOLD
- out_of_stock      products update, stock == 0
- new_registration  customers insert
Stock alerts fire only when the stock value actually changed, once per
change event: a second sell-out after a restock alerts again.

HISTORY: most recent first, capped (default 50). A repeated event id is
dropped; so is an order or registration notification whose dedupe key is
already in the history.

PERSISTENCE: the whole list is saved after each change through a
load()/save() store. Store failures are logged and never reach the
publisher.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Iterable

from flask import has_app_context

from ..extensions import db
from ..models import NotificationSnapshot
from ..time_utils import to_utc_z, utcnow
from .event_stream import (
    EVENT_INSERT,
    EVENT_UPDATE,
    TOPIC_CUSTOMERS,
    TOPIC_ORDERS,
    TOPIC_PRODUCTS,
    ChangeEvent,
    ConnectivityError,
    EventBus,
    SubscriptionHandle,
)
from .receipt_service import format_cents
from .reconnect_service import ConnectionState

logger = logging.getLogger(__name__)


CATEGORY_NEW_ORDER = "new_order"
CATEGORY_ORDER_UPDATE = "order_update"
CATEGORY_LOW_STOCK = "low_stock"
CATEGORY_OUT_OF_STOCK = "out_of_stock"
CATEGORY_NEW_REGISTRATION = "new_registration"
CATEGORY_MILESTONE = "milestone"

WATCHED_TOPICS = (TOPIC_ORDERS, TOPIC_PRODUCTS, TOPIC_CUSTOMERS)


@dataclass(frozen=True)
class Notification:
    category: str
    title: str
    message: str
    payload: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    read: bool = False
    created_at: str = field(default_factory=lambda: to_utc_z(utcnow()))
    event_id: str | None = None
    dedupe_key: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "title": self.title,
            "message": self.message,
            "payload": self.payload,
            "read": self.read,
            "created_at": self.created_at,
            "event_id": self.event_id,
            "dedupe_key": self.dedupe_key,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Notification":
        return cls(
            id=data["id"],
            category=data["category"],
            title=data.get("title", ""),
            message=data.get("message", ""),
            payload=data.get("payload") or {},
            read=bool(data.get("read", False)),
            created_at=data.get("created_at") or to_utc_z(utcnow()),
            event_id=data.get("event_id"),
            dedupe_key=data.get("dedupe_key"),
        )


class SqlNotificationStore:
    """load()/save() of one notification list, kept as JSON in notification_snapshots."""

    def __init__(self, owner_key: str = "admin", app=None):
        self.owner_key = owner_key
        self.app = app

    def load(self) -> list[dict]:
        with self._context():
            row = db.session.query(NotificationSnapshot).filter_by(owner_key=self.owner_key).first()
            return list(row.items or []) if row else []

    def save(self, items: list[dict]) -> None:
        with self._context():
            row = db.session.query(NotificationSnapshot).filter_by(owner_key=self.owner_key).first()
            if row is None:
                row = NotificationSnapshot(owner_key=self.owner_key, items=items)
                db.session.add(row)
            else:
                row.items = items
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

    def _context(self):
        if has_app_context() or self.app is None:
            return _NullContext()
        return self.app.app_context()


class _NullContext:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class NotificationCenter:
    """Thread-safe notification history plus the current connection state."""

    def __init__(self, store=None, limit: int = 50):
        self.store = store
        self.limit = limit
        self._lock = threading.Lock()
        self._items: list[Notification] = []
        self._seen_events: deque[str] = deque(maxlen=limit * 4)
        self._connection_state = ConnectionState()

    # -- reads ---------------------------------------------------------------

    @property
    def notifications(self) -> list[Notification]:
        with self._lock:
            return list(self._items)

    @property
    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for n in self._items if not n.read)

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    def to_dict(self) -> dict:
        with self._lock:
            items = [n.to_dict() for n in self._items]
            unread = sum(1 for n in self._items if not n.read)
        return {
            "notifications": items,
            "unread_count": unread,
            "connection": self._connection_state.to_dict(),
        }

    # -- writes --------------------------------------------------------------

    def load(self) -> int:
        """Replace the in-memory list with the persisted one. Returns count loaded."""
        if self.store is None:
            return 0
        try:
            raw = self.store.load()
        except Exception:
            logger.warning("Could not load persisted notifications", exc_info=True)
            return 0

        loaded = []
        for item in raw:
            try:
                loaded.append(Notification.from_dict(item))
            except (KeyError, TypeError):
                logger.warning("Skipping malformed persisted notification: %r", item)
        with self._lock:
            self._items = loaded[: self.limit]
            self._seen_events.extend(n.event_id for n in self._items if n.event_id)
            return len(self._items)

    def push(self, notification: Notification) -> bool:
        """Add to the front of the history. Returns False if dropped as a duplicate."""
        with self._lock:
            if notification.event_id and notification.event_id in self._seen_events:
                return False
            if notification.dedupe_key and any(n.dedupe_key == notification.dedupe_key for n in self._items):
                return False
            if notification.event_id:
                self._seen_events.append(notification.event_id)
            self._items.insert(0, notification)
            del self._items[self.limit:]
            snapshot = [n.to_dict() for n in self._items]
        self._persist(snapshot)
        return True

    def mark_as_read(self, notification_id: str) -> bool:
        with self._lock:
            for idx, item in enumerate(self._items):
                if item.id == notification_id:
                    if not item.read:
                        self._items[idx] = replace(item, read=True)
                    snapshot = [n.to_dict() for n in self._items]
                    break
            else:
                return False
        self._persist(snapshot)
        return True

    def mark_all_as_read(self) -> int:
        with self._lock:
            changed = sum(1 for n in self._items if not n.read)
            self._items = [n if n.read else replace(n, read=True) for n in self._items]
            snapshot = [n.to_dict() for n in self._items]
        self._persist(snapshot)
        return changed

    def clear_all(self) -> None:
        with self._lock:
            self._items = []
        self._persist([])

    def set_connection_state(self, state: ConnectionState) -> None:
        self._connection_state = state

    def _persist(self, items: list[dict]) -> None:
        if self.store is None:
            return
        try:
            self.store.save(items)
        except Exception:
            logger.warning("Could not persist notifications", exc_info=True)


class WatchHandle:
    """Group of per-topic subscriptions opened by EventWatcher.subscribe()."""

    def __init__(self, handles: list[SubscriptionHandle]):
        self.handles = list(handles)

    @property
    def topics(self) -> list[str]:
        return [h.topic for h in self.handles]

    @property
    def is_open(self) -> bool:
        return bool(self.handles) and all(h.is_open for h in self.handles)

    def close(self) -> None:
        for handle in self.handles:
            handle.close()


class EventWatcher:
    def __init__(
        self,
        bus: EventBus,
        center: NotificationCenter,
        *,
        low_stock_threshold: int = 5,
        milestone_cents: int = 1_000_000,
        currency: str = "KES",
    ):
        self.bus = bus
        self.center = center
        self.low_stock_threshold = low_stock_threshold
        self.milestone_cents = milestone_cents
        self.currency = currency

    def subscribe(self, topics: Iterable[str] | None = None, on_status=None) -> WatchHandle:
        """
        Subscribe to every watched topic, or none of them.

        Raises ConnectivityError if any topic cannot be subscribed; topics
        already subscribed in this call are closed again first.
        """
        topics = tuple(topics) if topics is not None else WATCHED_TOPICS
        opened: list[SubscriptionHandle] = []
        try:
            for topic in topics:
                opened.append(self.bus.subscribe(topic, self.handle_event, on_status))
        except ConnectivityError:
            for handle in opened:
                handle.close()
            raise
        return WatchHandle(opened)

    def handle_event(self, event: ChangeEvent) -> list[Notification]:
        """Translate one change event and push the results. Returns those kept."""
        kept = []
        for notification in self.translate(event):
            if self.center.push(notification):
                kept.append(notification)
        return kept

    def translate(self, event: ChangeEvent) -> list[Notification]:
        if event.topic == TOPIC_ORDERS:
            return self._from_order(event)
        if event.topic == TOPIC_PRODUCTS:
            return self._from_product(event)
        if event.topic == TOPIC_CUSTOMERS and event.kind == EVENT_INSERT:
            row = event.row
            return [Notification(
                category=CATEGORY_NEW_REGISTRATION,
                title="New Registration",
                message=f"{row.get('email')} has registered as a {row.get('role', 'customer')}",
                payload=row,
                event_id=event.event_id,
                dedupe_key=f"{CATEGORY_NEW_REGISTRATION}:{row.get('id')}",
            )]
        return []

    def _from_order(self, event: ChangeEvent) -> list[Notification]:
        row = event.row
        order_id = row.get("id")
        label = row.get("receipt_number") or f"#{order_id}"

        if event.kind == EVENT_INSERT:
            out = [Notification(
                category=CATEGORY_NEW_ORDER,
                title="New Order",
                message=f"New order {label} received",
                payload=row,
                event_id=event.event_id,
                dedupe_key=f"{CATEGORY_NEW_ORDER}:{order_id}",
            )]
            total = row.get("total_cents") or 0
            if total >= self.milestone_cents:
                out.append(Notification(
                    category=CATEGORY_MILESTONE,
                    title="Large Order Received",
                    message=f"High-value order of {format_cents(total, self.currency)} received",
                    payload={"order_id": order_id, "value_cents": total, "type": "large_order"},
                    dedupe_key=f"{CATEGORY_MILESTONE}:{order_id}",
                ))
            return out

        if event.kind == EVENT_UPDATE:
            old_status = (event.old or {}).get("status")
            status = row.get("status")
            if status == old_status:
                return []
            return [Notification(
                category=CATEGORY_ORDER_UPDATE,
                title="Order Update",
                message=f"Order {label} status updated to {status}",
                payload=row,
                event_id=event.event_id,
                dedupe_key=f"{CATEGORY_ORDER_UPDATE}:{order_id}:{status}",
            )]
        return []

    def _from_product(self, event: ChangeEvent) -> list[Notification]:
        if event.kind != EVENT_UPDATE:
            return []
        row = event.row
        stock = row.get("stock")
        old_stock = (event.old or {}).get("stock")
        if stock is None or stock == old_stock:
            return []

        name = row.get("name") or f"Product {row.get('id')}"
        if row.get("variant_label"):
            name = f"{name} ({row['variant_label']})"
        if stock == 0:
            return [Notification(
                category=CATEGORY_OUT_OF_STOCK,
                title="Out of Stock",
                message=f"{name} is now out of stock",
                payload=row,
                event_id=event.event_id,
            )]
        if 0 < stock <= self.low_stock_threshold:
            return [Notification(
                category=CATEGORY_LOW_STOCK,
                title="Low Stock Alert",
                message=f"{name} is running low ({stock} units left)",
                payload=row,
                event_id=event.event_id,
            )]
        return []
