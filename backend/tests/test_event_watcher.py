# Overview: Pytest coverage for change-event notifications and their history.

import logging

from storefront.services.cart_service import CartStore
from storefront.services.event_stream import EVENT_INSERT, EVENT_UPDATE, TOPIC_ORDERS, TOPIC_PRODUCTS, ChangeEvent
from storefront.services.notification_service import (
    EventWatcher,
    Notification,
    NotificationCenter,
    SqlNotificationStore,
)


def _categories(center):
    return [n.category for n in center.notifications]


def _sell(runtime, product, qty, staff, key):
    cart = CartStore()
    cart.add(product, qty)
    return runtime.orchestrator.commit(
        cart.snapshot(), "cash", 100_000_000, idempotency_key=key, authorized_by=staff.id
    )


class TestTranslation:
    def test_new_order_notification(self, runtime, make_product, staff):
        runtime.watcher.subscribe()
        product = make_product(price_cents=1000, stock=100)

        receipt = _sell(runtime, product, 1, staff, "n-1")

        new_orders = [n for n in runtime.notifications.notifications if n.category == "new_order"]
        assert len(new_orders) == 1
        assert receipt.receipt_number in new_orders[0].message
        assert "milestone" not in _categories(runtime.notifications)

    def test_large_order_adds_milestone(self, runtime, make_product, staff):
        runtime.watcher.subscribe()
        product = make_product(price_cents=600_000, stock=100)

        _sell(runtime, product, 2, staff, "big")

        milestones = [n for n in runtime.notifications.notifications if n.category == "milestone"]
        assert len(milestones) == 1
        assert milestones[0].payload["value_cents"] == 1_200_000
        assert "KES 12,000.00" in milestones[0].message

    def test_order_status_change(self, runtime):
        order = runtime.store.create_order(
            receipt_number="R-900001", idempotency_key="upd",
            subtotal_cents=100, discount_cents=0, tax_cents=0, total_cents=100,
        )
        runtime.watcher.subscribe()

        runtime.store.update_order_status(order.id, "cancelled")

        assert _categories(runtime.notifications) == ["order_update"]
        assert "cancelled" in runtime.notifications.notifications[0].message

    def test_low_stock_alert(self, runtime, make_product, staff):
        runtime.watcher.subscribe()
        product = make_product(name="Honey", stock=7)

        _sell(runtime, product, 3, staff, "low")

        low = [n for n in runtime.notifications.notifications if n.category == "low_stock"]
        assert len(low) == 1
        assert "Honey" in low[0].message
        assert "4 units" in low[0].message

    def test_out_of_stock_alert(self, runtime, make_product, staff):
        runtime.watcher.subscribe()
        product = make_product(name="Feed", stock=2)

        _sell(runtime, product, 2, staff, "oos")

        assert "out_of_stock" in _categories(runtime.notifications)
        assert "low_stock" not in _categories(runtime.notifications)

    def test_variant_alert_names_the_variant(self, runtime, make_product, make_variant, staff):
        runtime.watcher.subscribe()
        product = make_product(name="Cooking Oil", stock=10)
        variant = make_variant(product, label="5L", stock=1)
        cart = CartStore()
        cart.add(product, 1, variant)

        runtime.orchestrator.commit(
            cart.snapshot(), "cash", 100_000, idempotency_key="var", authorized_by=staff.id
        )

        alerts = [n for n in runtime.notifications.notifications if n.category == "out_of_stock"]
        assert len(alerts) == 1
        assert alerts[0].message == "Cooking Oil (5L) is now out of stock"
        assert alerts[0].payload["variant_label"] == "5L"

    def test_stock_above_threshold_is_quiet(self, runtime, make_product, staff):
        runtime.watcher.subscribe(topics=[TOPIC_PRODUCTS])
        product = make_product(stock=50)

        _sell(runtime, product, 1, staff, "quiet")

        assert runtime.notifications.notifications == []

    def test_registration(self, runtime):
        runtime.watcher.subscribe()

        runtime.store.register_customer("new@shop.example", role="customer")

        assert _categories(runtime.notifications) == ["new_registration"]
        assert "new@shop.example" in runtime.notifications.notifications[0].message

    def test_unchanged_stock_is_ignored(self):
        watcher = EventWatcher(bus=None, center=NotificationCenter())
        event = ChangeEvent(topic=TOPIC_PRODUCTS, kind=EVENT_UPDATE,
                            row={"id": 1, "stock": 2}, old={"id": 1, "stock": 2})
        assert watcher.translate(event) == []


class TestDedupe:
    def test_same_event_delivered_twice(self):
        center = NotificationCenter()
        watcher = EventWatcher(bus=None, center=center)
        event = ChangeEvent(topic=TOPIC_ORDERS, kind=EVENT_INSERT, row={"id": 7, "total_cents": 100})

        watcher.handle_event(event)
        watcher.handle_event(event)

        assert len(center.notifications) == 1

    def test_same_order_from_distinct_events(self):
        center = NotificationCenter()
        watcher = EventWatcher(bus=None, center=center, milestone_cents=50)
        row = {"id": 8, "total_cents": 100}

        watcher.handle_event(ChangeEvent(topic=TOPIC_ORDERS, kind=EVENT_INSERT, row=row))
        watcher.handle_event(ChangeEvent(topic=TOPIC_ORDERS, kind=EVENT_INSERT, row=row))

        assert sorted(_categories(center)) == ["milestone", "new_order"]

    def test_every_stock_transition_alerts(self):
        center = NotificationCenter()
        watcher = EventWatcher(bus=None, center=center)
        levels = [1, 0, 20, 3, 20, 3, 0]

        for old, new in zip(levels, levels[1:]):
            watcher.handle_event(ChangeEvent(
                topic=TOPIC_PRODUCTS, kind=EVENT_UPDATE,
                row={"id": 5, "name": "Salt", "stock": new}, old={"id": 5, "stock": old},
            ))

        assert _categories(center) == ["out_of_stock", "low_stock", "low_stock", "out_of_stock"]

    def test_redelivered_stock_event_dropped(self):
        center = NotificationCenter()
        watcher = EventWatcher(bus=None, center=center)
        event = ChangeEvent(topic=TOPIC_PRODUCTS, kind=EVENT_UPDATE,
                            row={"id": 5, "stock": 0}, old={"id": 5, "stock": 1})

        watcher.handle_event(event)
        watcher.handle_event(event)

        assert _categories(center) == ["out_of_stock"]


class TestCenter:
    def test_history_capped_newest_first(self):
        center = NotificationCenter(limit=50)
        for i in range(60):
            center.push(Notification(category="new_order", title="New Order", message=f"order {i}"))

        assert len(center.notifications) == 50
        assert center.notifications[0].message == "order 59"
        assert center.notifications[-1].message == "order 10"

    def test_read_state(self):
        center = NotificationCenter()
        first = Notification(category="new_order", title="a", message="a")
        center.push(first)
        center.push(Notification(category="new_order", title="b", message="b"))

        assert center.unread_count == 2
        assert center.mark_as_read(first.id) is True
        assert center.unread_count == 1
        assert center.mark_as_read("missing") is False
        assert center.mark_all_as_read() == 1
        assert center.unread_count == 0

        center.clear_all()
        assert center.notifications == []

    def test_persisted_history_survives_reload(self, app, db_session):
        store = SqlNotificationStore(owner_key="tests", app=app)
        center = NotificationCenter(store=store)
        kept = Notification(category="low_stock", title="Low", message="low", event_id="evt-1")
        center.push(kept)
        center.mark_as_read(kept.id)

        reloaded = NotificationCenter(store=store)
        assert reloaded.load() == 1
        assert reloaded.notifications[0].id == kept.id
        assert reloaded.notifications[0].read is True
        assert reloaded.push(kept) is False

    def test_persist_failure_is_logged_not_raised(self, caplog):
        class BrokenStore:
            def load(self):
                raise RuntimeError("disk full")

            def save(self, items):
                raise RuntimeError("disk full")

        center = NotificationCenter(store=BrokenStore())
        with caplog.at_level(logging.WARNING):
            assert center.load() == 0
            assert center.push(Notification(category="new_order", title="t", message="m")) is True

        assert len(center.notifications) == 1
        assert "Could not persist notifications" in caplog.text
