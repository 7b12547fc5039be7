# Overview: Per-application wiring of the checkout engine and notification services.

from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app

from .services.checkout_service import CheckoutOrchestrator
from .services.discount_service import DiscountEvaluator
from .services.event_stream import EventBus
from .services.ledger_store import LedgerStore
from .services.notification_service import EventWatcher, NotificationCenter, SqlNotificationStore
from .services.reconnect_service import ReconnectionSupervisor
from .services.session_service import CheckoutSessionRegistry
from .services.usage_guard import UsageGuard


EXTENSION_KEY = "storefront"


@dataclass
class StorefrontRuntime:
    bus: EventBus
    store: LedgerStore
    guard: UsageGuard
    evaluator: DiscountEvaluator
    orchestrator: CheckoutOrchestrator
    sessions: CheckoutSessionRegistry
    notifications: NotificationCenter
    watcher: EventWatcher
    supervisor: ReconnectionSupervisor


def build_runtime(app: Flask, scheduler=None) -> StorefrontRuntime:
    """Create every long-lived service from app.config and attach it to app.extensions."""
    cfg = app.config

    bus = EventBus()
    store = LedgerStore(bus=bus, discount_schema=cfg["DISCOUNT_SCHEMA"])
    guard = UsageGuard(store)
    evaluator = DiscountEvaluator(store, guard)
    orchestrator = CheckoutOrchestrator(store, evaluator, vat_rate_bps=cfg["VAT_RATE_BPS"])
    sessions = CheckoutSessionRegistry(store, evaluator, orchestrator)

    notifications = NotificationCenter(
        store=SqlNotificationStore(owner_key=cfg["NOTIFICATION_OWNER_KEY"], app=app),
        limit=cfg["NOTIFICATION_HISTORY_LIMIT"],
    )
    watcher = EventWatcher(
        bus,
        notifications,
        low_stock_threshold=cfg["LOW_STOCK_THRESHOLD"],
        milestone_cents=cfg["LARGE_ORDER_MILESTONE_CENTS"],
        currency=cfg["CURRENCY"],
    )
    supervisor = ReconnectionSupervisor(
        watcher,
        scheduler=scheduler,
        base_delay_ms=cfg["RECONNECT_BASE_DELAY_MS"],
        max_delay_ms=cfg["RECONNECT_MAX_DELAY_MS"],
        max_attempts=cfg["RECONNECT_MAX_ATTEMPTS"],
        on_state=notifications.set_connection_state,
    )

    runtime = StorefrontRuntime(
        bus=bus,
        store=store,
        guard=guard,
        evaluator=evaluator,
        orchestrator=orchestrator,
        sessions=sessions,
        notifications=notifications,
        watcher=watcher,
        supervisor=supervisor,
    )
    app.extensions[EXTENSION_KEY] = runtime
    return runtime


def get_runtime() -> StorefrontRuntime:
    return current_app.extensions[EXTENSION_KEY]
