# Overview: Keeps the notification watcher subscribed; retries dropped subscriptions with capped exponential backoff.

"""
Reconnection Supervisor

BACKOFF: the delay before the next retry is

    min(base_delay_ms * 2 ** attempt, max_delay_ms)

where `attempt` is the number of retries already fired. With the defaults
(1000 ms, 30000 ms, 5 attempts) the retries wait 1s, 2s, 4s, 8s, 16s; once
`attempt` reaches max_attempts the supervisor stops and reports FAILED.

A successful subscribe resets `attempt` to 0 and clears the error.

Timers run on an injected scheduler so callers never block and tests can
fire retries by hand.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from ..time_utils import to_utc_z, utcnow
from .event_stream import STATUS_CHANNEL_ERROR, STATUS_CLOSED

logger = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    attempt: int = 0
    error: str | None = None
    next_retry_ms: int | None = None
    changed_at: datetime = field(default_factory=utcnow)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "is_connected": self.is_connected,
            "attempt": self.attempt,
            "error": self.error,
            "next_retry_ms": self.next_retry_ms,
            "changed_at": to_utc_z(self.changed_at),
        }


class ThreadingScheduler:
    """Runs callbacks on daemon threading.Timer threads."""

    def schedule(self, delay_seconds: float, callback: Callable[[], Any]):
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = True
        timer.start()
        return timer


class ReconnectionSupervisor:
    def __init__(
        self,
        watcher,
        *,
        topics: Iterable[str] | None = None,
        scheduler=None,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        max_attempts: int = 5,
        on_state: Callable[[ConnectionState], Any] | None = None,
    ):
        self.watcher = watcher
        self.topics = tuple(topics) if topics is not None else None
        self.scheduler = scheduler or ThreadingScheduler()
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self.on_state = on_state

        self._lock = threading.RLock()
        self._attempt = 0
        self._handle = None
        self._timer = None
        self._stopped = True
        self._state = ConnectionState()

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def state(self) -> ConnectionState:
        return self._state

    def next_delay_ms(self) -> int:
        return min(self.base_delay_ms * (2 ** self._attempt), self.max_delay_ms)

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> ConnectionState:
        with self._lock:
            self._stopped = False
            self._attempt = 0
            self._set_state(ConnectionStatus.CONNECTING)
        self._connect()
        return self._state

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            self._cancel_timer()
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
        self._set_state(ConnectionStatus.DISCONNECTED)

    # -- internals -----------------------------------------------------------

    def _connect(self) -> None:
        try:
            handle = self.watcher.subscribe(self.topics, on_status=self._on_channel_status)
        except Exception as exc:
            logger.warning("Event subscription failed: %s", exc)
            self._schedule_retry(str(exc) or type(exc).__name__)
            return

        with self._lock:
            if self._stopped:
                handle.close()
                return
            self._handle = handle
            self._attempt = 0
            self._set_state(ConnectionStatus.CONNECTED)
        logger.info("Event subscriptions established")

    def _on_channel_status(self, status: str, reason: str | None = None) -> None:
        if status not in (STATUS_CLOSED, STATUS_CHANNEL_ERROR):
            return
        with self._lock:
            # One retry per outage, however many channels report it.
            if self._stopped or self._state.status != ConnectionStatus.CONNECTED:
                return
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
        logger.warning("Event channel %s: %s", status, reason)
        self._schedule_retry(reason or status)

    def _schedule_retry(self, reason: str) -> None:
        with self._lock:
            if self._stopped:
                return
            if self._attempt >= self.max_attempts:
                self._set_state(
                    ConnectionStatus.FAILED,
                    error="Unable to establish real-time connection after multiple attempts",
                )
                logger.error("Giving up on event subscriptions after %d attempts", self._attempt)
                return
            delay_ms = self.next_delay_ms()
            self._cancel_timer()
            self._set_state(ConnectionStatus.RECONNECTING, error=reason, next_retry_ms=delay_ms)
            logger.info("Retrying event subscriptions in %d ms (attempt %d/%d)",
                        delay_ms, self._attempt + 1, self.max_attempts)
            self._timer = self.scheduler.schedule(delay_ms / 1000.0, self._retry)

    def _retry(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._timer = None
            self._attempt += 1
            self._set_state(
                ConnectionStatus.CONNECTING,
                error=f"Reconnecting... (attempt {self._attempt}/{self.max_attempts})",
            )
        self._connect()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            cancel = getattr(self._timer, "cancel", None)
            if cancel is not None:
                cancel()
            self._timer = None

    def _set_state(self, status: ConnectionStatus, *, error: str | None = None, next_retry_ms: int | None = None) -> None:
        self._state = ConnectionState(
            status=status,
            attempt=self._attempt,
            error=error,
            next_retry_ms=next_retry_ms,
        )
        if self.on_state is not None:
            try:
                self.on_state(self._state)
            except Exception:
                logger.exception("Connection state listener failed")
