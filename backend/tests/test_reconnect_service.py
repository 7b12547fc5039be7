# Overview: Pytest coverage for event-feed reconnection backoff.

from storefront.services.event_stream import ConnectivityError
from storefront.services.reconnect_service import ConnectionStatus, ReconnectionSupervisor


class _Handle:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FlakyWatcher:
    """Fails the first `failures` subscribe calls."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.on_status = None

    def subscribe(self, topics=None, on_status=None):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectivityError("stream unreachable")
        self.on_status = on_status
        return _Handle()


def _supervisor(watcher, scheduler, states=None):
    return ReconnectionSupervisor(
        watcher,
        scheduler=scheduler,
        base_delay_ms=1000,
        max_delay_ms=30000,
        max_attempts=5,
        on_state=states.append if states is not None else None,
    )


class TestBackoff:
    def test_connects_first_time(self, scheduler):
        supervisor = _supervisor(FlakyWatcher(0), scheduler)

        state = supervisor.start()

        assert state.status == ConnectionStatus.CONNECTED
        assert state.attempt == 0
        assert scheduler.pending == []

    def test_delay_after_three_failed_retries(self, scheduler):
        watcher = FlakyWatcher(99)
        supervisor = _supervisor(watcher, scheduler)

        supervisor.start()
        for _ in range(3):
            scheduler.run_next()

        assert supervisor.attempt == 3
        assert supervisor.state.status == ConnectionStatus.RECONNECTING
        assert supervisor.state.next_retry_ms == 8000
        assert scheduler.delays_ms == [8000]

    def test_delays_double(self, scheduler):
        supervisor = _supervisor(FlakyWatcher(99), scheduler)
        supervisor.start()

        seen = [scheduler.delays_ms[0]]
        for _ in range(4):
            scheduler.run_next()
            if scheduler.pending:
                seen.append(scheduler.delays_ms[0])

        assert seen == [1000, 2000, 4000, 8000, 16000]

    def test_delay_is_capped(self, scheduler):
        supervisor = ReconnectionSupervisor(
            FlakyWatcher(99), scheduler=scheduler, base_delay_ms=1000, max_delay_ms=30000, max_attempts=10,
        )
        supervisor.start()
        for _ in range(6):
            scheduler.run_next()

        assert scheduler.delays_ms == [30000]

    def test_gives_up_after_max_attempts(self, scheduler):
        watcher = FlakyWatcher(99)
        states = []
        supervisor = _supervisor(watcher, scheduler, states)

        supervisor.start()
        for _ in range(5):
            scheduler.run_next()

        assert supervisor.state.status == ConnectionStatus.FAILED
        assert supervisor.state.error == "Unable to establish real-time connection after multiple attempts"
        assert scheduler.pending == []
        assert watcher.calls == 6
        assert "Reconnecting... (attempt 5/5)" in [s.error for s in states]

    def test_success_resets_attempts(self, scheduler):
        supervisor = _supervisor(FlakyWatcher(2), scheduler)

        supervisor.start()
        scheduler.run_next()
        scheduler.run_next()

        assert supervisor.state.status == ConnectionStatus.CONNECTED
        assert supervisor.attempt == 0
        assert supervisor.next_delay_ms() == 1000

    def test_stop_cancels_pending_retry(self, scheduler):
        supervisor = _supervisor(FlakyWatcher(99), scheduler)
        supervisor.start()

        supervisor.stop()

        assert supervisor.state.status == ConnectionStatus.DISCONNECTED
        assert scheduler.delays_ms == []


class TestWithEventBus:
    def test_disconnect_schedules_one_retry(self, runtime, scheduler):
        supervisor = runtime.supervisor
        supervisor.start()
        assert supervisor.state.is_connected
        assert runtime.bus.subscriber_count("orders") == 1

        runtime.bus.disconnect("network down")

        assert supervisor.state.status == ConnectionStatus.RECONNECTING
        assert scheduler.delays_ms == [1000]
        assert runtime.notifications.connection_state.status == ConnectionStatus.RECONNECTING

    def test_retry_while_down_then_recover(self, runtime, scheduler):
        supervisor = runtime.supervisor
        supervisor.start()
        runtime.bus.disconnect("network down")

        scheduler.run_next()
        assert supervisor.attempt == 1
        assert scheduler.delays_ms == [2000]

        runtime.bus.reconnect()
        scheduler.run_next()

        assert supervisor.state.is_connected
        assert supervisor.attempt == 0
        assert runtime.bus.subscriber_count("orders") == 1
        assert runtime.bus.subscriber_count("products") == 1

    def test_events_flow_after_recovery(self, runtime, scheduler):
        runtime.supervisor.start()
        runtime.bus.disconnect()
        runtime.bus.reconnect()
        scheduler.run_next()

        runtime.store.register_customer("back@shop.example")

        assert [n.category for n in runtime.notifications.notifications] == ["new_registration"]
