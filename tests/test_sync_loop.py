import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from clock import Clock, DriftCorrection
from sync_loop import SyncFailed, SyncLoop, SyncStats, SyncSucceeded
from time_sync import AllServersFailed, QueryTimeout, ServerAddress, SyncResult, resolve

T = datetime(2024, 6, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeMonotonic:
    def __init__(self, value=0.0):
        self.value = value

    def __call__(self):
        return self.value


def failing_resolver(servers, timeout):
    raise AllServersFailed([QueryTimeout(s) for s in servers])


def test_stats_start_empty():
    stats = SyncStats()
    assert stats.attempts == 0
    assert stats.successes == 0
    assert stats.failures == 0
    assert stats.success_rate == 0.0


def test_stats_success_rate():
    stats = SyncStats()
    for _ in range(8):
        stats.record_success(ServerAddress("a"))
    for _ in range(2):
        stats.record_failure()
    assert stats.snapshot() == (10, 8)
    assert stats.failures == 2
    assert stats.success_rate == 80.0
    assert stats.last_server == ServerAddress("a")


def test_loop_rejects_empty_server_list():
    with pytest.raises(ValueError):
        SyncLoop(Clock(), [])


@pytest.mark.parametrize("kwargs", [{"interval": 0}, {"timeout": -1}])
def test_loop_rejects_invalid_timing(kwargs):
    with pytest.raises(ValueError):
        SyncLoop(Clock(), ["a"], **kwargs)


def test_cycle_success_reanchors_and_counts():
    monotonic = FakeMonotonic()
    clock = Clock(monotonic=monotonic)
    events = []
    loop = SyncLoop(clock, ["a", "b"], resolver=lambda servers, timeout: SyncResult(servers[1], T),
                    listeners=[events.append])

    event = loop.run_cycle()

    assert isinstance(event, SyncSucceeded)
    assert event.server == ServerAddress("b")
    assert clock.now() == T
    assert loop.stats.snapshot() == (1, 1)
    assert loop.stats.last_server == ServerAddress("b")
    # 第一次同步从默认时间跳到 T，先发出跳变事件
    assert isinstance(events[0], DriftCorrection)
    assert events[0].from_fallback
    assert events[1] is event


def test_cycle_small_deviation_emits_no_drift():
    monotonic = FakeMonotonic()
    clock = Clock(monotonic=monotonic)
    clock.apply_sync(T)
    monotonic.value = 10.0
    events = []
    observed = T + timedelta(seconds=10, milliseconds=20)
    loop = SyncLoop(clock, ["a"], resolver=lambda servers, timeout: SyncResult(servers[0], observed),
                    listeners=[events.append])

    event = loop.run_cycle()

    assert event.drift is None
    assert [type(e) for e in events] == [SyncSucceeded]
    assert clock.now() == observed


def test_cycle_all_failed_keeps_anchor():
    monotonic = FakeMonotonic()
    clock = Clock(monotonic=monotonic)
    clock.apply_sync(T)
    anchor = clock.state
    events = []
    loop = SyncLoop(clock, ["a", "b"], resolver=failing_resolver, listeners=[events.append])

    event = loop.run_cycle()

    assert isinstance(event, SyncFailed)
    assert len(event.errors) == 2
    assert all(isinstance(e, QueryTimeout) for e in event.errors)
    assert clock.state == anchor
    assert loop.stats.snapshot() == (1, 0)
    assert events == [event]


def test_cycle_with_real_resolver_and_timeouts():
    def query(server, timeout):
        raise QueryTimeout(server)

    clock = Clock()
    anchor = clock.state
    loop = SyncLoop(clock, ["a", "b"], resolver=lambda servers, timeout: resolve(servers, timeout, query=query))
    event = loop.run_cycle()
    assert isinstance(event, SyncFailed)
    assert clock.state == anchor
    assert loop.stats.snapshot() == (1, 0)


def test_listener_errors_do_not_break_cycle():
    def broken_listener(event):
        raise RuntimeError("boom")

    loop = SyncLoop(Clock(), ["a"], resolver=lambda servers, timeout: SyncResult(servers[0], T),
                    listeners=[broken_listener])
    assert isinstance(loop.run_cycle(), SyncSucceeded)
    assert loop.stats.successes == 1


def test_background_loop_runs_and_stops():
    first_cycle = threading.Event()

    def resolver(servers, timeout):
        first_cycle.set()
        return SyncResult(servers[0], T)

    loop = SyncLoop(Clock(), ["a"], interval=60, resolver=resolver)
    loop.start()
    try:
        assert first_cycle.wait(5.0)
        assert loop.running
        with pytest.raises(RuntimeError):
            loop.start()
    finally:
        started = time.monotonic()
        loop.stop(timeout=5.0)
    # 停止信号打断 60 秒的等待
    assert time.monotonic() - started < 5.0
    assert not loop.running
    assert loop.stats.successes == 1


def test_stopped_loop_cannot_restart():
    loop = SyncLoop(Clock(), ["a"], interval=60, resolver=lambda servers, timeout: SyncResult(servers[0], T))
    loop.start()
    loop.stop(timeout=5.0)
    with pytest.raises(RuntimeError):
        loop.start()


def test_background_loop_survives_unexpected_errors():
    calls = []
    done = threading.Event()

    def resolver(servers, timeout):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        done.set()
        return SyncResult(servers[0], T)

    loop = SyncLoop(Clock(), ["a"], interval=0.01, resolver=resolver)
    loop.start()
    try:
        assert done.wait(5.0)
    finally:
        loop.stop(timeout=5.0)
    attempts, successes = loop.stats.snapshot()
    assert successes >= 1
    assert attempts >= 2
    assert successes <= attempts
