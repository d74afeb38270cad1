from datetime import datetime, timedelta

import pytest

from attendance_integrity.services.cache import DatabaseTTLCache, MemoryTTLCache, build_cache
from attendance_integrity.services.events import FaultBus
from attendance_integrity.services.scheduler import Ticker


class Tick:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value

    def advance(self, amount):
        self.value = self.value + amount


def test_memory_cache_expires():
    clock = Tick(100.0)
    cache = MemoryTTLCache(clock=clock)
    cache.set("k", {"a": 1}, 30)
    assert cache.get("k") == {"a": 1}
    clock.advance(30)
    assert cache.get("k") is None


def test_get_or_set_calls_factory_once():
    cache = MemoryTTLCache()
    calls = []

    def factory():
        calls.append(1)
        return "value"

    assert cache.get_or_set("k", 60, factory) == "value"
    assert cache.get_or_set("k", 60, factory) == "value"
    assert len(calls) == 1


def test_database_cache_is_shared_between_instances(session_factory):
    clock = Tick(datetime(2024, 3, 6, 10, 0))
    first = DatabaseTTLCache(session_factory, clock=clock)
    second = DatabaseTTLCache(session_factory, clock=clock)

    first.set("biotime:jwt", "tok", 60)
    assert second.get("biotime:jwt") == "tok"
    first.set("biotime:jwt", "tok-2", 60)
    assert second.get("biotime:jwt") == "tok-2"

    clock.advance(timedelta(seconds=61))
    assert second.get("biotime:jwt") is None

    first.set("gaps", {"days": 7}, 60)
    first.delete("gaps")
    assert second.get("gaps") is None


def test_build_cache_picks_backend(session_factory):
    assert isinstance(build_cache("database", session_factory), DatabaseTTLCache)
    assert isinstance(build_cache("memory", session_factory), MemoryTTLCache)


def test_fault_bus_delivers_and_keeps_history():
    bus = FaultBus(history_size=2)
    seen = []
    unsubscribe = bus.subscribe(seen.append)

    def broken(event):
        raise RuntimeError("subscriber down")

    bus.subscribe(broken)
    bus.publish("poll_deferred", "first", window_start="x")
    unsubscribe()
    bus.publish("gap_remnant", "second")
    bus.publish("consistency_failure", "third")

    assert [e.message for e in seen] == ["first"]
    assert seen[0].details == {"window_start": "x"}
    assert [e.kind for e in bus.recent()] == ["gap_remnant", "consistency_failure"]
    assert bus.recent(limit=1)[0].to_dict()["kind"] == "consistency_failure"


@pytest.fixture
def ticker():
    t = Ticker(timezone="Asia/Karachi")
    yield t
    t.shutdown(wait=False)


def test_ticker_registers_and_cancels_tasks(ticker):
    ticker.every("poller", 5, lambda: None)
    ticker.every("consistency", 10, lambda: None)
    assert set(ticker.jobs()) == {"poller", "consistency"}

    assert ticker.cancel("poller")
    assert not ticker.cancel("poller")
    assert set(ticker.jobs()) == {"consistency"}


def test_started_ticker_reports_next_run(ticker):
    ticker.every("gap_scan", 60, lambda: None)
    ticker.start()
    assert ticker.running
    assert ticker.jobs()["gap_scan"] is not None
    # Re-registering a name replaces the task
    ticker.every("gap_scan", 30, lambda: None)
    assert list(ticker.jobs()) == ["gap_scan"]
    ticker.shutdown(wait=False)
    assert not ticker.running


def test_wrapped_task_swallows_failures(ticker):
    calls = []

    def failing():
        calls.append(1)
        raise RuntimeError("boom")

    ticker._wrap("poller", failing)()
    assert calls == [1]
