from __future__ import annotations

import logging

from progress_sync.client.collector import LocalCollector, position_key
from progress_sync.client.local_store import InMemoryLocalStore
from progress_sync.models.events import EventType, ProgressEvent

USER = "learner-1"


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.staged: list[ProgressEvent] = []
        self.flush_requests = 0

    def stage(self, event: ProgressEvent) -> None:
        self.staged.append(event)

    def request_flush(self) -> None:
        self.flush_requests += 1


def _collector(store=None, **kwargs) -> tuple[LocalCollector, RecordingSink, FakeClock]:
    sink = RecordingSink()
    clock = FakeClock()
    collector = LocalCollector(
        USER, sink, store if store is not None else InMemoryLocalStore(), clock=clock, wall_clock=lambda: 1_700_000_000.0, **kwargs
    )
    return collector, sink, clock


def test_rapid_updates_are_throttled_to_one_write() -> None:
    collector, sink, _ = _collector()

    for i in range(1, 101):
        collector.record_progress("course-1", "ch-1", i / 200, played_seconds=i, duration=200)

    assert collector.writes == 1
    assert len(sink.staged) == 1
    # The live value is always current, regardless of the throttle
    assert collector.live_progress("course-1", "ch-1") == 0.5


def test_close_writes_the_trailing_value_once() -> None:
    collector, sink, _ = _collector()
    for i in range(1, 101):
        collector.record_progress("course-1", "ch-1", i / 200, played_seconds=i, duration=200)

    assert collector.close() == 1
    assert collector.writes == 2
    assert sink.staged[-1].metadata.progress == 0.5
    assert collector.close() == 0


def test_write_after_interval_requires_minimum_change() -> None:
    collector, _, clock = _collector()
    collector.record_progress("course-1", "ch-1", 0.10)

    clock.now = 11
    collector.record_progress("course-1", "ch-1", 0.11)
    assert collector.writes == 1

    collector.record_progress("course-1", "ch-1", 0.13)
    assert collector.writes == 2


def test_flush_due_writes_held_back_values() -> None:
    collector, _, clock = _collector()
    collector.record_progress("course-1", "ch-1", 0.1)
    collector.record_progress("course-1", "ch-1", 0.3)

    assert collector.flush_due() == 0
    clock.now = 10
    assert collector.flush_due() == 1
    assert collector.saved_position("course-1", "ch-1").fraction == 0.3


def test_entities_are_throttled_independently() -> None:
    collector, _, _ = _collector()
    collector.record_progress("course-1", "ch-1", 0.1)
    collector.record_progress("course-1", "ch-2", 0.1)
    assert collector.writes == 2


def test_completion_is_staged_immediately_and_requests_flush() -> None:
    collector, sink, _ = _collector()

    collector.record_completion("course-1", "ch-3", time_spent=120, total_chapters=4)

    kinds = [e.type for e in sink.staged]
    assert EventType.CHAPTER_COMPLETED.value in kinds
    assert sink.flush_requests == 1
    completed = next(e for e in sink.staged if e.type == EventType.CHAPTER_COMPLETED.value)
    assert completed.metadata.total_chapters == 4
    assert completed.metadata.time_spent == 120
    assert collector.saved_position("course-1", "ch-3").fraction == 1.0


def test_updates_after_completion_skip_the_throttle() -> None:
    collector, _, _ = _collector()
    collector.record_completion("course-1", "ch-1")
    writes = collector.writes

    collector.record_progress("course-1", "ch-1", 0.2)
    collector.record_progress("course-1", "ch-1", 0.21)

    assert collector.writes == writes + 2


def test_saved_position_survives_a_new_collector() -> None:
    store = InMemoryLocalStore()
    first, _, _ = _collector(store)
    first.record_progress("course-1", "ch-1", 0.4, played_seconds=48.0, duration=120.0)

    second, _, _ = _collector(store)
    position = second.saved_position("course-1", "ch-1")

    assert position is not None
    assert position.played_seconds == 48.0
    assert store.get(position_key(USER, "course-1", "ch-1"))["fraction"] == 0.4


def test_store_failure_degrades_to_memory_only(caplog) -> None:
    caplog.set_level(logging.WARNING)
    collector, sink, _ = _collector(InMemoryLocalStore(max_entries=0))

    collector.record_progress("course-1", "ch-1", 0.4)
    collector.record_progress("course-1", "ch-2", 0.6)

    assert collector.degraded is True
    assert len(sink.staged) == 2
    assert collector.saved_position("course-1", "ch-1").fraction == 0.4
    assert sum("memory-only" in r.getMessage() for r in caplog.records) == 1
