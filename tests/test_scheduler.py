#!/usr/bin/env python
"""Refresh scheduler and worker tests."""

import queue
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from happen.events import EventKind
from happen.feeds import AggregationError, Item, Source, SourceFetchError, item_id
from happen.scheduler import RefreshScheduler, SchedulerState, refresh_worker, spawn_refresh

INTERVAL = timedelta(seconds=60)


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class Recorder:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


def make_scheduler():
    clock = FakeClock()
    fetches = Recorder()
    return RefreshScheduler(INTERVAL, fetches, clock=clock), clock, fetches


class TestRefreshScheduler:
    """State machine transitions"""

    def test_first_tick_fetches(self):
        """A fresh scheduler fetches on its first tick"""
        scheduler, _, fetches = make_scheduler()
        assert scheduler.state == SchedulerState.IDLE
        assert scheduler.tick() is True
        assert scheduler.state == SchedulerState.FETCHING
        assert fetches.calls == 1

    def test_no_overlapping_fetches(self):
        """Ticks and manual requests are ignored while fetching"""
        scheduler, clock, fetches = make_scheduler()
        scheduler.tick()
        clock.advance(600)
        assert scheduler.tick() is False
        assert scheduler.request_refresh() is False
        assert fetches.calls == 1

    def test_cooldown_after_completion(self):
        """After a refresh nothing happens until the interval passes"""
        scheduler, clock, fetches = make_scheduler()
        scheduler.tick()
        scheduler.complete(True)
        assert scheduler.state == SchedulerState.COOLDOWN
        clock.advance(59)
        assert scheduler.tick() is False
        clock.advance(1)
        assert scheduler.tick() is True
        assert fetches.calls == 2

    def test_activity_extends_cooldown(self):
        """Each interaction restarts the wait"""
        scheduler, clock, fetches = make_scheduler()
        scheduler.tick()
        scheduler.complete(True)
        for _ in range(5):
            clock.advance(45)
            scheduler.note_activity()
            assert scheduler.tick() is False
        clock.advance(60)
        assert scheduler.tick() is True
        assert fetches.calls == 2

    def test_activity_while_idle_starts_cooldown(self):
        """Interacting before the first tick defers the automatic fetch"""
        scheduler, clock, fetches = make_scheduler()
        scheduler.note_activity()
        assert scheduler.state == SchedulerState.COOLDOWN
        assert scheduler.tick() is False
        assert fetches.calls == 0

    def test_activity_while_fetching_keeps_fetching(self):
        """A key press does not interrupt an in-flight refresh"""
        scheduler, _, _ = make_scheduler()
        scheduler.tick()
        scheduler.note_activity()
        assert scheduler.state == SchedulerState.FETCHING

    def test_failure_still_cools_down(self):
        """A failed refresh records the failure and waits like a success"""
        scheduler, clock, _ = make_scheduler()
        scheduler.tick()
        clock.advance(3)
        scheduler.complete(False)
        assert scheduler.state == SchedulerState.COOLDOWN
        assert scheduler.last_ok is False
        assert scheduler.last_update == clock.now
        assert scheduler.tick() is False

    def test_manual_refresh_skips_cooldown(self):
        """A user request fetches immediately unless one is in flight"""
        scheduler, clock, fetches = make_scheduler()
        scheduler.tick()
        scheduler.complete(True)
        clock.advance(5)
        assert scheduler.request_refresh() is True
        assert scheduler.state == SchedulerState.FETCHING
        assert fetches.calls == 2

    def test_seconds_until_next(self):
        """Countdown reflects the time left in the cooldown"""
        scheduler, clock, _ = make_scheduler()
        assert scheduler.seconds_until_next() == 0
        scheduler.tick()
        assert scheduler.seconds_until_next() == 0
        scheduler.complete(True)
        assert scheduler.seconds_until_next() == 60
        clock.advance(20)
        assert scheduler.seconds_until_next() == 40
        clock.advance(100)
        assert scheduler.seconds_until_next() == 0


def sample_items():
    source = Source(name="News", url="https://news.example/rss")
    url = "https://news.example/1"
    return [
        Item(
            id=item_id(url),
            source=source,
            title="One",
            description=url,
            url=url,
            image_url="",
            published=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
    ]


class TestRefreshWorker:
    """Worker outcomes posted to the event queue"""

    def test_success_posts_items(self):
        """A successful load posts a single data-ready event"""
        events = queue.Queue()
        items = sample_items()
        refresh_worker(lambda: items, events)
        event = events.get_nowait()
        assert event.kind == EventKind.DATA_READY
        assert event.items == tuple(items)
        assert events.empty()

    def test_aggregation_failure_posts_error(self):
        """A failed pass posts fetch-failed with the source errors"""
        events = queue.Queue()
        source = Source(name="Bad", url="https://bad.example/rss")

        def load():
            raise AggregationError([SourceFetchError(source, "HTTP 503")])

        refresh_worker(load, events)
        event = events.get_nowait()
        assert event.kind == EventKind.FETCH_FAILED
        assert "HTTP 503" in event.error
        assert "Bad" in event.error

    def test_unexpected_failure_posts_error(self):
        """Bugs in the loader are reported rather than killing the UI"""
        events = queue.Queue()

        def load():
            raise RuntimeError("boom")

        refresh_worker(load, events)
        event = events.get_nowait()
        assert event.kind == EventKind.FETCH_FAILED
        assert event.error == "RuntimeError: boom"

    def test_spawn_refresh_runs_in_background(self):
        """The spawned daemon thread delivers its result through the queue"""
        events = queue.Queue()
        items = sample_items()
        worker = spawn_refresh(lambda: items, events)
        event = events.get(timeout=5)
        worker.join(timeout=5)
        assert worker.daemon
        assert event.kind == EventKind.DATA_READY
        assert event.items == tuple(items)
