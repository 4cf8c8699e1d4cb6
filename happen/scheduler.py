from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Sequence

from .events import Event
from .feeds import AggregationError, Item, now_utc

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    COOLDOWN = "cooldown"


class RefreshScheduler:
    """Decides when a refresh may run.

    A refresh starts when the scheduler is idle and a tick arrives, or when the
    user asks for one. Completing a refresh (ok or not) and any user activity
    restart the cooldown, so an automatic refresh never lands mid-interaction.
    """

    def __init__(
        self,
        interval: timedelta,
        start_fetch: Callable[[], None],
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.interval = interval
        self._start_fetch = start_fetch
        self._clock = clock
        self._state = SchedulerState.IDLE
        self._last_activity: datetime | None = None
        self._last_update: datetime | None = None
        self._last_ok: bool | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def last_update(self) -> datetime | None:
        return self._last_update

    @property
    def last_ok(self) -> bool | None:
        return self._last_ok

    def note_activity(self) -> None:
        self._last_activity = self._clock()
        if self._state == SchedulerState.IDLE:
            self._transition(SchedulerState.COOLDOWN)

    def tick(self) -> bool:
        if self._state == SchedulerState.FETCHING:
            return False
        if self._state == SchedulerState.COOLDOWN and self._cooldown_elapsed():
            self._transition(SchedulerState.IDLE)
        if self._state == SchedulerState.IDLE:
            self._begin()
            return True
        return False

    def request_refresh(self) -> bool:
        if self._state == SchedulerState.FETCHING:
            return False
        self._begin()
        return True

    def complete(self, ok: bool) -> None:
        now = self._clock()
        self._last_activity = now
        self._last_update = now
        self._last_ok = ok
        self._transition(SchedulerState.COOLDOWN)

    def seconds_until_next(self) -> int:
        if self._state == SchedulerState.FETCHING or self._last_activity is None:
            return 0
        remaining = self.interval - (self._clock() - self._last_activity)
        return max(0, round(remaining.total_seconds()))

    def _cooldown_elapsed(self) -> bool:
        if self._last_activity is None:
            return True
        return self._clock() - self._last_activity >= self.interval

    def _begin(self) -> None:
        self._transition(SchedulerState.FETCHING)
        self._start_fetch()

    def _transition(self, state: SchedulerState) -> None:
        if state != self._state:
            logger.debug(f"scheduler {self._state.value} -> {state.value}")
        self._state = state


def refresh_worker(
    load: Callable[[], Sequence[Item]],
    events: queue.Queue[Event],
) -> None:
    try:
        items = tuple(load())
    except AggregationError as exc:
        logger.warning(f"Refresh failed: {exc}")
        events.put(Event.fetch_failed(str(exc)))
        return
    except Exception as exc:
        logger.exception("Refresh crashed")
        events.put(Event.fetch_failed(f"{type(exc).__name__}: {exc}"))
        return
    logger.info(f"Refresh complete: {len(items)} items")
    events.put(Event.data_ready(items))


def spawn_refresh(
    load: Callable[[], Sequence[Item]],
    events: queue.Queue[Event],
) -> threading.Thread:
    worker = threading.Thread(
        target=refresh_worker,
        args=(load, events),
        name="happen-refresh",
        daemon=True,
    )
    worker.start()
    return worker
