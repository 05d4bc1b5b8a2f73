"""Clock and cancellable timers for the voice loop.

``ThreadingScheduler`` runs callbacks on ``threading.Timer`` threads.
``VirtualScheduler`` keeps its own clock and only fires callbacks when
``advance()`` is called, so a sequence of timestamped events can be replayed
deterministically.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Dict

log = logging.getLogger(__name__)


class TimerHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class _ThreadTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        super().__init__()
        self._timer = timer

    def cancel(self):
        super().cancel()
        self._timer.cancel()


class Scheduler:
    def monotonic(self) -> float:
        raise NotImplementedError

    def wall(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle:
        raise NotImplementedError


class ThreadingScheduler(Scheduler):
    def monotonic(self) -> float:
        return time.monotonic()

    def wall(self) -> float:
        return time.time()

    def call_later(self, delay, fn):
        holder = {}

        def _run():
            if holder["handle"].cancelled:
                return
            try:
                fn()
            except Exception:
                log.exception("timer callback failed")

        t = threading.Timer(max(0.0, float(delay)), _run)
        t.daemon = True
        holder["handle"] = handle = _ThreadTimerHandle(t)
        t.start()
        return handle


class VirtualScheduler(Scheduler):
    def __init__(self, start: float = 1000.0, wall_start: float = 1_700_000_000.0):
        self._now = float(start)
        self._wall_offset = float(wall_start) - float(start)
        self._queue = []
        self._seq = itertools.count()

    def monotonic(self):
        return self._now

    def wall(self):
        return self._now + self._wall_offset

    def call_later(self, delay, fn):
        handle = TimerHandle()
        heapq.heappush(self._queue, (self._now + max(0.0, float(delay)), next(self._seq), handle, fn))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)

    def advance(self, seconds: float):
        target = self._now + float(seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, fn = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            if not handle.cancelled:
                fn()
        self._now = target


class TimerSlots:
    """One pending timer per purpose; arming a purpose replaces the old timer."""

    def __init__(self, scheduler: Scheduler, lock=None):
        self._scheduler = scheduler
        self._lock = lock or threading.RLock()
        self._slots: Dict[str, TimerHandle] = {}

    def arm(self, purpose: str, delay: float, fn: Callable[[], None]) -> TimerHandle:
        holder = {}

        def _fire():
            with self._lock:
                handle = holder["handle"]
                if handle.cancelled or self._slots.get(purpose) is not handle:
                    return
                del self._slots[purpose]
            # Callbacks take the lock themselves; observers must run without it
            fn()

        with self._lock:
            self.cancel(purpose)
            holder["handle"] = handle = self._scheduler.call_later(delay, _fire)
            self._slots[purpose] = handle
        return handle

    def cancel(self, purpose: str):
        with self._lock:
            handle = self._slots.pop(purpose, None)
            if handle:
                handle.cancel()

    def cancel_all(self):
        with self._lock:
            for purpose in list(self._slots):
                self.cancel(purpose)

    def is_armed(self, purpose: str) -> bool:
        handle = self._slots.get(purpose)
        return bool(handle and not handle.cancelled)
