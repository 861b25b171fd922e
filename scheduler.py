from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable


LOG = logging.getLogger("taskdash_whatsapp")


class TimerHandle:
    def __init__(self, due: float, callback: Callable[[], None], name: str):
        self.due = due
        self.callback = callback
        self.name = name
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class DelayedScheduler:
    def __init__(
        self,
        monotonic: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self._monotonic = monotonic or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def call_later(self, delay_sec: float, callback: Callable[[], None], name: str = "timer") -> TimerHandle:
        if delay_sec < 0:
            raise ValueError("delay_sec must be >= 0")
        handle = TimerHandle(self._monotonic() + delay_sec, callback, name)
        with self._lock:
            heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
        return handle

    def pending(self) -> list[TimerHandle]:
        with self._lock:
            return [item[2] for item in sorted(self._heap) if not item[2].cancelled]

    def _pop_due(self, now: float) -> list[TimerHandle]:
        due: list[TimerHandle] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, handle = heapq.heappop(self._heap)
                if not handle.cancelled:
                    due.append(handle)
        return due

    def _next_due(self) -> float | None:
        with self._lock:
            while self._heap and self._heap[0][2].cancelled:
                heapq.heappop(self._heap)
            return self._heap[0][0] if self._heap else None

    def run_due(self) -> int:
        fired = 0
        for handle in self._pop_due(self._monotonic()):
            fired += 1
            try:
                handle.callback()
            except Exception:
                LOG.exception("Unhandled exception in timer callback (%s)", handle.name)
        return fired

    def run(self, stop_event, on_iteration: Callable[[], None] | None = None) -> None:
        last_heartbeat = self._monotonic()
        while not stop_event.is_set():
            self.run_due()
            now = self._monotonic()
            if on_iteration is not None and now - last_heartbeat >= 1.0:
                on_iteration()
                last_heartbeat = now
            next_due = self._next_due()
            sleep_for = 0.25 if next_due is None else min(0.25, max(0.0, next_due - now))
            self._sleep(sleep_for)
