"""Timer scheduling used by the capture state machine.

`ThreadingScheduler` backs the live runtime; `ManualScheduler` is a virtual clock
that only moves when `advance()` is called, for deterministic frame replays.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Protocol

L = logging.getLogger("snapbooth.timers")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class TimerScheduler(Protocol):
    def call_later(self, delay_ms: float, fn: Callable[[], None]) -> TimerHandle: ...

    def now_ms(self) -> float: ...


class ThreadingScheduler:
    def __init__(self, name: str = "booth-timer"):
        self._name = name
        self._seq = itertools.count(1)

    def call_later(self, delay_ms: float, fn: Callable[[], None]) -> TimerHandle:
        def _run():
            try:
                fn()
            except Exception:
                L.exception("timer callback failed")

        t = threading.Timer(max(float(delay_ms), 0.0) / 1000.0, _run)
        t.name = f"{self._name}-{next(self._seq)}"
        t.daemon = True
        t.start()
        return t

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0


class _ManualTimer:
    __slots__ = ("due_ms", "seq", "fn", "cancelled")

    def __init__(self, due_ms: float, seq: int, fn: Callable[[], None]):
        self.due_ms = due_ms
        self.seq = seq
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "_ManualTimer") -> bool:
        return (self.due_ms, self.seq) < (other.due_ms, other.seq)


class ManualScheduler:
    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)
        self._heap: list[_ManualTimer] = []
        self._seq = itertools.count(1)

    def call_later(self, delay_ms: float, fn: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(float(delay_ms), 0.0), next(self._seq), fn)
        heapq.heappush(self._heap, timer)
        return timer

    def now_ms(self) -> float:
        return self._now

    def advance(self, delta_ms: float) -> int:
        """Move the clock forward, firing due timers in order. Returns fired count."""
        target = self._now + max(float(delta_ms), 0.0)
        fired = 0
        while self._heap and self._heap[0].due_ms <= target:
            timer = heapq.heappop(self._heap)
            if timer.cancelled:
                continue
            self._now = timer.due_ms
            timer.fn()
            fired += 1
        self._now = target
        return fired

    @property
    def pending(self) -> int:
        return sum(1 for t in self._heap if not t.cancelled)


__all__ = [
    "ManualScheduler",
    "ThreadingScheduler",
    "TimerHandle",
    "TimerScheduler",
]
