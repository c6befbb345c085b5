"""Countdown / auto-capture / cooldown state machine.

CaptureState is a closed set of immutable states; every transition happens under
one re-entrant lock, whether it comes from a trigger, a countdown tick, or the
cooldown timer. Timer callbacks carry the generation they were scheduled in, so
a timer that fires after `cancel()` or `shutdown()` does nothing.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, ClassVar, Union

from core.timers import TimerHandle, TimerScheduler

L = logging.getLogger("snapbooth.capture")

MANUAL_CAPTURE_MODES = ("direct", "countdown")


@dataclass(frozen=True, slots=True)
class Idle:
    name: ClassVar[str] = "idle"


@dataclass(frozen=True, slots=True)
class CountingDown:
    remaining: int
    auto: bool = True
    name: ClassVar[str] = "counting_down"


@dataclass(frozen=True, slots=True)
class ReadyToCapture:
    name: ClassVar[str] = "ready_to_capture"


@dataclass(frozen=True, slots=True)
class AutoCapturing:
    name: ClassVar[str] = "auto_capturing"


@dataclass(frozen=True, slots=True)
class Cooldown:
    name: ClassVar[str] = "cooldown"


CaptureState = Union[Idle, CountingDown, ReadyToCapture, AutoCapturing, Cooldown]

IDLE = Idle()
READY_TO_CAPTURE = ReadyToCapture()
AUTO_CAPTURING = AutoCapturing()
COOLDOWN = Cooldown()


@dataclass(slots=True)
class CaptureOutcome:
    ok: bool = False
    path: str | None = None
    message: str = ""


CaptureAction = Callable[[str, str], CaptureOutcome]


def describe_state(state: CaptureState) -> str:
    if isinstance(state, CountingDown):
        mode = "auto" if state.auto else "manual"
        return f"{state.name}({state.remaining},{mode})"
    return state.name


class CaptureMachine:
    def __init__(
        self,
        scheduler: TimerScheduler,
        capture_action: CaptureAction,
        *,
        countdown_length: int = 3,
        countdown_interval_ms: float = 1000.0,
        cooldown_ms: float = 3000.0,
        manual_capture_mode: str = "direct",
        on_state_change: Callable[[CaptureState, CaptureState], None] | None = None,
        on_capture_error: Callable[[CaptureOutcome], None] | None = None,
    ):
        self._scheduler = scheduler
        self._capture_action = capture_action
        self._on_state_change = on_state_change
        self._on_capture_error = on_capture_error
        self.countdown_length = int(countdown_length)
        self.countdown_interval_ms = float(countdown_interval_ms)
        self.cooldown_ms = float(cooldown_ms)
        self.manual_capture_mode = str(manual_capture_mode or "direct").strip().lower()
        self._validate()

        self._lock = threading.RLock()
        self._state: CaptureState = IDLE
        self._timer: TimerHandle | None = None
        self._generation = 0
        self._alive = True
        self._source = ""
        self._capture_count = 0
        self._last_outcome: CaptureOutcome | None = None

    # ---- read API ----

    @property
    def state(self) -> CaptureState:
        with self._lock:
            return self._state

    @property
    def is_idle(self) -> bool:
        with self._lock:
            return self._alive and isinstance(self._state, Idle)

    @property
    def countdown_value(self) -> int | None:
        with self._lock:
            st = self._state
            return st.remaining if isinstance(st, CountingDown) else None

    @property
    def capture_count(self) -> int:
        with self._lock:
            return self._capture_count

    @property
    def last_outcome(self) -> CaptureOutcome | None:
        with self._lock:
            return self._last_outcome

    # ---- events ----

    def request_countdown(self, *, auto: bool, source: str = "") -> bool:
        with self._lock:
            if not self._alive:
                return False
            if not isinstance(self._state, Idle):
                L.debug(
                    "Countdown request from %s ignored in state=%s",
                    source,
                    describe_state(self._state),
                )
                return False
            self._source = source
            self._set_state(CountingDown(self.countdown_length, auto=bool(auto)))
            self._schedule(self.countdown_interval_ms, self._on_tick)
            return True

    def capture(self, source: str = "MANUAL") -> bool:
        """External capture invocation (capture button / command)."""
        with self._lock:
            if not self._alive:
                return False
            st = self._state
            if isinstance(st, ReadyToCapture):
                self._run_capture(source, "manual")
                self._set_state(IDLE)
                return True
            if isinstance(st, Idle):
                if self.manual_capture_mode == "countdown":
                    return self.request_countdown(auto=False, source=source)
                self._run_capture(source, "manual")
                return True
            L.debug("Capture from %s ignored in state=%s", source, describe_state(st))
            return False

    def cancel(self, reason: str = "") -> None:
        with self._lock:
            self._cancel_timer()
            if not isinstance(self._state, Idle):
                L.info(
                    "Capture sequence cancelled (%s) in state=%s",
                    reason or "cancel",
                    describe_state(self._state),
                )
                self._set_state(IDLE)

    def shutdown(self) -> None:
        with self._lock:
            self.cancel("shutdown")
            self._alive = False

    # ---- internals ----

    def _on_tick(self):
        st = self._state
        if not isinstance(st, CountingDown):
            return
        if st.remaining > 1:
            self._set_state(CountingDown(st.remaining - 1, auto=st.auto))
            self._schedule(self.countdown_interval_ms, self._on_tick)
            return
        if st.auto:
            self._set_state(AUTO_CAPTURING)
            self._run_capture(self._source, "auto")
            self._set_state(COOLDOWN)
            self._schedule(self.cooldown_ms, self._on_cooldown_end)
        else:
            self._set_state(READY_TO_CAPTURE)

    def _on_cooldown_end(self):
        if isinstance(self._state, Cooldown):
            self._set_state(IDLE)

    def _run_capture(self, source: str, mode: str):
        t0 = time.perf_counter()
        try:
            outcome = self._capture_action(source, mode)
        except Exception as e:
            # The sequence must still reach Cooldown/Idle after a failed export.
            L.exception("Capture action failed src=%s mode=%s", source, mode)
            outcome = CaptureOutcome(ok=False, message=f"capture_failed: {e}")
        self._capture_count += 1
        self._last_outcome = outcome
        log_fn = L.info if outcome.ok else L.warning
        log_fn(
            "Capture #%d src=%s mode=%s ok=%s took=%.1fms %s",
            self._capture_count,
            source,
            mode,
            outcome.ok,
            (time.perf_counter() - t0) * 1000,
            outcome.path or outcome.message,
        )
        if not outcome.ok and self._on_capture_error is not None:
            try:
                self._on_capture_error(outcome)
            except Exception:
                L.exception("on_capture_error hook failed")

    def _schedule(self, delay_ms: float, fn: Callable[[], None]):
        gen = self._generation

        def _fire():
            with self._lock:
                if not self._alive or gen != self._generation:
                    return
                self._timer = None
                fn()

        self._timer = self._scheduler.call_later(delay_ms, _fire)

    def _cancel_timer(self):
        self._generation += 1
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _set_state(self, new_state: CaptureState):
        old = self._state
        self._state = new_state
        if old == new_state:
            return
        L.info("Capture state %s -> %s", describe_state(old), describe_state(new_state))
        if self._on_state_change is not None:
            try:
                self._on_state_change(old, new_state)
            except Exception:
                L.exception("on_state_change hook failed")

    def _validate(self):
        if self.countdown_length < 1:
            raise ValueError("countdown_length must be >= 1")
        if self.countdown_interval_ms <= 0:
            raise ValueError("countdown_interval_ms must be > 0")
        if self.cooldown_ms < 0:
            raise ValueError("cooldown_ms must be >= 0")
        if self.manual_capture_mode not in MANUAL_CAPTURE_MODES:
            raise ValueError(
                f"manual_capture_mode must be one of {MANUAL_CAPTURE_MODES}, "
                f"got {self.manual_capture_mode!r}"
            )


__all__ = [
    "AUTO_CAPTURING",
    "AutoCapturing",
    "CaptureAction",
    "CaptureMachine",
    "CaptureOutcome",
    "CaptureState",
    "COOLDOWN",
    "Cooldown",
    "CountingDown",
    "IDLE",
    "Idle",
    "MANUAL_CAPTURE_MODES",
    "READY_TO_CAPTURE",
    "ReadyToCapture",
    "describe_state",
]
