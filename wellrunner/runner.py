"""Run engine: automated well-by-well traversal with a dwell at each well.

A run executes on a background thread.  Pausing freezes the dwell countdown
and holds the loop before the next well; stopping cancels the run, fails any
command still waiting for an acknowledgement and returns to ``idle``.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .commands import MotionCommands
from .config import CalibrationData, RunConfig
from .errors import RunStateError
from .plate import (
    WellId,
    WellState,
    all_well_ids,
    drip_off_position,
    parse_well_id,
    traversal_order,
    well_id,
    well_position,
)

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
ProgressCallback = Callable[[float], None]
SnapshotListener = Callable[[Dict[str, Any]], None]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"


class Clock:
    """Interruptible wall-clock wait used by the dwell countdown."""

    def wait(self, event: threading.Event, timeout: float) -> bool:
        """Block up to ``timeout`` seconds; True if ``event`` got set."""
        return event.wait(timeout)


class DwellTimer:
    """Per-tick countdown that can be frozen and cut short.

    Each tick waits on ``cancel`` for ``tick_s`` seconds.  While ``is_paused``
    reports True the remaining time is not decremented.
    """

    def __init__(
        self,
        cancel: threading.Event,
        is_paused: Callable[[], bool],
        *,
        clock: Optional[Clock] = None,
        tick_s: float = 1.0,
        publish: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.cancel = cancel
        self.is_paused = is_paused
        self.clock = clock or Clock()
        self.tick_s = tick_s
        self.publish = publish or (lambda remaining: None)

    def run(self, seconds: float) -> bool:
        """Count down ``seconds``; False if cancelled before reaching zero."""

        remaining = max(0.0, float(seconds))
        self.publish(remaining)
        while remaining > 0:
            if self.clock.wait(self.cancel, self.tick_s) or self.cancel.is_set():
                return False
            if self.is_paused():
                continue
            remaining = max(0.0, remaining - 1)
            self.publish(remaining)
        return not self.cancel.is_set()


class _RunContext:
    """One run: its calibration, a config snapshot and its own cancel flag.

    ``motion`` is bound to both, so every command the run sends uses the
    snapshot and is refused once the run is cancelled.
    """

    def __init__(
        self, motion: MotionCommands, calibration: CalibrationData, config: RunConfig
    ) -> None:
        self.calibration = calibration
        self.config = config
        self.cancel = threading.Event()
        self.motion = motion.bind(config, self.cancel)


class RunEngine:
    """Pause/resume/stop capable state machine over the plate traversal."""

    def __init__(
        self,
        motion: MotionCommands,
        *,
        calibration: Optional[CalibrationData] = None,
        clock: Optional[Clock] = None,
        tick_s: float = 1.0,
        stop_timeout: float = 5.0,
        status_cb: Optional[StatusCallback] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> None:
        self.motion = motion
        self.calibration = calibration
        self.clock = clock or Clock()
        self.tick_s = tick_s
        self.stop_timeout = stop_timeout
        self.status_cb = status_cb or (lambda message: None)
        self.progress_cb = progress_cb or (lambda progress: None)

        self._lock = threading.Lock()
        self._resume = threading.Condition(self._lock)
        self._state = RunState.IDLE
        self._wells: Dict[WellId, WellState] = {w: WellState.PENDING for w in all_well_ids()}
        self._current: Optional[WellId] = None
        self._dwell_remaining = 0.0
        self._last_error: Optional[str] = None
        self._run: Optional[_RunContext] = None
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[SnapshotListener] = []

        motion.client.transport.add_close_listener(self._on_disconnect)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def state(self) -> RunState:
        return self._state

    @property
    def current_well(self) -> Optional[WellId]:
        return self._current

    @property
    def dwell_remaining(self) -> float:
        return self._dwell_remaining

    @property
    def well_states(self) -> Dict[WellId, WellState]:
        with self._lock:
            return dict(self._wells)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add_listener(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            wells = {w: s.value for w, s in self._wells.items()}
            done = sum(1 for s in self._wells.values() if s is WellState.DONE)
            total = sum(1 for s in self._wells.values() if s is not WellState.SKIPPED)
            return {
                "run_state": self._state.value,
                "current_well": self._current,
                "dwell_remaining": self._dwell_remaining,
                "wells": wells,
                "progress": {"done": done, "total": total},
                "last_error": self._last_error,
            }

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:  # pragma: no cover - runtime safety
                logger.exception("Run listener failed")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the worker thread; True once it has finished."""

        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self, skip: Optional[Iterable[str]] = None) -> None:
        if self._state in (RunState.RUNNING, RunState.PAUSED):
            raise RunStateError("A run is already in progress")
        previous = self._thread
        if previous is not None and previous is not threading.current_thread():
            # a stopped worker may still be unwinding out of a cancelled command
            previous.join(self.stop_timeout)
            if previous.is_alive():
                raise RunStateError("Previous run is still stopping")
        with self._lock:
            if self._state in (RunState.RUNNING, RunState.PAUSED):
                raise RunStateError("A run is already in progress")
            if self.calibration is None:
                raise RunStateError("Cannot start: no calibration data")
            skipped = {well_id(*parse_well_id(w)) for w in (skip or ())}

            ctx = _RunContext(self.motion, self.calibration, replace(self.motion.config))
            self._run = ctx
            self._wells = {w: WellState.PENDING for w in all_well_ids()}
            for w in skipped:
                self._wells[w] = WellState.SKIPPED
            self._current = None
            self._dwell_remaining = 0.0
            self._last_error = None
            self._state = RunState.RUNNING
            thread = threading.Thread(
                target=self._run_loop, args=(ctx,), name="wellrunner-run", daemon=True
            )
            self._thread = thread
        logger.info("Run started (%d well(s) skipped)", len(skipped))
        self.status_cb("Run started")
        self.progress_cb(0.0)
        self._notify()
        thread.start()

    def pause(self) -> bool:
        with self._lock:
            if self._state is not RunState.RUNNING:
                return False
            self._state = RunState.PAUSED
        logger.info("Run paused")
        self.status_cb("Run paused")
        self._notify()
        return True

    def resume(self) -> bool:
        with self._lock:
            if self._state is not RunState.PAUSED:
                return False
            self._state = RunState.RUNNING
            self._resume.notify_all()
        logger.info("Run resumed")
        self.status_cb("Run resumed")
        self._notify()
        return True

    def stop(self) -> None:
        with self._lock:
            ctx, self._run = self._run, None
            if ctx is not None:
                ctx.cancel.set()
            self._state = RunState.IDLE
            self._dwell_remaining = 0.0
            self._resume.notify_all()
        self.motion.client.clear_queue()
        logger.info("Run stopped")
        self.status_cb("Run stopped")
        self._notify()

    def _on_disconnect(self, reason: Optional[str]) -> None:
        message = f"Connection closed: {reason}" if reason else "Connection closed"
        with self._lock:
            ctx, self._run = self._run, None
            if ctx is None:
                return
            ctx.cancel.set()
            self._state = RunState.IDLE
            self._dwell_remaining = 0.0
            self._last_error = message
            self._resume.notify_all()
        logger.error("Run ended: %s", message)
        self.status_cb(f"Run failed: {message}")
        self._notify()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _is_current(self, ctx: _RunContext) -> bool:
        return self._run is ctx and not ctx.cancel.is_set()

    def _wait_if_paused(self, ctx: _RunContext) -> bool:
        with self._resume:
            while self._state is RunState.PAUSED and self._is_current(ctx):
                self._resume.wait()
            return self._is_current(ctx)

    def _set_well(self, ctx: _RunContext, wid: WellId, state: WellState) -> None:
        with self._lock:
            if self._run is not ctx:
                return
            self._wells[wid] = state
            if state is WellState.ACTIVE:
                self._current = wid
            done = sum(1 for s in self._wells.values() if s is WellState.DONE)
            total = sum(1 for s in self._wells.values() if s is not WellState.SKIPPED)
        if state is WellState.DONE:
            self.progress_cb(done / max(total, 1))
        self._notify()

    def _set_dwell(self, ctx: _RunContext, remaining: float) -> None:
        with self._lock:
            if self._run is not ctx:
                return
            self._dwell_remaining = remaining
        self._notify()

    def _dwell(self, ctx: _RunContext, seconds: float) -> bool:
        timer = DwellTimer(
            ctx.cancel,
            lambda: self._state is RunState.PAUSED,
            clock=self.clock,
            tick_s=self.tick_s,
            publish=lambda remaining: self._set_dwell(ctx, remaining),
        )
        return timer.run(seconds)

    def _steps(self, ctx: _RunContext, *actions: Callable[[], None]) -> bool:
        """Run ``actions`` in order, stopping as soon as the run is no longer current."""

        for action in actions:
            if not self._is_current(ctx):
                return False
            action()
        return self._is_current(ctx)

    def _run_loop(self, ctx: _RunContext) -> None:
        cal = ctx.calibration
        motion = ctx.motion
        completed = False
        try:
            for step in traversal_order():
                if not self._is_current(ctx):
                    break
                if self._wells.get(step.well_id) is WellState.SKIPPED:
                    continue
                if not self._wait_if_paused(ctx):
                    break

                self._set_well(ctx, step.well_id, WellState.ACTIVE)
                pos = well_position(cal, step.row, step.col)
                logger.info("Moving to %s (%.1f, %.1f)", step.well_id, pos.x, pos.y)
                self.status_cb(f"Moving to {step.well_id}")
                if not self._steps(
                    ctx,
                    motion.pen_up,
                    lambda: motion.linear_move(pos),
                    motion.pen_down,
                ):
                    break

                logger.info("Dwelling in %s for %ss", step.well_id, ctx.config.dwell_time_sec)
                if not self._dwell(ctx, ctx.config.dwell_time_sec):
                    break
                self._set_well(ctx, step.well_id, WellState.DONE)
            else:
                completed = True

            if completed:
                drip = drip_off_position(cal)
                logger.info("Moving to drip-off position (%.1f, %.1f)", drip.x, drip.y)
                completed = self._steps(ctx, motion.pen_up, lambda: motion.linear_move(drip))
            if completed:
                with self._lock:
                    if self._run is ctx:
                        self._run = None
                        self._state = RunState.COMPLETE
                        self._current = None
                        self._dwell_remaining = 0.0
                    else:
                        completed = False
                if completed:
                    logger.info("Run complete")
                    self.status_cb("Run complete")
                    self.progress_cb(1.0)
                    self._notify()
        except Exception as exc:
            if ctx.cancel.is_set():
                logger.info("Run aborted: %s", exc)
                return
            logger.error("Run failed: %s", exc)
            with self._lock:
                if self._run is ctx:
                    self._run = None
                    self._state = RunState.IDLE
                    self._dwell_remaining = 0.0
                    self._last_error = str(exc)
            self.status_cb(f"Run failed: {exc}")
            self._notify()


__all__ = ["RunState", "RunEngine", "DwellTimer", "Clock"]
