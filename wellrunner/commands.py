"""High level machine commands built on top of :class:`ProtocolClient`.

Every method returns once the device acknowledged each command it sent.  GRBL
acknowledges a motion command when it is accepted into the planner, not when
the move has finished.
"""
from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Callable, List, Optional

from .config import Position, RunConfig
from .grbl import CYCLE_START, FEED_HOLD, SOFT_RESET, ProtocolClient

logger = logging.getLogger(__name__)

PenCallback = Callable[[bool], None]

INIT_SETTLE_S = 1.5


class _PenState:
    def __init__(self) -> None:
        self.down = False
        self.listeners: List[PenCallback] = []


def _fmt_feed(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:.3f}"


class MotionCommands:
    """Semantic motion layer shared by the run engine and manual controls."""

    def __init__(
        self,
        client: ProtocolClient,
        config: Optional[RunConfig] = None,
        *,
        settle_s: float = INIT_SETTLE_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.config = config or RunConfig()
        self.settle_s = settle_s
        self._sleep = sleep
        self.cancel: Optional[threading.Event] = None
        self._pen = _PenState()

    def bind(self, config: RunConfig, cancel: threading.Event) -> "MotionCommands":
        """Copy that uses ``config`` and sends nothing once ``cancel`` is set.

        The copy shares the protocol client and the pen flag with this object.
        """

        bound = copy.copy(self)
        bound.config = config
        bound.cancel = cancel
        return bound

    @property
    def pen_is_down(self) -> bool:
        return self._pen.down

    def add_pen_listener(self, listener: PenCallback) -> None:
        self._pen.listeners.append(listener)

    def _set_pen(self, down: bool) -> None:
        self._pen.down = down
        for listener in list(self._pen.listeners):
            listener(down)

    def _send(self, command: str) -> str:
        return self.client.send(command, cancel=self.cancel)

    # ------------------------------------------------------------------
    # Motion
    # ------------------------------------------------------------------
    def rapid_move(self, pos: Position) -> None:
        self._send(f"G0 X{pos.x:.3f} Y{pos.y:.3f}")

    def linear_move(self, pos: Position, feed_rate: Optional[float] = None) -> None:
        feed = self.config.feed_rate if feed_rate is None else feed_rate
        self._send(f"G1 X{pos.x:.3f} Y{pos.y:.3f} F{_fmt_feed(feed)}")

    def jog(self, dx: float, dy: float) -> None:
        """Relative rapid move; absolute mode is restored even if it fails."""

        self._send("G91")
        try:
            self._send(f"G0 X{dx:.3f} Y{dy:.3f}")
        finally:
            self._send("G90")

    def pen_up(self) -> None:
        self._send(f"G0 Z{self.config.pen_up_value:.3f}")
        self._set_pen(False)

    def pen_down(self) -> None:
        self._send(
            f"G1 Z{self.config.pen_down_value:.3f} F{_fmt_feed(self.config.z_feed_rate)}"
        )
        self._set_pen(True)

    def move_to_well(self, pos: Position) -> None:
        """Raise the tip, travel to ``pos`` and lower the tip into the well."""

        self.pen_up()
        self.linear_move(pos, self.config.feed_rate)
        self.pen_down()

    # ------------------------------------------------------------------
    # Machine setup
    # ------------------------------------------------------------------
    def home(self) -> None:
        self._send("$H")

    def unlock(self) -> None:
        self._send("$X")

    def set_origin(self) -> None:
        self._send("G10 L20 P1 X0 Y0")

    def set_absolute(self) -> None:
        self._send("G90")

    def set_millimeters(self) -> None:
        self._send("G21")

    def init_machine(self) -> None:
        """Wait for the firmware to boot, then force G90 and G21."""

        if self.settle_s > 0:
            self._sleep(self.settle_s)
        self.set_absolute()
        self.set_millimeters()
        logger.info("Machine initialised (absolute, millimetres)")

    # ------------------------------------------------------------------
    # Realtime controls
    # ------------------------------------------------------------------
    def feed_hold(self) -> None:
        self.client.send_realtime(FEED_HOLD)

    def cycle_resume(self) -> None:
        self.client.send_realtime(CYCLE_START)

    def soft_reset(self) -> None:
        # GRBL drops its own buffer on reset, so nothing queued will be answered.
        self.client.clear_queue()
        self.client.send_realtime(SOFT_RESET)


__all__ = ["MotionCommands", "INIT_SETTLE_S"]
