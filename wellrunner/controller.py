"""High level orchestration for the well runner server and CLI."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Deque, Dict, List, Optional

from .calibration import CalibrationSession, validate
from .commands import MotionCommands
from .config import AppSettings, CalibrationData, Position, RunConfig
from .device import SerialTransport, SimulatedGrbl, Transport
from .errors import CalibrationError, GRBLError
from .grbl import ProtocolClient
from .plate import all_well_positions, drip_off_position, is_degenerate, parse_well_id, well_position
from .runner import Clock, RunEngine
from .storage import StateStore

logger = logging.getLogger(__name__)


@dataclass
class WellController:
    """Own the device link, the run engine and the operator's saved state."""

    settings: AppSettings = field(default_factory=AppSettings)
    transport: Optional[Transport] = None
    clock: Optional[Clock] = None

    def __post_init__(self) -> None:
        if self.transport is None:
            if self.settings.simulate:
                self.transport = SimulatedGrbl()
            else:
                self.transport = SerialTransport(self.settings.serial)
        self.store = StateStore(self.settings.data_dir)
        self.client = ProtocolClient(self.transport)
        self.motion = MotionCommands(
            self.client,
            self.store.load_run_config(),
            settle_s=self.settings.serial.init_settle_s,
        )
        self.runner = RunEngine(
            self.motion,
            calibration=self._load_calibration(),
            clock=self.clock,
            status_cb=self._log,
        )
        self.calibration = CalibrationSession()

        self._console: Deque[str] = deque(maxlen=self.settings.serial.console_history)
        self._console_lock = threading.Lock()
        self._poll_thread: Optional[threading.Thread] = None
        self._poll_stop: Optional[threading.Event] = None

        self.client.add_traffic_listener(self._on_traffic)
        self.transport.add_close_listener(self._on_closed)

    def _load_calibration(self) -> Optional[CalibrationData]:
        data = self.store.load_calibration()
        if data is not None and is_degenerate(data):
            logger.warning("Saved calibration is collinear, ignoring it")
            return None
        return data

    # ------------------------------------------------------------------
    # Console log
    # ------------------------------------------------------------------
    def _log(self, message: str) -> None:
        timestamp = time.strftime("%H:%M:%S")
        with self._console_lock:
            self._console.append(f"[{timestamp}] {message}")

    def _on_traffic(self, direction: str, text: str) -> None:
        self._log(f"{direction} {text}")

    def _on_closed(self, reason: Optional[str]) -> None:
        self._stop_polling()
        self._log(f"Disconnected: {reason}" if reason else "Disconnected")

    def console_lines(self, limit: Optional[int] = None) -> List[str]:
        with self._console_lock:
            lines = list(self._console)
        return lines[-limit:] if limit else lines

    # ------------------------------------------------------------------
    # Device lifecycle
    # ------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    def enumerate_ports(self) -> List[str]:
        if isinstance(self.transport, SerialTransport):
            return self.transport.enumerate_ports()
        return ["simulator"]

    def connect(self, port: Optional[str] = None) -> None:
        self.transport.open(port)
        self._log(f"Connected to {port or self.settings.serial.port or 'device'}")
        try:
            self.motion.init_machine()
        except GRBLError:
            self.disconnect()
            raise
        self._start_polling()

    def disconnect(self) -> None:
        self._stop_polling()
        self.transport.close()

    def _start_polling(self) -> None:
        self._stop_polling()
        stop = threading.Event()
        thread = threading.Thread(
            target=self._poll_loop, args=(stop,), name="wellrunner-status", daemon=True
        )
        self._poll_stop = stop
        self._poll_thread = thread
        thread.start()

    def _stop_polling(self) -> None:
        stop, self._poll_stop = self._poll_stop, None
        thread, self._poll_thread = self._poll_thread, None
        if stop is not None:
            stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.settings.serial.status_interval_s + 1.0)

    def _poll_loop(self, stop: threading.Event) -> None:
        interval = self.settings.serial.status_interval_s
        while not stop.wait(interval):
            self.client.request_status()

    # ------------------------------------------------------------------
    # Manual device helpers
    # ------------------------------------------------------------------
    def _manual(self, label: str, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except GRBLError as exc:
            self._log(f"[{label}] Error: {exc}")
            raise

    def send_console(self, command: str) -> str:
        return self._manual("console", lambda: self.client.send(command))

    def jog(self, dx: float, dy: float) -> None:
        self._manual("jog", lambda: self.motion.jog(dx, dy))

    def pen_up(self) -> None:
        self._manual("pen", self.motion.pen_up)

    def pen_down(self) -> None:
        self._manual("pen", self.motion.pen_down)

    def home(self) -> None:
        self._manual("home", self.motion.home)

    def unlock(self) -> None:
        self._manual("unlock", self.motion.unlock)

    def set_origin(self) -> None:
        self._manual("origin", self.motion.set_origin)

    def feed_hold(self) -> None:
        self._manual("hold", self.motion.feed_hold)

    def cycle_resume(self) -> None:
        self._manual("resume", self.motion.cycle_resume)

    def soft_reset(self) -> None:
        self.runner.stop()
        self._manual("reset", self.motion.soft_reset)

    def goto_well(self, well: str) -> Position:
        """Raise the tip and travel above ``well`` without lowering."""

        cal = self._require_calibration()
        row, col = parse_well_id(well)
        pos = well_position(cal, row, col)

        def _go() -> None:
            self.motion.pen_up()
            self.motion.linear_move(pos)

        self._manual("goto", _go)
        return pos

    # ------------------------------------------------------------------
    # Calibration and configuration
    # ------------------------------------------------------------------
    @property
    def machine_position(self) -> Optional[Position]:
        mpos = self.client.machine_position
        if mpos is None:
            return None
        return Position(mpos[0], mpos[1])

    def _require_calibration(self) -> CalibrationData:
        cal = self.runner.calibration
        if cal is None:
            raise CalibrationError("No calibration data")
        return cal

    def begin_calibration(self) -> str:
        step = self.calibration.begin()
        self._log(f"[cal] Jog to {step.upper()} and capture")
        return step

    def capture_calibration(self) -> Optional[CalibrationData]:
        pos = self.machine_position
        if pos is None:
            raise CalibrationError("No machine position reported yet")
        step = self.calibration.next_step
        data = self.calibration.capture(pos)
        self._log(f"[cal] Captured {(step or '').upper()} at ({pos.x:.1f}, {pos.y:.1f})")
        if data is not None:
            self.set_calibration(data)
        return data

    def set_calibration(self, data: CalibrationData) -> None:
        validate(data)
        self.runner.calibration = data
        self.store.save_calibration(data)
        self._log("[cal] Calibration saved")

    def update_run_config(self, **values: Any) -> RunConfig:
        known = {f.name for f in fields(RunConfig)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config field(s): {', '.join(sorted(unknown))}")
        config = replace(self.motion.config, **{k: float(v) for k, v in values.items()})
        self.motion.config = config
        self.store.save_run_config(config)
        return config

    def plate_positions(self) -> Dict[str, Any]:
        cal = self._require_calibration()
        return {
            "wells": {w: p.to_dict() for w, p in all_well_positions(cal).items()},
            "drip_off": drip_off_position(cal).to_dict(),
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        pos = self.machine_position
        last = self.client.last_status
        cal = self.runner.calibration
        return {
            "connected": self.is_connected,
            "device_state": last.state if last else None,
            "machine_position": pos.to_dict() if pos else None,
            "pen_down": self.motion.pen_is_down,
            "pending_commands": self.client.pending_count,
            "calibration": cal.to_dict() if cal else None,
            "calibrating": self.calibration.describe(),
            "config": self.motion.config.to_dict(),
            "run": self.runner.snapshot(),
        }

    def close(self) -> None:
        self.runner.stop()
        if self.is_connected:
            self.disconnect()


__all__ = ["WellController"]
