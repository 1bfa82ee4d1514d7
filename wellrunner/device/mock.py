"""In-memory GRBL simulation used for development and unit tests."""
from __future__ import annotations

import queue
import re
import threading
from typing import List, Optional, Tuple

from ..errors import AlreadyConnected, NotConnected
from .transport import Transport

XYZ = Tuple[float, float, float]

BANNER = "Grbl 1.1h ['$' for help]"
REALTIME_BYTES = {b"?", b"!", b"~", b"\x18"}

_WORD = re.compile(r"([A-Z])\s*(-?\d+(?:\.\d*)?)")
_ACCEPTED = ("G0", "G1", "G4", "G10", "G21", "G90", "G91", "G92", "M3", "M5", "$H", "$X", "$$", "F")


class SimulatedGrbl(Transport):
    """Small GRBL mimic that answers on its own reader thread.

    Commands are answered with ``ok`` (or ``error:20`` for unsupported words)
    in the order they were written.  With ``auto_ack=False`` answers are held
    back until :meth:`release` is called, which lets tests observe a command
    while it is in flight.
    """

    def __init__(self, *, auto_ack: bool = True, fail_on: Optional[List[str]] = None) -> None:
        super().__init__()
        self.auto_ack = auto_ack
        self.fail_on = list(fail_on or [])
        self.position: XYZ = (0.0, 0.0, 0.0)
        self.relative = False
        self.state = "Idle"
        self.commands: List[str] = []
        self.realtime: List[bytes] = []
        self.path: List[XYZ] = []
        self._open = False
        self._inbox: "queue.Queue[Optional[str]]" = queue.Queue()
        self._held: List[str] = []
        self._held_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # Connection ---------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, port: Optional[str] = None) -> None:
        if self._open:
            raise AlreadyConnected("Simulator already open")
        self._open = True
        self._inbox = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="wellrunner-sim", daemon=True)
        self._thread.start()
        self._inbox.put(f"\x00{BANNER}")

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._inbox.put(None)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        self._emit_close(None)

    def drop(self, reason: str = "simulated cable pull") -> None:
        """Close from the device side, as a read error would."""

        self._open = False
        self._inbox.put(None)
        self._emit_close(reason)

    # I/O ----------------------------------------------------------------
    def write(self, data: bytes) -> None:
        if not self._open:
            raise NotConnected("Simulator is not open")
        if data in REALTIME_BYTES:
            self.realtime.append(data)
            self._inbox.put(f"\x01{data.decode('latin-1')}")
            return
        for raw in data.decode("ascii").splitlines():
            line = raw.strip()
            if line:
                self.commands.append(line)
                self._inbox.put(line)

    def release(self, count: Optional[int] = None) -> None:
        """Emit held acknowledgements (all of them when ``count`` is None)."""

        with self._held_lock:
            n = len(self._held) if count is None else min(count, len(self._held))
            answers, self._held = self._held[:n], self._held[n:]
        for answer in answers:
            self._emit_line(answer)

    @property
    def held(self) -> int:
        with self._held_lock:
            return len(self._held)

    def status_line(self) -> str:
        x, y, z = self.position
        return f"<{self.state}|MPos:{x:.3f},{y:.3f},{z:.3f}|FS:0,0>"

    # Simulation ---------------------------------------------------------
    def _run(self) -> None:
        while True:
            item = self._inbox.get()
            if item is None:
                return
            if item.startswith("\x00"):
                self._emit_line(item[1:])
                continue
            if item.startswith("\x01"):
                self._realtime(item[1:])
                continue
            answer = self._execute(item)
            if self.auto_ack:
                self._emit_line(answer)
            else:
                with self._held_lock:
                    self._held.append(answer)

    def _realtime(self, char: str) -> None:
        if char == "?":
            self._emit_line(self.status_line())
        elif char == "!":
            self.state = "Hold:0"
        elif char == "~":
            self.state = "Idle"
        elif char == "\x18":
            self.relative = False
            self.state = "Idle"
            self._emit_line(BANNER)

    def _execute(self, command: str) -> str:
        if command in self.fail_on:
            return "error:9"
        upper = command.upper()
        if not upper.startswith(_ACCEPTED):
            return "error:20"
        if upper == "G90":
            self.relative = False
        elif upper == "G91":
            self.relative = True
        elif upper == "$H":
            self._move_to((0.0, 0.0, 0.0))
        elif upper.startswith(("G10", "G92")):
            self._move_to((0.0, 0.0, self.position[2]))
        elif upper.startswith(("G0", "G1")):
            self._apply_motion(upper)
        return "ok"

    def _apply_motion(self, command: str) -> None:
        words = dict(_WORD.findall(command[2:]))
        x, y, z = self.position
        target = []
        for axis, current in (("X", x), ("Y", y), ("Z", z)):
            if axis not in words:
                target.append(current)
                continue
            value = float(words[axis])
            target.append(current + value if self.relative else value)
        self._move_to((target[0], target[1], target[2]))

    def _move_to(self, pos: XYZ) -> None:
        self.position = pos
        self.path.append(pos)


__all__ = ["SimulatedGrbl", "BANNER"]
