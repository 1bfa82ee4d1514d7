"""Shared fixtures: a hand-driven transport and a deterministic clock."""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterable, List, Optional

import pytest

from wellrunner.config import CalibrationData, Position
from wellrunner.device.transport import Transport
from wellrunner.errors import AlreadyConnected, NotConnected
from wellrunner.runner import Clock


class ScriptedTransport(Transport):
    """Records every write; incoming lines are injected with :meth:`feed`.

    With ``auto_ok=True`` each queued line is answered synchronously with
    ``ok`` (or ``error:9`` for lines listed in ``fail_on``).
    """

    def __init__(self, *, auto_ok: bool = False, fail_on: Iterable[str] = ()) -> None:
        super().__init__()
        self.auto_ok = auto_ok
        self.fail_on = set(fail_on)
        self.written: List[bytes] = []
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self, port: Optional[str] = None) -> None:
        if self._open:
            raise AlreadyConnected("already open")
        self._open = True

    def close(self) -> None:
        self._open = False
        self._emit_close(None)

    def write(self, data: bytes) -> None:
        if not self._open:
            raise NotConnected("closed")
        self.written.append(data)
        if self.auto_ok and data.endswith(b"\n"):
            line = data.decode("ascii").strip()
            self._emit_line("error:9" if line in self.fail_on else "ok")

    def feed(self, line: str) -> None:
        self._emit_line(line)

    @property
    def lines(self) -> List[str]:
        return [d.decode("ascii").rstrip("\n") for d in self.written if d.endswith(b"\n")]


class FakeClock(Clock):
    """Ticks without wall-clock delay; ``on_tick(n)`` runs inside each tick."""

    def __init__(self, on_tick: Optional[Callable[[int], None]] = None, delay: float = 0.0) -> None:
        self.ticks = 0
        self.on_tick = on_tick
        self.delay = delay

    def wait(self, event: threading.Event, timeout: float) -> bool:
        self.ticks += 1
        if self.on_tick is not None:
            self.on_tick(self.ticks)
        if self.delay:
            event.wait(self.delay)
        return event.is_set()


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture()
def calibration() -> CalibrationData:
    return CalibrationData(
        a1=Position(0.0, 0.0),
        a8=Position(70.0, 0.0),
        f1=Position(0.0, 50.0),
    )


@pytest.fixture()
def transport() -> ScriptedTransport:
    return ScriptedTransport()
