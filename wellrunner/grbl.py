"""GRBL protocol layer.

Commands are written one at a time: the next queued line is only transmitted
after the device answered the previous one with ``ok`` or ``error``.  Callers
may submit from any thread; every submitted command resolves exactly once,
with ``"ok"``, :class:`ProtocolError`, :class:`NotConnected` or
:class:`Cancelled`.

Status reports (``<Idle|MPos:...>``) arrive unsolicited in between
acknowledgements.  They are recognised first and never consumed as the answer
to a queued command.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Tuple

from .device.transport import Transport
from .errors import Cancelled, GRBLError, MalformedReport, NotConnected, ProtocolError

logger = logging.getLogger(__name__)

XYZ = Tuple[float, float, float]

STATUS_QUERY = "?"
FEED_HOLD = "!"
CYCLE_START = "~"
SOFT_RESET = "\x18"

BANNER_PREFIX = "Grbl"
OK = "ok"
ERROR_PREFIX = "error"


@dataclass(frozen=True)
class GrblStatus:
    state: str
    mpos: XYZ = (0.0, 0.0, 0.0)
    has_position: bool = False
    raw: str = ""


@dataclass
class QueuedCommand:
    command: str
    future: "Future[str]" = field(default_factory=Future)


StatusListener = Callable[[GrblStatus], None]
TrafficListener = Callable[[str, str], None]


def _parse_axes(text: str) -> XYZ:
    values: List[float] = []
    for part in text.split(",")[:3]:
        try:
            values.append(float(part))
        except ValueError:
            values.append(0.0)
    while len(values) < 3:
        values.append(0.0)
    return values[0], values[1], values[2]


def parse_status_report(line: str) -> GrblStatus:
    """Parse ``<State|MPos:x,y,z|...>``.

    Missing or unparseable coordinates default to ``0``; a report without an
    ``MPos`` field parses with ``has_position`` set to False.
    """

    text = line.strip()
    if len(text) < 2 or not (text.startswith("<") and text.endswith(">")):
        raise MalformedReport(f"Not a status report: {line!r}")
    fields = text[1:-1].split("|")
    state = fields[0]
    for part in fields[1:]:
        if part.startswith("MPos:"):
            return GrblStatus(state=state, mpos=_parse_axes(part[5:]), has_position=True, raw=text)
    return GrblStatus(state=state, raw=text)


class ProtocolClient:
    """Ordered, acknowledged command channel to one GRBL device."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self._lock = threading.Lock()
        self._queue: Deque[QueuedCommand] = deque()
        self._in_flight: Optional[QueuedCommand] = None
        self._status_listeners: List[StatusListener] = []
        self._traffic_listeners: List[TrafficListener] = []
        self.last_status: Optional[GrblStatus] = None
        self.machine_position: Optional[XYZ] = None

        transport.add_line_listener(self.handle_line)
        transport.add_close_listener(self._on_transport_closed)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_traffic_listener(self, listener: TrafficListener) -> None:
        """``listener(direction, text)`` with direction ``">"`` or ``"<"``."""

        self._traffic_listeners.append(listener)

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue) + (1 if self._in_flight is not None else 0)

    @property
    def in_flight(self) -> Optional[str]:
        with self._lock:
            return self._in_flight.command if self._in_flight else None

    # ------------------------------------------------------------------
    # Queued commands
    # ------------------------------------------------------------------
    def submit(self, command: str, cancel: Optional[threading.Event] = None) -> "Future[str]":
        """Queue ``command`` and return a future for its acknowledgement.

        When ``cancel`` is already set the command is refused with
        :class:`Cancelled` instead of being queued.  The check and the append
        happen under the queue lock, so a caller that sets ``cancel`` and then
        calls :meth:`clear_queue` cannot race a late submission past it.
        """

        command = command.strip()
        if not command or "\n" in command or "\r" in command:
            raise ValueError(f"Invalid command line: {command!r}")
        command.encode("ascii")
        item = QueuedCommand(command)
        with self._lock:
            refused = cancel is not None and cancel.is_set()
            if not refused:
                self._queue.append(item)
        if refused:
            self._reject(item, Cancelled(f"Not sent, run cancelled: {command}"))
            return item.future
        self._dispatch_next()
        return item.future

    def send(
        self,
        command: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """Queue ``command`` and block until the device answered it."""

        return self.submit(command, cancel).result(timeout=timeout)

    def clear_queue(self) -> int:
        """Fail every queued and in-flight command with :class:`Cancelled`."""

        with self._lock:
            items = list(self._queue)
            self._queue.clear()
            if self._in_flight is not None:
                items.insert(0, self._in_flight)
                self._in_flight = None
        for item in items:
            self._reject(item, Cancelled(f"Queue cleared: {item.command}"))
        if items:
            logger.info("Cleared %d pending command(s)", len(items))
        return len(items)

    def _dispatch_next(self) -> None:
        while True:
            with self._lock:
                if self._in_flight is not None or not self._queue:
                    return
                item = self._queue.popleft()
                connected = self.transport.is_open
                if connected:
                    self._in_flight = item
            if not connected:
                self._reject(item, NotConnected(f"Device is not connected: {item.command}"))
                continue
            self._notify_traffic(">", item.command)
            try:
                self.transport.write(f"{item.command}\n".encode("ascii"))
            except (GRBLError, OSError) as exc:
                with self._lock:
                    if self._in_flight is item:
                        self._in_flight = None
                self._reject(item, NotConnected(f"Write failed for {item.command}: {exc}"))
                continue
            return

    # ------------------------------------------------------------------
    # Realtime commands
    # ------------------------------------------------------------------
    def send_realtime(self, char: str) -> None:
        """Write a single byte immediately, bypassing the queue."""

        if len(char) != 1:
            raise ValueError(f"Realtime commands are a single byte, got {char!r}")
        if not self.transport.is_open:
            raise NotConnected("Device is not connected")
        self.transport.write(char.encode("latin-1"))

    def request_status(self) -> None:
        try:
            self.send_realtime(STATUS_QUERY)
        except (GRBLError, OSError) as exc:
            logger.debug("Status request skipped: %s", exc)

    # ------------------------------------------------------------------
    # Incoming lines
    # ------------------------------------------------------------------
    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return

        if line.startswith("<"):
            try:
                status = parse_status_report(line)
            except MalformedReport:
                logger.debug("Dropping malformed status report %r", line)
                return
            self._publish_status(status)
            return

        self._notify_traffic("<", line)

        if line.startswith(BANNER_PREFIX):
            logger.info("Controller ready: %s", line)
            return

        with self._lock:
            item = self._in_flight
            if item is None:
                logger.debug("No command in flight, dropping %r", line)
                return
            if line != OK and not line.startswith(ERROR_PREFIX):
                logger.info("Device message: %s", line)
                return
            self._in_flight = None

        if line == OK:
            if not item.future.done():
                item.future.set_result(OK)
        else:
            logger.warning("Command %r failed: %s", item.command, line)
            self._reject(item, ProtocolError(line, item.command))
        self._dispatch_next()

    def _publish_status(self, status: GrblStatus) -> None:
        self.last_status = status
        if status.has_position:
            self.machine_position = status.mpos
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:  # pragma: no cover - runtime safety
                logger.exception("Status listener failed")

    def _notify_traffic(self, direction: str, text: str) -> None:
        logger.debug("%s %s", direction, text)
        for listener in list(self._traffic_listeners):
            try:
                listener(direction, text)
            except Exception:  # pragma: no cover - runtime safety
                logger.exception("Traffic listener failed")

    def _on_transport_closed(self, reason: Optional[str]) -> None:
        with self._lock:
            items = list(self._queue)
            self._queue.clear()
            if self._in_flight is not None:
                items.insert(0, self._in_flight)
                self._in_flight = None
        detail = f"Connection closed: {reason}" if reason else "Connection closed"
        for item in items:
            self._reject(item, NotConnected(f"{detail} ({item.command})"))

    @staticmethod
    def _reject(item: QueuedCommand, exc: BaseException) -> None:
        if not item.future.done():
            item.future.set_exception(exc)


__all__ = [
    "GrblStatus",
    "QueuedCommand",
    "ProtocolClient",
    "parse_status_report",
    "STATUS_QUERY",
    "FEED_HOLD",
    "CYCLE_START",
    "SOFT_RESET",
]
