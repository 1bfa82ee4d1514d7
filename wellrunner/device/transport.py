"""Line oriented byte transports.

A transport owns the physical link.  Incoming bytes are split into lines on a
background reader and handed to every registered line listener in arrival
order; the protocol client is normally the first listener and the console log
the second.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

import serial
from serial.tools import list_ports

from ..config import SerialSettings
from ..errors import AlreadyConnected, GRBLError, NotConnected

logger = logging.getLogger(__name__)

LineListener = Callable[[str], None]
CloseListener = Callable[[Optional[str]], None]


class Transport:
    """Common listener plumbing for concrete transports."""

    def __init__(self) -> None:
        self._line_listeners: List[LineListener] = []
        self._close_listeners: List[CloseListener] = []
        self._listener_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def open(self, port: Optional[str] = None) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_line_listener(self, listener: LineListener) -> None:
        with self._listener_lock:
            self._line_listeners.append(listener)

    def remove_line_listener(self, listener: LineListener) -> None:
        with self._listener_lock:
            if listener in self._line_listeners:
                self._line_listeners.remove(listener)

    def add_close_listener(self, listener: CloseListener) -> None:
        with self._listener_lock:
            self._close_listeners.append(listener)

    def _emit_line(self, line: str) -> None:
        with self._listener_lock:
            listeners = list(self._line_listeners)
        for listener in listeners:
            try:
                listener(line)
            except Exception:  # pragma: no cover - runtime safety
                logger.exception("Line listener failed for %r", line)

    def _emit_close(self, reason: Optional[str]) -> None:
        with self._listener_lock:
            listeners = list(self._close_listeners)
        for listener in listeners:
            try:
                listener(reason)
            except Exception:  # pragma: no cover - runtime safety
                logger.exception("Close listener failed")


class SerialTransport(Transport):
    """pyserial backed transport with a background line reader."""

    def __init__(self, settings: Optional[SerialSettings] = None) -> None:
        super().__init__()
        self.settings = settings or SerialSettings()
        self._serial: Optional[serial.Serial] = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._port: Optional[str] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    @staticmethod
    def enumerate_ports() -> List[str]:
        return [p.device for p in list_ports.comports()]

    @property
    def is_open(self) -> bool:
        ser = self._serial
        return bool(ser and ser.is_open)

    @property
    def port(self) -> Optional[str]:
        return self._port

    def open(self, port: Optional[str] = None) -> None:
        port = port or self.settings.port
        if not port:
            raise GRBLError("No serial port given")
        with self._lock:
            if self.is_open:
                raise AlreadyConnected(f"Already connected to {self._port}")
            try:
                self._serial = serial.Serial(
                    port,
                    baudrate=self.settings.baudrate,
                    timeout=self.settings.read_timeout,
                )
            except serial.SerialException as exc:  # pragma: no cover - hardware dependent
                raise GRBLError(str(exc)) from exc
            self._port = port
            self._stop.clear()
            self._reader = threading.Thread(
                target=self._read_loop, name="wellrunner-serial-reader", daemon=True
            )
            self._reader.start()
        logger.info("Connected to %s at %d baud", port, self.settings.baudrate)

    def close(self) -> None:
        self._stop.set()
        with self._lock:
            ser, self._serial = self._serial, None
            port, self._port = self._port, None
            reader, self._reader = self._reader, None
        if ser is None:
            return
        try:
            ser.close()
        finally:
            if reader is not None and reader is not threading.current_thread():
                reader.join(timeout=self.settings.read_timeout + 1.0)
            logger.info("Disconnected from %s", port)
            self._emit_close(None)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------
    def write(self, data: bytes) -> None:
        ser = self._serial
        if ser is None or not ser.is_open:
            raise NotConnected("Device is not connected")
        with self._write_lock:
            try:
                ser.write(data)
                ser.flush()
            except (serial.SerialException, OSError) as exc:
                self._fail(exc)
                raise NotConnected(f"Write failed: {exc}") from exc

    def _read_loop(self) -> None:
        buffer = b""
        while not self._stop.is_set():
            ser = self._serial
            if ser is None:
                break
            try:
                chunk = ser.read(ser.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError) as exc:
                if not self._stop.is_set():
                    self._fail(exc)
                break
            if not chunk:
                continue
            buffer += chunk
            while b"\n" in buffer:
                raw, buffer = buffer.split(b"\n", 1)
                line = raw.decode("ascii", errors="ignore").replace("\r", "").strip()
                if line:
                    self._emit_line(line)

    def _fail(self, exc: BaseException) -> None:
        """Drop the port after an I/O error and tell listeners why."""

        logger.error("Serial I/O error: %s", exc)
        self._stop.set()
        with self._lock:
            ser, self._serial = self._serial, None
            self._port = None
            self._reader = None
        if ser is None:
            return
        try:
            ser.close()
        except (serial.SerialException, OSError):  # pragma: no cover - hardware dependent
            logger.debug("Ignoring error while closing failed port", exc_info=True)
        self._emit_close(str(exc))


__all__ = ["Transport", "SerialTransport", "LineListener", "CloseListener"]
