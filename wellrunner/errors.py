"""Exception hierarchy shared by the transport, protocol and run layers."""

from __future__ import annotations


class GRBLError(RuntimeError):
    """Base class for device communication failures."""


class NotConnected(GRBLError):
    """Raised when a command is sent without an open transport."""


class AlreadyConnected(GRBLError):
    """Raised when connecting while another connection is active."""


class ProtocolError(GRBLError):
    """The device answered a command with an ``error`` line."""

    def __init__(self, line: str, command: str = "") -> None:
        self.line = line
        self.command = command
        message = f"{line} (command: {command})" if command else line
        super().__init__(message)


class Cancelled(GRBLError):
    """The command queue was cleared while the command was pending."""


class MalformedReport(GRBLError):
    """A status report could not be parsed."""


class RunStateError(RuntimeError):
    """Raised for run engine transitions that are not allowed."""


class CalibrationError(ValueError):
    """Raised for out of sequence captures or unusable calibrations."""


__all__ = [
    "GRBLError",
    "NotConnected",
    "AlreadyConnected",
    "ProtocolError",
    "Cancelled",
    "MalformedReport",
    "RunStateError",
    "CalibrationError",
]
