"""Transport implementations used by the well runner."""

from .transport import Transport, SerialTransport
from .mock import SimulatedGrbl

__all__ = ["Transport", "SerialTransport", "SimulatedGrbl"]
