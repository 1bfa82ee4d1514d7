"""Top-level package for the well runner.

This package drives a GRBL gantry across the 48 wells of a 6x8 plate: an
ordered serial protocol client, the calibrated plate geometry and a run engine
with pause, resume and stop.
"""

from .config import CalibrationData, Position, RunConfig
from .controller import WellController
from .grbl import ProtocolClient
from .runner import RunEngine, RunState

__all__ = [
    "CalibrationData",
    "Position",
    "RunConfig",
    "WellController",
    "ProtocolClient",
    "RunEngine",
    "RunState",
]
