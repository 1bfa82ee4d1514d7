"""Configuration models for the well plate runner."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Position:
    """XY position in machine coordinates (mm)."""

    x: float
    y: float

    def __add__(self, other: "Position") -> "Position":
        return Position(self.x + other.x, self.y + other.y)

    def __sub__(self, other: "Position") -> "Position":
        return Position(self.x - other.x, self.y - other.y)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Position":
        return Position(float(data["x"]), float(data["y"]))


@dataclass(frozen=True)
class CalibrationData:
    """Machine positions captured for the three corner wells.

    ``a1`` is the grid origin, ``a8`` the far end of row A and ``f1`` the far
    end of column 1.
    """

    a1: Position
    a8: Position
    f1: Position

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {"a1": self.a1.to_dict(), "a8": self.a8.to_dict(), "f1": self.f1.to_dict()}

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "CalibrationData":
        return CalibrationData(
            a1=Position.from_dict(data["a1"]),
            a8=Position.from_dict(data["a8"]),
            f1=Position.from_dict(data["f1"]),
        )


@dataclass
class RunConfig:
    """Operator tunable values for an automated run."""

    dwell_time_sec: float = 120
    feed_rate: float = 3000  # mm/min for XY moves between wells
    z_feed_rate: float = 300  # mm/min for lowering the tip into a well
    pen_up_value: float = 0  # Z (mm) with the tip raised
    pen_down_value: float = 7  # Z (mm) with the tip in the well

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunConfig":
        """Build a config from ``data``, keeping defaults for missing keys."""

        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            values[key] = float(value)
        return cls(**values)


@dataclass
class SerialSettings:
    """Serial link and polling parameters."""

    port: Optional[str] = None
    baudrate: int = 115200
    read_timeout: float = 1.0
    init_settle_s: float = 1.5
    status_interval_s: float = 1.0
    console_history: int = 500


@dataclass
class AppSettings:
    """Aggregate settings for the controller and the HTTP server."""

    serial: SerialSettings = field(default_factory=SerialSettings)
    data_dir: Path = field(default_factory=lambda: Path.home() / ".wellrunner")
    simulate: bool = False


__all__ = [
    "Position",
    "CalibrationData",
    "RunConfig",
    "SerialSettings",
    "AppSettings",
]
