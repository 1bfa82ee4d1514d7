"""Three point calibration workflow.

The operator jogs to A1, A8 and F1 in turn and captures the machine position
at each one.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .config import CalibrationData, Position
from .errors import CalibrationError
from .plate import is_degenerate

logger = logging.getLogger(__name__)

STEPS = ("a1", "a8", "f1")
STEP_LABELS = {"a1": "A1 (top-left)", "a8": "A8 (top-right)", "f1": "F1 (bottom-left)"}


class CalibrationSession:
    def __init__(self) -> None:
        self._index: Optional[int] = None
        self._captured: Dict[str, Position] = {}

    @property
    def active(self) -> bool:
        return self._index is not None

    @property
    def next_step(self) -> Optional[str]:
        if self._index is None:
            return None
        return STEPS[self._index]

    @property
    def captured(self) -> Dict[str, Position]:
        return dict(self._captured)

    def begin(self) -> str:
        self._index = 0
        self._captured = {}
        return STEPS[0]

    def cancel(self) -> None:
        self._index = None
        self._captured = {}

    def capture(self, position: Position) -> Optional[CalibrationData]:
        """Record ``position`` for the current corner.

        Returns the finished :class:`CalibrationData` after the third capture
        and ``None`` before that.
        """

        if self._index is None:
            raise CalibrationError("Calibration has not been started")
        step = STEPS[self._index]
        self._captured[step] = position
        logger.info("Captured %s at (%.1f, %.1f)", step.upper(), position.x, position.y)
        self._index += 1
        if self._index < len(STEPS):
            return None

        data = CalibrationData(**self._captured)
        self._index = None
        self._captured = {}
        validate(data)
        return data

    def describe(self) -> Dict[str, object]:
        step = self.next_step
        captured: List[Dict[str, object]] = [
            {"well": name.upper(), **pos.to_dict()} for name, pos in self._captured.items()
        ]
        return {
            "active": self.active,
            "next": STEP_LABELS[step] if step else None,
            "captured": captured,
        }


def validate(data: CalibrationData) -> CalibrationData:
    if is_degenerate(data):
        raise CalibrationError("A1, A8 and F1 are collinear; recapture the corners")
    return data


__all__ = ["CalibrationSession", "STEPS", "validate"]
