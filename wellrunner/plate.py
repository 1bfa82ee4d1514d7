"""48-well plate model.

The plate is addressed by row letter (A-F) and column number (1-8).  Machine
coordinates for every well are derived from three calibrated corner wells
(A1, A8, F1) using bilinear interpolation.  The fourth corner is not measured:
it is derived as ``F8 = F1 + (A8 - A1)``, so the grid is treated as a
parallelogram rather than a perfect rectangle.
"""
from __future__ import annotations

from enum import Enum
from typing import Dict, List, NamedTuple, Tuple

from .config import CalibrationData, Position

PLATE_ROWS = 6
PLATE_COLS = 8
ROW_LABELS = "ABCDEF"

WellId = str


class WellState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    SKIPPED = "skipped"


class WellStep(NamedTuple):
    well_id: WellId
    row: int
    col: int


# ---------------------------------------------------------------------------
# Well identifiers
# ---------------------------------------------------------------------------


def well_id(row: int, col: int) -> WellId:
    if not (0 <= row < PLATE_ROWS and 0 <= col < PLATE_COLS):
        raise ValueError(f"Well index out of range: row={row}, col={col}")
    return f"{ROW_LABELS[row]}{col + 1}"


def parse_well_id(value: str) -> Tuple[int, int]:
    """Return ``(row, col)`` indices for a well ID such as ``"B3"``."""

    text = value.strip().upper()
    if len(text) < 2 or text[0] not in ROW_LABELS or not text[1:].isdigit():
        raise ValueError(f"Invalid well ID: {value!r}")
    row = ROW_LABELS.index(text[0])
    col = int(text[1:]) - 1
    if not 0 <= col < PLATE_COLS:
        raise ValueError(f"Invalid well ID: {value!r}")
    return row, col


def all_well_ids() -> List[WellId]:
    return [well_id(r, c) for r in range(PLATE_ROWS) for c in range(PLATE_COLS)]


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


def _derived_corner(cal: CalibrationData) -> Position:
    return cal.f1 + (cal.a8 - cal.a1)


def _blend(cal: CalibrationData, row_frac: float, col_frac: float) -> Position:
    f8 = _derived_corner(cal)
    w_a1 = (1 - row_frac) * (1 - col_frac)
    w_a8 = (1 - row_frac) * col_frac
    w_f1 = row_frac * (1 - col_frac)
    w_f8 = row_frac * col_frac
    x = w_a1 * cal.a1.x + w_a8 * cal.a8.x + w_f1 * cal.f1.x + w_f8 * f8.x
    y = w_a1 * cal.a1.y + w_a8 * cal.a8.y + w_f1 * cal.f1.y + w_f8 * f8.y
    return Position(x, y)


def well_position(cal: CalibrationData, row: int, col: int) -> Position:
    """Machine position of the well at ``row``/``col`` (zero based).

    Rows run along ``A1 -> F1`` and columns along ``A1 -> A8``.
    """

    row_frac = row / (PLATE_ROWS - 1)
    col_frac = col / (PLATE_COLS - 1)
    return _blend(cal, row_frac, col_frac)


def drip_off_position(cal: CalibrationData) -> Position:
    """Parking position one column past column 8, centred between rows.

    After a run the tip waits here so residual liquid does not drop into the
    last processed well.
    """

    return _blend(cal, 0.5, PLATE_COLS / (PLATE_COLS - 1))


def traversal_order() -> List[WellStep]:
    """Column-major order: A1, B1, ... F1, A2, ... F8."""

    return [
        WellStep(well_id(r, c), r, c)
        for c in range(PLATE_COLS)
        for r in range(PLATE_ROWS)
    ]


def all_well_positions(cal: CalibrationData) -> Dict[WellId, Position]:
    return {
        well_id(r, c): well_position(cal, r, c)
        for r in range(PLATE_ROWS)
        for c in range(PLATE_COLS)
    }


def is_degenerate(cal: CalibrationData, tol_mm2: float = 1e-6) -> bool:
    """True when A1, A8 and F1 are (nearly) collinear."""

    u = cal.a8 - cal.a1
    v = cal.f1 - cal.a1
    return abs(u.x * v.y - u.y * v.x) <= tol_mm2


__all__ = [
    "PLATE_ROWS",
    "PLATE_COLS",
    "ROW_LABELS",
    "WellId",
    "WellState",
    "WellStep",
    "well_id",
    "parse_well_id",
    "all_well_ids",
    "well_position",
    "drip_off_position",
    "traversal_order",
    "all_well_positions",
    "is_degenerate",
]
