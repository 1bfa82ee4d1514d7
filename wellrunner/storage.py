"""Persist calibration and run configuration as JSON files."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Union

from .config import CalibrationData, RunConfig

logger = logging.getLogger(__name__)

CALIBRATION_FILE = "calibration.json"
CONFIG_FILE = "run_config.json"


class StateStore:
    """Read and write the operator's saved state in one directory."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    @property
    def calibration_path(self) -> Path:
        return self.directory / CALIBRATION_FILE

    @property
    def config_path(self) -> Path:
        return self.directory / CONFIG_FILE

    def _write(self, path: Path, payload: dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(path)

    def save_calibration(self, data: CalibrationData) -> None:
        self._write(self.calibration_path, data.to_dict())
        logger.info("Calibration saved to %s", self.calibration_path)

    def load_calibration(self) -> Optional[CalibrationData]:
        path = self.calibration_path
        if not path.exists():
            return None
        try:
            return CalibrationData.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable calibration %s: %s", path, exc)
            return None

    def save_run_config(self, config: RunConfig) -> None:
        self._write(self.config_path, config.to_dict())

    def load_run_config(self) -> RunConfig:
        """Saved values merged over the defaults; defaults if unreadable."""

        path = self.config_path
        if not path.exists():
            return RunConfig()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            return RunConfig.from_dict(data)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Using default run config, %s is unreadable: %s", path, exc)
            return RunConfig()


__all__ = ["StateStore"]
