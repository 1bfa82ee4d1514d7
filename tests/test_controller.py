"""Tests for the controller facade against the simulated device."""

from __future__ import annotations

from pathlib import Path

import pytest

from wellrunner.config import AppSettings, CalibrationData, Position, SerialSettings
from wellrunner.controller import WellController
from wellrunner.device import SimulatedGrbl
from wellrunner.errors import AlreadyConnected, CalibrationError, NotConnected, ProtocolError
from wellrunner.runner import RunState

from .conftest import wait_for


def _settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        serial=SerialSettings(init_settle_s=0.0, status_interval_s=0.02),
        data_dir=tmp_path,
        simulate=True,
    )


@pytest.fixture()
def controller(tmp_path: Path):
    ctl = WellController(_settings(tmp_path))
    ctl.connect()
    yield ctl
    ctl.close()


def _settle_at(ctl: WellController, x: float, y: float) -> None:
    assert wait_for(lambda: ctl.machine_position == Position(x, y))


class TestConnection:
    def test_connect_initialises(self, controller: WellController) -> None:
        sim = controller.transport
        assert isinstance(sim, SimulatedGrbl)
        assert controller.is_connected
        assert sim.commands[:2] == ["G90", "G21"]

    def test_second_connect_fails(self, controller: WellController) -> None:
        with pytest.raises(AlreadyConnected):
            controller.connect()
        assert controller.is_connected

    def test_status_polling_tracks_position(self, controller: WellController) -> None:
        controller.jog(5.0, -2.0)
        _settle_at(controller, 5.0, -2.0)
        assert controller.status()["device_state"] == "Idle"

    def test_disconnect(self, controller: WellController) -> None:
        controller.disconnect()
        assert not controller.is_connected
        with pytest.raises(NotConnected):
            controller.home()
        assert any("Disconnected" in line for line in controller.console_lines())


class TestManual:
    def test_console_round_trip(self, controller: WellController) -> None:
        assert controller.send_console("G0 X1.000 Y1.000") == "ok"
        lines = controller.console_lines()
        assert any(line.endswith("> G0 X1.000 Y1.000") for line in lines)
        assert any(line.endswith("< ok") for line in lines)

    def test_console_error_logged_and_raised(self, controller: WellController) -> None:
        with pytest.raises(ProtocolError):
            controller.send_console("G38.2 Z-10")
        assert any("[console] Error: error:20" in line for line in controller.console_lines())
        assert controller.runner.state is RunState.IDLE

    def test_pen_flag(self, controller: WellController) -> None:
        controller.pen_down()
        assert controller.status()["pen_down"] is True
        controller.pen_up()
        assert controller.status()["pen_down"] is False

    def test_goto_well_needs_calibration(self, controller: WellController) -> None:
        with pytest.raises(CalibrationError):
            controller.goto_well("A1")


class TestCalibration:
    def test_capture_flow_persists(self, controller: WellController, tmp_path: Path) -> None:
        controller.begin_calibration()
        _settle_at(controller, 0.0, 0.0)
        assert controller.capture_calibration() is None

        controller.jog(70.0, 0.0)
        _settle_at(controller, 70.0, 0.0)
        assert controller.capture_calibration() is None

        controller.jog(-70.0, 50.0)
        _settle_at(controller, 0.0, 50.0)
        data = controller.capture_calibration()

        expected = CalibrationData(Position(0, 0), Position(70, 0), Position(0, 50))
        assert data == expected
        assert controller.runner.calibration == expected

        reloaded = WellController(_settings(tmp_path))
        assert reloaded.runner.calibration == expected

    def test_goto_well(self, controller: WellController, calibration: CalibrationData) -> None:
        controller.set_calibration(calibration)
        pos = controller.goto_well("D5")
        assert (pos.x, pos.y) == pytest.approx((40.0, 30.0))
        _settle_at(controller, 40.0, 30.0)
        assert controller.motion.pen_is_down is False

    def test_collinear_set_rejected(self, controller: WellController) -> None:
        bad = CalibrationData(Position(0, 0), Position(10, 10), Position(20, 20))
        with pytest.raises(CalibrationError):
            controller.set_calibration(bad)
        assert controller.runner.calibration is None

    def test_plate_positions(self, controller: WellController, calibration: CalibrationData) -> None:
        controller.set_calibration(calibration)
        plate = controller.plate_positions()
        assert len(plate["wells"]) == 48
        assert plate["drip_off"] == pytest.approx({"x": 80.0, "y": 25.0})


class TestConfig:
    def test_update_persists(self, controller: WellController, tmp_path: Path) -> None:
        cfg = controller.update_run_config(dwell_time_sec=5, pen_down_value="6.5")
        assert cfg.dwell_time_sec == 5
        assert controller.motion.config.pen_down_value == 6.5
        reloaded = WellController(_settings(tmp_path))
        assert reloaded.motion.config.dwell_time_sec == 5

    def test_unknown_field(self, controller: WellController) -> None:
        with pytest.raises(ValueError):
            controller.update_run_config(speed=10)


class TestRun:
    def test_run_through_controller(self, controller: WellController, calibration: CalibrationData) -> None:
        controller.set_calibration(calibration)
        controller.update_run_config(dwell_time_sec=0)
        controller.runner.start()
        assert controller.runner.wait(20)
        status = controller.status()
        assert status["run"]["run_state"] == "complete"
        assert status["run"]["progress"] == {"done": 48, "total": 48}
