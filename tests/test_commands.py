"""Tests for the motion command layer."""

from __future__ import annotations

import threading

import pytest

from wellrunner.commands import MotionCommands
from wellrunner.config import Position, RunConfig
from wellrunner.errors import Cancelled, ProtocolError
from wellrunner.grbl import ProtocolClient

from .conftest import ScriptedTransport


def _motion(transport: ScriptedTransport, **kwargs) -> MotionCommands:
    return MotionCommands(ProtocolClient(transport), RunConfig(), **kwargs)


class TestMoves:
    def test_rapid_move_format(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        _motion(t).rapid_move(Position(12.5, 4.0))
        assert t.lines == ["G0 X12.500 Y4.000"]

    def test_linear_move_uses_feed(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        motion.linear_move(Position(1.0, -2.25), 1500)
        motion.linear_move(Position(0.0, 0.0))
        assert t.lines == ["G1 X1.000 Y-2.250 F1500", "G1 X0.000 Y0.000 F3000"]

    def test_jog_sequence(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        _motion(t).jog(1.0, -2.0)
        assert t.lines == ["G91", "G0 X1.000 Y-2.000", "G90"]

    def test_jog_restores_absolute_on_failure(self) -> None:
        t = ScriptedTransport(auto_ok=True, fail_on={"G0 X5.000 Y0.000"})
        with pytest.raises(ProtocolError):
            _motion(t).jog(5.0, 0.0)
        assert t.lines == ["G91", "G0 X5.000 Y0.000", "G90"]


class TestPen:
    def test_pen_commands(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        motion.pen_down()
        motion.pen_up()
        assert t.lines == ["G1 Z7.000 F300", "G0 Z0.000"]

    def test_flag_changes_after_ack(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        changes = []
        motion.add_pen_listener(changes.append)
        motion.pen_down()
        assert motion.pen_is_down
        motion.pen_up()
        assert not motion.pen_is_down
        assert changes == [True, False]

    def test_flag_unchanged_on_error(self) -> None:
        t = ScriptedTransport(auto_ok=True, fail_on={"G1 Z7.000 F300"})
        motion = _motion(t)
        with pytest.raises(ProtocolError):
            motion.pen_down()
        assert not motion.pen_is_down

    def test_config_values_used(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = MotionCommands(
            ProtocolClient(t),
            RunConfig(pen_up_value=-1.5, pen_down_value=4.25, z_feed_rate=150.5),
        )
        motion.pen_up()
        motion.pen_down()
        assert t.lines == ["G0 Z-1.500", "G1 Z4.250 F150.500"]


class TestCompound:
    def test_move_to_well_order(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        _motion(t).move_to_well(Position(40.0, 30.0))
        assert t.lines == ["G0 Z0.000", "G1 X40.000 Y30.000 F3000", "G1 Z7.000 F300"]

    def test_move_to_well_stops_before_lowering(self) -> None:
        t = ScriptedTransport(auto_ok=True, fail_on={"G1 X40.000 Y30.000 F3000"})
        motion = _motion(t)
        with pytest.raises(ProtocolError):
            motion.move_to_well(Position(40.0, 30.0))
        assert "G1 Z7.000 F300" not in t.lines
        assert not motion.pen_is_down

    def test_init_machine(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        slept = []
        _motion(t, sleep=slept.append).init_machine()
        assert slept == [1.5]
        assert t.lines == ["G90", "G21"]

    def test_fixed_commands(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        motion.home()
        motion.unlock()
        motion.set_origin()
        motion.set_absolute()
        motion.set_millimeters()
        assert t.lines == ["$H", "$X", "G10 L20 P1 X0 Y0", "G90", "G21"]


class TestBound:
    def test_bound_copy_uses_its_config(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        bound = motion.bind(RunConfig(pen_down_value=3, feed_rate=800), threading.Event())
        motion.config = RunConfig(pen_down_value=9, feed_rate=100)
        bound.move_to_well(Position(1.0, 2.0))
        assert t.lines == ["G0 Z0.000", "G1 X1.000 Y2.000 F800", "G1 Z3.000 F300"]

    def test_bound_copy_shares_pen_flag(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        changes = []
        motion.add_pen_listener(changes.append)
        motion.bind(RunConfig(), threading.Event()).pen_down()
        assert motion.pen_is_down
        assert changes == [True]

    def test_nothing_sent_after_cancel(self) -> None:
        t = ScriptedTransport(auto_ok=True)
        motion = _motion(t)
        cancel = threading.Event()
        bound = motion.bind(RunConfig(), cancel)
        bound.pen_up()
        cancel.set()
        with pytest.raises(Cancelled):
            bound.linear_move(Position(5.0, 5.0))
        motion.home()
        assert t.lines == ["G0 Z0.000", "$H"]


class TestRealtime:
    def test_hold_and_resume(self) -> None:
        t = ScriptedTransport()
        motion = _motion(t)
        motion.feed_hold()
        motion.cycle_resume()
        assert t.written == [b"!", b"~"]

    def test_soft_reset_clears_queue(self) -> None:
        t = ScriptedTransport()
        client = ProtocolClient(t)
        motion = MotionCommands(client)
        pending = client.submit("G0 X1.000 Y1.000")
        motion.soft_reset()
        with pytest.raises(Cancelled):
            pending.result(timeout=1)
        assert t.written[-1] == b"\x18"
