"""FastAPI application that exposes the well runner to a browser or script."""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from ..config import AppSettings, CalibrationData, SerialSettings
from ..controller import WellController
from ..errors import AlreadyConnected, CalibrationError, GRBLError, NotConnected, RunStateError


def settings_from_env() -> AppSettings:
    serial = SerialSettings(port=os.environ.get("WELLRUNNER_PORT") or None)
    settings = AppSettings(
        serial=serial,
        simulate=os.environ.get("WELLRUNNER_SIMULATE", "").lower() in ("1", "true", "yes"),
    )
    data_dir = os.environ.get("WELLRUNNER_DATA_DIR")
    if data_dir:
        settings.data_dir = Path(data_dir)
    return settings


def _call(action: Callable[..., Any], *args: Any) -> Any:
    try:
        return action(*args)
    except (NotConnected, AlreadyConnected, RunStateError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except GRBLError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except (CalibrationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _float(payload: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    try:
        value = payload[key] if default is None else payload.get(key, default)
        return float(value)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"{key} must be a number") from exc


def create_app(controller: Optional[WellController] = None) -> FastAPI:
    controller = controller or WellController(settings_from_env())

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        controller.close()

    app = FastAPI(title="Well Runner Control Server", lifespan=lifespan)
    app.state.controller = controller
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/status")
    def status() -> Dict[str, Any]:
        return controller.status()

    @app.get("/api/console")
    def console(limit: int = 200) -> Dict[str, Any]:
        return {"lines": controller.console_lines(limit)}

    # -- connection ----------------------------------------------------
    @app.get("/api/ports")
    def ports() -> Dict[str, Any]:
        return {"ports": controller.enumerate_ports()}

    @app.post("/api/connect")
    def connect(payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        port = (payload or {}).get("port")
        _call(controller.connect, port)
        return {"ok": True}

    @app.post("/api/disconnect")
    def disconnect() -> Dict[str, Any]:
        controller.disconnect()
        return {"ok": True}

    # -- manual control ------------------------------------------------
    @app.post("/api/console")
    def console_send(payload: Dict[str, Any]) -> Dict[str, Any]:
        command = str(payload.get("command", "")).strip()
        if not command:
            raise HTTPException(status_code=400, detail="command is required")
        return {"ok": True, "response": _call(controller.send_console, command)}

    @app.post("/api/device/jog")
    def device_jog(payload: Dict[str, Any]) -> Dict[str, Any]:
        _call(controller.jog, _float(payload, "dx", 0.0), _float(payload, "dy", 0.0))
        return {"ok": True}

    @app.post("/api/device/pen")
    def device_pen(payload: Dict[str, Any]) -> Dict[str, Any]:
        _call(controller.pen_down if payload.get("down") else controller.pen_up)
        return {"ok": True, "pen_down": controller.motion.pen_is_down}

    @app.post("/api/device/home")
    def device_home() -> Dict[str, Any]:
        _call(controller.home)
        return {"ok": True}

    @app.post("/api/device/unlock")
    def device_unlock() -> Dict[str, Any]:
        _call(controller.unlock)
        return {"ok": True}

    @app.post("/api/device/origin")
    def device_origin() -> Dict[str, Any]:
        _call(controller.set_origin)
        return {"ok": True}

    @app.post("/api/device/hold")
    def device_hold() -> Dict[str, Any]:
        _call(controller.feed_hold)
        return {"ok": True}

    @app.post("/api/device/cycle-resume")
    def device_cycle_resume() -> Dict[str, Any]:
        _call(controller.cycle_resume)
        return {"ok": True}

    @app.post("/api/device/reset")
    def device_reset() -> Dict[str, Any]:
        _call(controller.soft_reset)
        return {"ok": True}

    @app.post("/api/device/goto")
    def device_goto(payload: Dict[str, Any]) -> Dict[str, Any]:
        well = str(payload.get("well", ""))
        pos = _call(controller.goto_well, well)
        return {"ok": True, "position": pos.to_dict()}

    # -- calibration and configuration ---------------------------------
    @app.get("/api/calibration")
    def get_calibration() -> Dict[str, Any]:
        cal = controller.runner.calibration
        return {
            "calibration": cal.to_dict() if cal else None,
            "session": controller.calibration.describe(),
        }

    @app.put("/api/calibration")
    def put_calibration(payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = CalibrationData.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid calibration: {exc}") from exc
        _call(controller.set_calibration, data)
        return {"ok": True}

    @app.post("/api/calibration/begin")
    def calibration_begin() -> Dict[str, Any]:
        return {"ok": True, "next": controller.begin_calibration()}

    @app.post("/api/calibration/capture")
    def calibration_capture() -> Dict[str, Any]:
        data = _call(controller.capture_calibration)
        return {
            "ok": True,
            "complete": data is not None,
            "session": controller.calibration.describe(),
        }

    @app.get("/api/config")
    def get_config() -> Dict[str, Any]:
        return controller.motion.config.to_dict()

    @app.put("/api/config")
    def put_config(payload: Dict[str, Any]) -> Dict[str, Any]:
        config = _call(lambda: controller.update_run_config(**payload))
        return config.to_dict()

    @app.get("/api/plate")
    def plate() -> Dict[str, Any]:
        return _call(controller.plate_positions)

    # -- run control ---------------------------------------------------
    @app.post("/api/run/start")
    def run_start(payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        skip = (payload or {}).get("skip") or []
        _call(controller.runner.start, skip)
        return {"ok": True}

    @app.post("/api/run/pause")
    def run_pause() -> Dict[str, Any]:
        return {"ok": controller.runner.pause()}

    @app.post("/api/run/resume")
    def run_resume() -> Dict[str, Any]:
        return {"ok": controller.runner.resume()}

    @app.post("/api/run/stop")
    def run_stop() -> Dict[str, Any]:
        controller.runner.stop()
        return {"ok": True}

    return app


__all__ = ["create_app", "settings_from_env"]
