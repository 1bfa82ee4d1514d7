"""Example script that calibrates by hand and starts a run through the server."""
from __future__ import annotations

import time

import requests

BASE = "http://localhost:8000/api"


def main() -> None:
    calibration = {
        "a1": {"x": 10.0, "y": 10.0},
        "a8": {"x": 80.0, "y": 10.0},
        "f1": {"x": 10.0, "y": 60.0},
    }
    requests.post(f"{BASE}/connect", json={}, timeout=10).raise_for_status()
    requests.put(f"{BASE}/calibration", json=calibration, timeout=5).raise_for_status()
    requests.put(f"{BASE}/config", json={"dwell_time_sec": 5}, timeout=5).raise_for_status()
    requests.post(f"{BASE}/run/start", json={"skip": ["F8"]}, timeout=5).raise_for_status()

    while True:
        run = requests.get(f"{BASE}/status", timeout=5).json()["run"]
        print(
            f"{run['run_state']:>8}  well={run['current_well']}  "
            f"dwell={run['dwell_remaining']:.0f}s  "
            f"{run['progress']['done']}/{run['progress']['total']}"
        )
        if run["run_state"] in ("complete", "idle"):
            break
        time.sleep(1.0)


if __name__ == "__main__":
    main()
