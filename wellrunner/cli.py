"""Command line entry point for the well runner control server."""
from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from .logging_config import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Well runner control server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--serial-port", help="serial device, e.g. /dev/ttyUSB0")
    parser.add_argument("--simulate", action="store_true", help="use the in-memory GRBL simulator")
    parser.add_argument("--log-file")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.debug else logging.INFO, args.log_file)
    if args.serial_port:
        os.environ["WELLRUNNER_PORT"] = args.serial_port
    if args.simulate:
        os.environ["WELLRUNNER_SIMULATE"] = "1"
    uvicorn.run(
        "wellrunner.server.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
