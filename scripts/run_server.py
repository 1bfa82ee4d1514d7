"""Entrypoint for launching the well runner FastAPI server."""
from __future__ import annotations

from wellrunner.cli import main


if __name__ == "__main__":
    main()
