"""Entry point for running the well runner control server."""

from wellrunner.cli import main


if __name__ == "__main__":
    main()
