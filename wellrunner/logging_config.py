"""
Logging Configuration
Installs stdout and optional rotating file handlers on the 'wellrunner' logger.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, Union

PACKAGE_LOGGER = "wellrunner"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%H:%M:%S"

_OWNED = "_wellrunner_handler"


def _owned(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _OWNED, True)
    return handler


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    max_bytes: int = 1_000_000,
    backups: int = 3,
) -> logging.Logger:
    """
    Configures the package logger and returns it.

    Handlers installed by an earlier call are closed and replaced; handlers
    added by anyone else (pytest's caplog, uvicorn) are left alone.

    Args:
        level: Logging level, as a number or a name such as "DEBUG".
        log_file: Optional path; the file rotates at ``max_bytes``.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    for handler in [h for h in logger.handlers if getattr(h, _OWNED, False)]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = [_owned(logging.StreamHandler(sys.stdout))]
    if log_file:
        handlers.append(
            _owned(RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
            ))
        )
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug("Logging configured at %s", logging.getLevelName(level))
    return logger
