"""Logging setup for the clientflow logger tree.

JSON output by default (one object per line, suitable for log shipping);
set ``LOG_FORMAT=console`` for human-readable output during development.
"""

from __future__ import annotations

import logging.config
import sys


def build_logging_config(level: str = "INFO", fmt: str = "json") -> dict:
    """Return a ``dictConfig`` mapping for the given level and format."""
    formatter = "json" if fmt == "json" else "console"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "json_ensure_ascii": False,
            },
            "console": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "clientflow": {
                "handlers": ["stdout"],
                "level": level.upper(),
                "propagate": False,
            },
            "uvicorn.access": {
                "handlers": ["stdout"],
                "level": "WARNING",
                "propagate": False,
            },
        },
    }


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Apply the clientflow logging configuration."""
    logging.config.dictConfig(build_logging_config(level, fmt))
