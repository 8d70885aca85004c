"""
Logging configuration for the load engine.

All modules log through ``logging.getLogger(__name__)``; this helper installs a
single console handler on the root logger and aligns the ``relmap`` namespace
with the configured level.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

from relmap.core.config import settings


_is_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root and package loggers if they have not been configured yet.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO"). Falls back
            to ``settings.log_level`` (DEBUG when ``settings.debug`` is set).
    """
    global _is_configured

    if _is_configured:
        return

    default_level = "DEBUG" if settings.debug else settings.log_level
    log_level = (level or default_level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                # SQL echo is noisy at INFO; keep it opt-in.
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )

    logging.getLogger("relmap").setLevel(log_level)

    _is_configured = True


def reset_logging_state() -> None:
    """Allow ``configure_logging`` to run again (used by tests)."""
    global _is_configured
    _is_configured = False
