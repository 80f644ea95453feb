"""Central logging configuration."""
from __future__ import annotations

import logging
from logging.config import dictConfig

from src.core.config import settings


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["console"],
        "level": settings.log_level.upper(),
    },
    "loggers": {
        # botocore is chatty at DEBUG and echoes request bodies.
        "botocore": {"level": "WARNING"},
        "urllib3": {"level": "WARNING"},
    },
}


def configure_logging() -> None:
    """Apply the logging configuration once at process startup."""

    dictConfig(LOGGING_CONFIG)


logger = logging.getLogger("courierx.feedback")
