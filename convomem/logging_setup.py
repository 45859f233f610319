"""Logging configuration."""

import logging

from convomem.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging from *level* or the LOG_LEVEL setting."""
    name = (level or settings.log_level).upper()
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, name, logging.INFO))
