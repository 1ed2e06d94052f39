"""Process-wide logging setup."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a timestamped stream handler on the root logger.

    Does nothing beyond adjusting the level if a handler is already installed.
    """
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(level.upper())
    # SQL echo is controlled by Settings.debug
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
