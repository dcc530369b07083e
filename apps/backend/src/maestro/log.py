"""Logging helpers shared by every Maestro module."""

import logging

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return a named logger under the ``maestro`` hierarchy."""
    if not name.startswith("maestro"):
        name = f"maestro.{name}"
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a single stream handler to the root ``maestro`` logger.

    Safe to call more than once; the handler is only added the first time.
    """
    logger = logging.getLogger("maestro")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level.upper())
    return logger
