"""Logging setup shared by the services and the HTTP layer."""

import logging
import sys

ROOT_LOGGER = "payrecon"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a stdout handler to the ``payrecon`` logger and set its level.

    Args:
        level: Level name such as DEBUG or INFO; unknown names fall back to INFO.

    Returns:
        The ``payrecon`` logger.
    """
    log_format = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Calling twice must not stack handlers
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        logger.addHandler(handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger below ``payrecon`` for the module ``name``.

    Module names already inside the package (``payrecon.services...``) are
    used as they are.
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
