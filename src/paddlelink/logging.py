"""Logging setup for paddlelink processes (relay, host, controller)."""

import logging
from pathlib import Path

from paddlelink.config import Config

# ICE and SCTP internals are chatty; they only follow our level at DEBUG
NOISY_LIBRARIES = ("aioice", "aiortc")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger: logging.Logger | None = None


def _handlers_for(config: Config) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    handlers.append(logging.StreamHandler())
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Configure the ``paddlelink`` logger once per process.

    Every module logs through ``logging.getLogger(__name__)``, so the
    handlers installed here receive all of them. Later calls return the
    already configured logger unchanged.

    Args:
        config: Configuration with ``log_level`` and optional ``log_file``.

    Returns:
        The package logger.
    """
    global _logger

    if _logger is not None:
        return _logger

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logger = logging.getLogger("paddlelink")
    logger.setLevel(level)
    logger.handlers.clear()

    # 2026-01-27 10:30:45 [INFO] Connection 3f2a... joined room abc123
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in _handlers_for(config):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)

    _logger = logger
    return logger


def reset_logging() -> None:
    """Forget the configured logger so tests can set it up again."""
    global _logger
    if _logger is not None:
        _logger.handlers.clear()
        _logger = None
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(logging.NOTSET)
