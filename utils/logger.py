# -*- coding: utf-8 -*-
"""
Logging configuration.

All pipeline modules log under the ``trrcms`` logger. Records carry the id
of the package being processed (``-`` outside a package context) so a
single package can be followed through the rotating log file.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from typing import Iterator, Optional

# Will be set by setup_logger
_logger: Optional[logging.Logger] = None

_current_package: ContextVar[str] = ContextVar("trrcms_package", default="-")

# Chatty libraries kept at WARNING
_QUIET_LOGGERS = ("zeroconf", "urllib3")


class PackageContextFilter(logging.Filter):
    """Stamps ``record.package`` from the active package context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "package"):
            record.package = _current_package.get()
        return True


@contextmanager
def package_context(package_id: Optional[str]) -> Iterator[None]:
    """Tag every record logged inside the block with ``package_id``."""
    token = _current_package.set(package_id or "-")
    try:
        yield
    finally:
        _current_package.reset(token)


def setup_logger(console_level: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``trrcms`` logger.

    The rotating file under ``Config.LOGS_DIR`` receives everything from
    DEBUG up; stdout receives ``console_level`` (``Config.LOG_LEVEL`` by
    default) and above.
    """
    global _logger

    # Import here to avoid circular imports
    from app.config import Config

    Config.LOGS_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("trrcms")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    context = PackageContextFilter()

    file_handler = RotatingFileHandler(
        Config.LOG_PATH,
        maxBytes=Config.LOG_MAX_BYTES,
        backupCount=Config.LOG_BACKUP_COUNT,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(context)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(package)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel((console_level or Config.LOG_LEVEL).upper())
    console_handler.addFilter(context)
    console_handler.setFormatter(logging.Formatter("%(levelname)-8s | %(package)s | %(message)s"))
    logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _logger = logger
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the ``trrcms`` logger, configuring it on first use."""
    global _logger

    if _logger is None:
        _logger = setup_logger()

    return _logger.getChild(name)
