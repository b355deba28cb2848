"""
REBASER — Logging

Every component logs under the "rebaser" namespace. Handlers live on that
namespace logger only; component loggers propagate to it.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, MutableMapping, Optional


# =============================================================================
# Namespaces
# =============================================================================
ROOT_LOGGER = "rebaser"
CONTROLLER_LOGGER = f"{ROOT_LOGGER}.controller"
LOOKUP_TABLES_LOGGER = f"{ROOT_LOGGER}.lookup_tables"
REGISTRY_LOGGER = f"{ROOT_LOGGER}.registry"
BATCHER_LOGGER = f"{ROOT_LOGGER}.batcher"
LEDGER_LOGGER = f"{ROOT_LOGGER}.ledger"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
LOG_FILENAME = "rebaser.log"


def _formatter() -> logging.Formatter:
    return logging.Formatter(LOG_FORMAT, DATE_FORMAT)


def _level(name: Optional[str]) -> int:
    resolved = logging.getLevelName((name or "INFO").upper())
    return resolved if isinstance(resolved, int) else logging.INFO


# =============================================================================
# Setup
# =============================================================================
def get_logger(name: str = ROOT_LOGGER, level: Optional[str] = None) -> logging.Logger:
    """
    Return the named logger with a stdout handler attached once.

    Calling again for the same name reuses the existing handler; a `level`
    passed on a later call still updates the logger.
    """
    logger = logging.getLogger(name)
    if level is not None or not logger.handlers:
        logger.setLevel(_level(level))

    if not logger.handlers:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_formatter())
        logger.addHandler(console)
    return logger


def configure_file_logging(
    logger: logging.Logger,
    log_dir: str,
    filename: str = LOG_FILENAME,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> Path:
    """Attach a size-rotated file handler under `log_dir` and return the file path."""
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename

    for handler in logger.handlers:
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == path.resolve():
            return path

    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    handler.setFormatter(_formatter())
    logger.addHandler(handler)
    return path


def configure_logging(level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """Set up the agent's namespace logger: stdout always, a rotating file when `log_dir` is set."""
    logger = get_logger(ROOT_LOGGER, level)
    if log_dir:
        configure_file_logging(logger, log_dir)
    return logger


# =============================================================================
# Pool-tagged Logging
# =============================================================================
class PoolLogger(logging.LoggerAdapter):
    """
    Logger adapter that tags every record with the pool and phase.

    Messages render as "<pool> -- [<phase>] message" and the record carries
    `pool` and `phase` attributes for structured handlers.
    """

    def __init__(self, logger: logging.Logger, pool: Any, phase: str = "-"):
        super().__init__(logger, {"pool": str(pool), "phase": phase})

    def for_phase(self, phase: str) -> "PoolLogger":
        return PoolLogger(self.logger, self.extra["pool"], phase)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"{extra['pool']} -- [{extra['phase']}] {msg}", kwargs
