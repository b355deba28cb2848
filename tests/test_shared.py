"""Shared logging, error and utility tests."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from rebaser.shared.errors import (
    BundleUnconfirmedError,
    ErrorKind,
    IntervalNotElapsed,
    PartialBatchFailure,
    TransportFailure,
)
from rebaser.shared.logging import PoolLogger, configure_file_logging, configure_logging, get_logger
from rebaser.shared.utils import chunk_list, format_duration


def test_pool_logger_prefixes_and_tags_records(caplog) -> None:
    log = PoolLogger(logging.getLogger("rebaser.test.pool"), "Pool111", "submit")

    with caplog.at_level(logging.INFO, logger="rebaser.test.pool"):
        log.info("batch %d confirmed", 3)
        log.for_phase("rotate").warning("deferred")

    first, second = caplog.records
    assert first.getMessage() == "Pool111 -- [submit] batch 3 confirmed"
    assert (first.pool, first.phase) == ("Pool111", "submit")
    assert second.getMessage() == "Pool111 -- [rotate] deferred"


def test_get_logger_adds_single_handler() -> None:
    logger = get_logger("rebaser.test.handlers", "DEBUG")
    again = get_logger("rebaser.test.handlers")

    assert logger is again
    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG


def test_configure_file_logging_writes_to_log_dir(tmp_path: Path) -> None:
    logger = logging.getLogger("rebaser.test.file")
    logger.setLevel(logging.INFO)
    configure_file_logging(logger, str(tmp_path / "logs"), "rebaser.log")

    logger.info("hello")
    for handler in logger.handlers:
        handler.flush()

    assert "hello" in (tmp_path / "logs" / "rebaser.log").read_text()


def test_configure_logging_attaches_file_handler_once(tmp_path: Path) -> None:
    logger = configure_logging("WARNING", str(tmp_path))
    configure_logging("WARNING", str(tmp_path))
    try:
        file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        assert logger.name == "rebaser"
        assert logger.level == logging.WARNING
        assert len(file_handlers) == 1
        assert Path(file_handlers[0].baseFilename) == (tmp_path / "rebaser.log").resolve()
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(logging.NOTSET)


def test_errors_carry_kind_and_context() -> None:
    error = TransportFailure("connection reset", method="getAccountInfo")
    error.with_context(pool="Pool111", phase="reconcile")
    error.with_context(pool="other", phase="other")

    assert error.to_dict() == {
        "kind": "transport_failure",
        "message": "connection reset",
        "pool": "Pool111",
        "phase": "reconcile",
        "method": "getAccountInfo",
    }
    assert BundleUnconfirmedError("b-1").kind == ErrorKind.TRANSPORT_FAILURE
    assert IntervalNotElapsed(90).remaining_seconds == 90


def test_partial_batch_failure_message() -> None:
    error = PartialBatchFailure("sequential rebase submission", succeeded=2, failed=1, total=3)
    assert str(error) == "sequential rebase submission: 2/3 units succeeded, 1 failed"


def test_chunk_list() -> None:
    assert chunk_list([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunk_list([], 3) == []
    with pytest.raises(ValueError):
        chunk_list([1], 0)


def test_format_duration() -> None:
    assert format_duration(30) == "30.0s"
    assert format_duration(90) == "1.5m"
    assert format_duration(5400) == "1.5h"
