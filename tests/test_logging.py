"""
Test the logging setup and the once-per-process helper.
"""

import logging

import pytest

from replica_train.logging import ColorFormatter
from replica_train.logging import get_logger
from replica_train.logging import log_once
from replica_train.logging import setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_rank_tagged_file(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "train.log"
    setup_logging(log_level="DEBUG", log_file=str(log_file), use_colors=False, rank=3)

    logger = get_logger("replica_train.test")
    logger.debug("debug record")
    logger.info("info record")
    for handler in restore_root_logger.handlers:
        handler.flush()

    content = log_file.read_text()
    assert "[rank 3] replica_train.test: debug record" in content
    assert "info record" in content
    assert "\033[" not in content


def test_setup_logging_respects_level(tmp_path, restore_root_logger):
    log_file = tmp_path / "train.log"
    setup_logging(log_level="WARNING", log_file=str(log_file))

    logger = get_logger("replica_train.level")
    logger.info("hidden")
    logger.warning("shown")
    for handler in restore_root_logger.handlers:
        handler.flush()

    content = log_file.read_text()
    assert "hidden" not in content
    assert "shown" in content
    assert "[rank" not in content


def test_color_formatter_leaves_record_plain():
    record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)
    colored = ColorFormatter("%(levelname)s %(message)s").format(record)
    assert colored.startswith("\033[")
    assert record.levelname == "ERROR"
    assert ColorFormatter("%(levelname)s", use_colors=False).format(record) == "ERROR"


def test_log_once_emits_a_single_record(caplog):
    logger = get_logger("replica_train.once")
    with caplog.at_level(logging.INFO, logger="replica_train.once"):
        assert log_once(logger, logging.INFO, "Checking %s for NaN", "unit-test gradient")
        assert not log_once(logger, logging.INFO, "Checking %s for NaN", "unit-test gradient")
        assert log_once(logger, logging.INFO, "Checking %s for NaN", "another gradient")

    messages = [record.getMessage() for record in caplog.records]
    assert messages == [
        "Checking unit-test gradient for NaN",
        "Checking another gradient for NaN",
    ]
