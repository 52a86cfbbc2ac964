"""
Tests for logging configuration.
"""

import json
import logging
import logging.handlers

import pytest

from streamledger.config import Settings
from streamledger.logging_config import JsonFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if isinstance(handler, logging.StreamHandler):
            handler.close()
            root.removeHandler(handler)
    root.setLevel(level)


def test_file_handler_per_context(tmp_path):
    config = Settings(log_dir=str(tmp_path), log_file_enabled=True, log_console_enabled=False)

    setup_logging(context="rebuild", config=config)
    logging.getLogger("streamledger.test").info("hello")

    file_handlers = [
        h for h in logging.getLogger().handlers
        if isinstance(h, logging.handlers.RotatingFileHandler)
    ]
    assert len(file_handlers) == 1
    file_handlers[0].flush()
    assert "hello" in (tmp_path / "rebuild.log").read_text()


def test_console_split_by_level(tmp_path):
    config = Settings(log_dir=str(tmp_path), log_file_enabled=False)

    setup_logging(context="cli", config=config)

    stream_handlers = [
        h for h in logging.getLogger().handlers if isinstance(h, logging.StreamHandler)
    ]
    assert len(stream_handlers) == 2
    assert {h.level for h in stream_handlers} == {logging.INFO, logging.WARNING}


def test_repeated_setup_does_not_duplicate_handlers(tmp_path):
    config = Settings(log_dir=str(tmp_path), log_file_enabled=False)

    setup_logging(config=config)
    setup_logging(config=config)

    assert len(logging.getLogger().handlers) == 2


def test_json_formatter():
    record = logging.LogRecord(
        "streamledger.sessions", logging.WARNING, __file__, 1, "anomaly %s", ("x",), None
    )

    entry = json.loads(JsonFormatter().format(record))

    assert entry["level"] == "WARNING"
    assert entry["logger"] == "streamledger.sessions"
    assert entry["message"] == "anomaly x"
