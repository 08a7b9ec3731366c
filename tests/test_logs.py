import json
import logging
import sys
from pathlib import Path

import pytest

from featurerun.logs import JsonFormatter, configure_logging


def test_configure_logging_writes_json_lines(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "run.jsonl"
    logger = configure_logging("warning", log_file)

    logging.getLogger("featurerun.engine").debug("state change")
    for handler in logger.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])
    assert entry["level"] == "DEBUG"
    assert entry["logger"] == "featurerun.engine"
    assert entry["message"] == "state change"


def test_configure_logging_replaces_handlers() -> None:
    configure_logging("INFO")
    logger = configure_logging("DEBUG")
    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG


def test_unknown_level_is_rejected() -> None:
    with pytest.raises(ValueError):
        configure_logging("LOUD")


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "featurerun", logging.ERROR, __file__, 1, "failed %s", ("x",), exc_info=None
        )
        record.exc_info = sys.exc_info()

    entry = json.loads(JsonFormatter().format(record))
    assert entry["message"] == "failed x"
    assert "RuntimeError: boom" in entry["exception"]
