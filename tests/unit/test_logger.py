"""Tests for quantumloop.logger."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from quantumloop.logger import get_logger, setup_logging


def test_file_handler_writes_json_for_both_apis(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "run.log"
    setup_logging(debug=True, log_file=log_file)
    try:
        logging.getLogger("quantumloop.test").warning("plain %s", "record")
        get_logger("quantumloop.test", run_id="r1").info("task_passed", task_id="US-1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = [json.loads(x) for x in log_file.read_text(encoding="utf-8").splitlines()]
        assert lines[0]["event"] == "plain record"
        assert lines[0]["level"] == "warning"
        assert lines[1]["event"] == "task_passed"
        assert lines[1]["task_id"] == "US-1"
        assert lines[1]["run_id"] == "r1"
    finally:
        for handler in list(logging.getLogger().handlers):
            handler.close()
            logging.getLogger().removeHandler(handler)
