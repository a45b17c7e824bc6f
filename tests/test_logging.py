from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from runway.logging import get_logger


def test_log_file_gets_one_rotating_handler(tmp_path: Path):
    log_file = tmp_path / "logs" / "agent.log"
    logger = get_logger("runway.test_log_file", log_file)
    try:
        again = get_logger("runway.test_log_file", log_file)
        assert again is logger
        assert sum(isinstance(h, RotatingFileHandler) for h in logger.handlers) == 1

        logger.warning("lease %s expired", "r1")
        for h in logger.handlers:
            h.flush()

        line = log_file.read_text(encoding="utf-8").strip()
        assert line.endswith("| runway.test_log_file | WARNING | lease r1 expired")
    finally:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()


def test_without_log_file_no_handler_is_added():
    logger = get_logger("runway.test_no_file")
    assert logger.handlers == []
    assert isinstance(logger, logging.Logger)
