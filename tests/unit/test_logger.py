import logging

import structlog

from aggregator.utils.logger import NOISY_LOGGERS, LogContext, get_logger, setup_logging


def test_setup_logging():
    # Calling it shouldn't crash
    setup_logging(level="DEBUG", json_format=False)
    setup_logging(level="INFO", json_format=True)

    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING


def test_setup_logging_with_file(tmp_path):
    log_file = tmp_path / "aggregator.log"
    root = logging.getLogger()
    before = list(root.handlers)

    setup_logging(level="WARNING", log_file=str(log_file))
    added = [h for h in root.handlers if h not in before]

    try:
        assert any(isinstance(h, logging.FileHandler) for h in added)
    finally:
        for handler in added:
            root.removeHandler(handler)
            handler.close()


def test_get_logger():
    logger = get_logger("test_module")
    assert logger is not None
    logger.info("test message", key="value")


def test_log_context_binds_and_unbinds():
    structlog.contextvars.clear_contextvars()

    with LogContext(job="coverage", leaf="mugs"):
        bound = structlog.contextvars.get_contextvars()
        assert bound == {"job": "coverage", "leaf": "mugs"}

    assert structlog.contextvars.get_contextvars() == {}


def test_log_context_nests():
    structlog.contextvars.clear_contextvars()

    with LogContext(job="backfill"):
        with LogContext(platform="ALIBABA"):
            assert structlog.contextvars.get_contextvars() == {"job": "backfill", "platform": "ALIBABA"}
        assert structlog.contextvars.get_contextvars() == {"job": "backfill"}
