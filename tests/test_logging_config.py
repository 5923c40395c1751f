"""
Tests for structured logging
"""

import json
import logging

from lending_engine.logging_config import JSONFormatter, log_action, setup_logging
from lending_engine.tenancy import tenant_context


class CapturingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.setFormatter(JSONFormatter())
        self.lines = []

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))


def capture(name):
    logger = logging.getLogger(name)
    logger.handlers = []
    logger.propagate = False
    logger.setLevel(logging.DEBUG)
    handler = CapturingHandler()
    logger.addHandler(handler)
    return logger, handler


class TestJSONFormatter:

    def test_correlation_fields(self):
        logger, handler = capture("lending_engine.test.fields")
        log_action(logger, "warning", "Payment failed", action="process_event",
                   tenant_id="t1", transaction_id="QA1", extra={"code": "X"})

        line = handler.lines[0]
        assert line["level"] == "WARNING"
        assert line["message"] == "Payment failed"
        assert line["action"] == "process_event"
        assert line["tenant_id"] == "t1"
        assert line["transaction_id"] == "QA1"
        assert line["extra"] == {"code": "X"}
        assert "job_id" not in line

    def test_tenant_from_context(self):
        logger, handler = capture("lending_engine.test.context")
        with tenant_context("t9"):
            logger.info("inside")
        logger.info("outside")

        assert handler.lines[0]["tenant_id"] == "t9"
        assert "tenant_id" not in handler.lines[1]

    def test_exception_rendered(self):
        logger, handler = capture("lending_engine.test.exc")
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("failed")
        assert "RuntimeError: boom" in handler.lines[0]["exception"]


class TestSetupLogging:

    def test_repeated_setup_keeps_one_handler(self):
        setup_logging("DEBUG", logger_name="lending_engine.test.setup")
        logger = setup_logging("INFO", logger_name="lending_engine.test.setup", log_format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.INFO
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_file(self, tmp_path):
        path = tmp_path / "engine.log"
        logger = setup_logging(logger_name="lending_engine.test.file", log_file=str(path))
        logger.info("written")
        logger.handlers[0].flush()

        assert json.loads(path.read_text().strip())["message"] == "written"
        logger.handlers[0].close()
