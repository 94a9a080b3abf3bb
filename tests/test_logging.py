"""
Tests for the JSON log format.
"""
import io
import json
import logging
from typing import Any, Dict, Generator

import pytest
import structlog

from config import Settings
from monitoring.logging import setup_logging


@pytest.fixture
def log_stream(test_settings: Settings) -> Generator[io.StringIO, Any, None]:
    """Configure logging and capture what the JSON handler writes."""
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level

    setup_logging(test_settings)
    stream = io.StringIO()
    root.handlers[0].setStream(stream)

    yield stream

    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def _last_record(stream: io.StringIO) -> Dict[str, Any]:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


class TestJsonLogging:
    """Every record is a single flat JSON object."""

    @pytest.mark.unit
    def test_structlog_event_fields_are_top_level(self, log_stream: io.StringIO) -> None:
        structlog.contextvars.bind_contextvars(request_id="req-1")

        structlog.get_logger("orders.audit").info("order_created", order_id="abc", items=2)

        record = _last_record(log_stream)
        assert record["message"] == "order_created"
        assert record["level"] == "INFO"
        assert record["logger"] == "orders.audit"
        assert record["@timestamp"]
        assert record["request_id"] == "req-1"
        assert record["order_id"] == "abc"
        assert record["items"] == 2
        assert record["app_env"] == "test"

    @pytest.mark.unit
    def test_stdlib_records_share_the_format(self, log_stream: io.StringIO) -> None:
        logging.getLogger("vendor.client").warning("worker %s restarted", 3)

        record = _last_record(log_stream)
        assert record["message"] == "worker 3 restarted"
        assert record["level"] == "WARNING"
        assert record["logger"] == "vendor.client"
        assert record["@timestamp"]

    @pytest.mark.unit
    def test_exception_is_rendered_into_the_record(self, log_stream: io.StringIO) -> None:
        log = structlog.get_logger("orders.audit")
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            log.error("refund_failed", exc_info=True)

        record = _last_record(log_stream)
        assert record["level"] == "ERROR"
        assert "RuntimeError: boom" in record["exception"]
