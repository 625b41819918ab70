"""Tests for structured logging configuration and LogContext."""

import io
import json
from decimal import Decimal

import pytest
import structlog

from fibra.core.logging import LogContext, configure_logging, get_logger


@pytest.fixture()
def log_stream():
    stream = io.StringIO()
    yield stream
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestConfigureLogging:
    """JSON rendering."""

    def test_json_uses_ecs_names(self, log_stream):
        configure_logging(level="INFO", json_format=True, service="fibra-test", stream=log_stream)

        get_logger("tests.logging.ecs").info("download.completed", bytes=1024)

        [line] = _lines(log_stream)
        assert line["event"] == "download.completed"
        assert line["bytes"] == 1024
        assert line["log.level"] == "info"
        assert line["service.name"] == "fibra-test"
        assert "@timestamp" in line

    def test_decimals_are_strings(self, log_stream):
        configure_logging(json_format=True, stream=log_stream)

        get_logger("tests.logging.decimals").info("facts.extracted", nav=Decimal("18.20"))

        assert _lines(log_stream)[0]["nav"] == "18.20"

    def test_level_filters(self, log_stream):
        configure_logging(level="WARNING", json_format=True, stream=log_stream)

        logger = get_logger("tests.logging.level")
        logger.info("quiet")
        logger.warning("loud")

        assert [line["event"] for line in _lines(log_stream)] == ["loud"]

    def test_bound_context_is_merged(self, log_stream):
        configure_logging(json_format=True, stream=log_stream)

        with LogContext(job_run_id="run-1", queue="parse"):
            get_logger("tests.logging.context").info("parse.started")

        line = _lines(log_stream)[0]
        assert line["job_run_id"] == "run-1"
        assert line["queue"] == "parse"


class TestLogContext:
    """Scoped binding of contextvars."""

    def test_none_values_are_skipped(self, log_stream):
        with LogContext(job_run_id="run-1", document_id=None):
            assert structlog.contextvars.get_contextvars() == {"job_run_id": "run-1"}

    def test_nested_contexts_restore(self, log_stream):
        with LogContext(queue="reports"):
            with LogContext(queue="download", document_id="doc-1"):
                assert structlog.contextvars.get_contextvars() == {"queue": "download", "document_id": "doc-1"}
            assert structlog.contextvars.get_contextvars() == {"queue": "reports"}
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.asyncio
    async def test_async_usage(self, log_stream):
        async with LogContext(correlation_id="req-1"):
            assert structlog.contextvars.get_contextvars()["correlation_id"] == "req-1"
        assert "correlation_id" not in structlog.contextvars.get_contextvars()
