"""Tests for JobContext and cancellation."""

import asyncio

import pytest
import structlog

from fibra.core.errors import FetchTimeoutError, OperationCancelledError
from fibra.execution.context import CancellationToken, JobContext


class TestJobContext:
    def test_new_generates_ids(self):
        ctx = JobContext.new("download")
        assert ctx.job_run_id
        assert ctx.correlation_id
        assert ctx.attempt == 1

    def test_child_shares_correlation_and_token(self):
        parent = JobContext.new("reports", correlation_id="req-1")
        child = parent.child("download")
        assert child.queue == "download"
        assert child.correlation_id == "req-1"
        assert child.token is parent.token
        assert child.job_run_id != parent.job_run_id

    def test_retry_increments_attempt(self):
        ctx = JobContext.new("parse").retry()
        assert ctx.attempt == 2
        assert ctx.queue == "parse"

    def test_to_dict(self):
        ctx = JobContext.new("facts", correlation_id="req-2")
        assert ctx.to_dict()["correlation_id"] == "req-2"


class TestGuard:
    """JobContext.guard applies cancellation and deadlines."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 42

        assert await JobContext.new("x").guard(work(), "work") == 42

    @pytest.mark.asyncio
    async def test_timeout_becomes_fetch_timeout(self):
        ctx = JobContext.new("download", io_timeout=0.01)
        with pytest.raises(FetchTimeoutError) as exc_info:
            await ctx.guard(asyncio.sleep(1), "fetch")
        assert exc_info.value.retryable
        assert exc_info.value.context.stage == "download"

    @pytest.mark.asyncio
    async def test_cancelled_token_fails_fast(self):
        token = CancellationToken()
        token.cancel("shutdown")
        ctx = JobContext.new("download", token=token)
        with pytest.raises(OperationCancelledError, match="shutdown"):
            await ctx.guard(asyncio.sleep(0), "fetch")

    def test_check_cancelled(self):
        ctx = JobContext.new("parse")
        ctx.check_cancelled()
        ctx.token.cancel()
        with pytest.raises(OperationCancelledError):
            ctx.check_cancelled()


class TestLogContext:
    @pytest.mark.asyncio
    async def test_binds_and_restores(self):
        ctx = JobContext.new("download", correlation_id="req-3")
        async with ctx.log_context(document_id="doc-1"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["correlation_id"] == "req-3"
            assert bound["document_id"] == "doc-1"
        assert "document_id" not in structlog.contextvars.get_contextvars()
