"""Tests for RequestCorrelator."""

from __future__ import annotations

import asyncio

import pytest

from clearnode_client.correlator import RequestCorrelator
from clearnode_client.errors import (
    ClearnodeConnectionLost,
    ClearnodeRPCError,
    ClearnodeTimeout,
)
from clearnode_client.protocol import build_response


def _response(request_id: int):
    return build_response(request_id=request_id, method="pong")


class TestRequestCorrelator:
    """Tests for register/resolve/fail_all."""

    @pytest.mark.asyncio
    async def test_resolve(self):
        """Test resolving completes and removes the entry."""
        correlator = RequestCorrelator()
        future = correlator.register(1, timeout=1.0)

        assert correlator.resolve(1, _response(1))

        assert (await future).request_id == 1
        assert 1 not in correlator
        assert len(correlator) == 0

    @pytest.mark.asyncio
    async def test_resolve_unknown_is_noop(self):
        correlator = RequestCorrelator()

        assert not correlator.resolve(42, _response(42))

    @pytest.mark.asyncio
    async def test_duplicate_id(self):
        correlator = RequestCorrelator()
        correlator.register(1, timeout=None)

        with pytest.raises(ValueError, match="already pending"):
            correlator.register(1, timeout=None)

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test an unanswered request fails with ClearnodeTimeout."""
        correlator = RequestCorrelator()
        future = correlator.register(1, timeout=0.01)

        with pytest.raises(ClearnodeTimeout):
            await future

        assert correlator.pending_count == 0
        assert not correlator.resolve(1, _response(1))

    @pytest.mark.asyncio
    async def test_resolve_cancels_timer(self):
        """Test a resolved request is not failed later by its timer."""
        correlator = RequestCorrelator()
        future = correlator.register(1, timeout=0.01)
        correlator.resolve(1, _response(1))

        await asyncio.sleep(0.03)

        assert future.result().method == "pong"

    @pytest.mark.asyncio
    async def test_stale_timer_ignores_reused_id(self):
        """Test an old timer does not fail a newer entry with the same id."""
        correlator = RequestCorrelator()
        correlator.register(1, timeout=0.01)
        correlator.fail_all("reset")
        newer = correlator.register(1, timeout=None)

        await asyncio.sleep(0.03)

        assert not newer.done()
        assert 1 in correlator

    @pytest.mark.asyncio
    async def test_reject(self):
        correlator = RequestCorrelator()
        future = correlator.register(3, timeout=1.0)

        assert correlator.reject(3, ClearnodeRPCError("nope", request_id=3))

        with pytest.raises(ClearnodeRPCError):
            await future
        assert not correlator.reject(3, ClearnodeRPCError("again"))

    @pytest.mark.asyncio
    async def test_fail_all(self):
        """Test every pending request fails with ClearnodeConnectionLost."""
        correlator = RequestCorrelator()
        futures = [correlator.register(request_id, timeout=1.0) for request_id in (1, 2, 3)]

        assert correlator.fail_all("socket closed") == 3

        for future in futures:
            with pytest.raises(ClearnodeConnectionLost, match="socket closed"):
                await future
        assert correlator.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_is_forgotten(self):
        """Test a caller giving up removes its entry."""
        correlator = RequestCorrelator()
        future = correlator.register(1, timeout=1.0)

        future.cancel()
        await asyncio.sleep(0)

        assert 1 not in correlator
        assert not correlator.resolve(1, _response(1))

    @pytest.mark.asyncio
    async def test_concurrent_requests_matched_by_id(self):
        """Test responses in any order reach their own futures."""
        correlator = RequestCorrelator()
        futures = {request_id: correlator.register(request_id, 1.0) for request_id in range(10)}

        for request_id in reversed(range(10)):
            correlator.resolve(request_id, _response(request_id))

        for request_id, future in futures.items():
            assert (await future).request_id == request_id
