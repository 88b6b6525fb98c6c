"""Request/response correlation for one Clearnode session.

Every correlated request owns an entry keyed by its request id until it is
resolved by a matching response, rejected, timed out, cancelled by its caller
or failed by :meth:`RequestCorrelator.fail_all`. Each entry completes exactly
once; whichever path gets there second finds the entry gone and does nothing.

All methods must be called from the event loop thread that owns the session.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from .errors import ClearnodeConnectionLost, ClearnodeTimeout
from .protocol import Envelope

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _PendingRequest:
    """Track one outstanding request."""

    request_id: int
    issued_at: float
    future: asyncio.Future[Envelope]
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Map outstanding request ids to their eventual completion."""

    def __init__(self, *, label: str = "clearnode") -> None:
        self._label = label
        self._pending: dict[int, _PendingRequest] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register(
        self, request_id: int, timeout: float | None
    ) -> asyncio.Future[Envelope]:
        """Create a pending entry and return the future it will complete.

        Args:
            request_id: Sequence id of the request about to be sent.
            timeout: Seconds before the future fails with ClearnodeTimeout;
                None waits indefinitely.

        Raises:
            ValueError: If the id is already outstanding.
        """
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id} is already pending")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Envelope] = loop.create_future()
        entry = _PendingRequest(
            request_id=request_id, issued_at=time.monotonic(), future=future
        )
        if timeout is not None:
            entry.timer = loop.call_later(timeout, self._expire, entry, timeout)
        self._pending[request_id] = entry
        future.add_done_callback(lambda fut: self._forget_cancelled(entry, fut))
        return future

    def resolve(self, request_id: int, response: Envelope) -> bool:
        """Complete the matching request with its response.

        Returns:
            True if a pending request was completed, False for unknown ids
        """
        entry = self._take(request_id)
        if entry is None:
            _LOGGER.debug(
                "[%s] Response for unknown request id=%d (%s) ignored",
                self._label,
                request_id,
                response.method,
            )
            return False

        entry.future.set_result(response)
        _LOGGER.debug(
            "[%s] Request id=%d resolved (%.3fs)",
            self._label,
            request_id,
            time.monotonic() - entry.issued_at,
        )
        return True

    def reject(self, request_id: int, exc: BaseException) -> bool:
        """Fail one pending request; unknown ids are ignored."""
        entry = self._take(request_id)
        if entry is None:
            return False
        entry.future.set_exception(exc)
        return True

    def fail_all(self, reason: str) -> int:
        """Fail every pending request with ClearnodeConnectionLost.

        Returns:
            Number of requests failed
        """
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            self._cancel_timer(entry)
            if not entry.future.done():
                entry.future.set_exception(
                    ClearnodeConnectionLost(
                        f"Request {entry.request_id} aborted: {reason}"
                    )
                )
        if entries:
            _LOGGER.info(
                "[%s] Failed %d pending request(s): %s",
                self._label,
                len(entries),
                reason,
            )
        return len(entries)

    def _take(self, request_id: int) -> _PendingRequest | None:
        """Remove an entry whose future is still open."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return None
        self._cancel_timer(entry)
        if entry.future.done():
            return None
        return entry

    def _expire(self, entry: _PendingRequest, timeout: float) -> None:
        # A timer that outlived its entry (resolved, failed, re-registered)
        # must not touch whatever now sits under the same id.
        if self._pending.get(entry.request_id) is not entry:
            return
        del self._pending[entry.request_id]
        entry.timer = None
        if entry.future.done():
            return
        _LOGGER.warning(
            "[%s] Request id=%d timed out after %.1fs",
            self._label,
            entry.request_id,
            timeout,
        )
        entry.future.set_exception(
            ClearnodeTimeout(
                f"Request {entry.request_id} timed out after {timeout:.3f}s"
            )
        )

    def _forget_cancelled(
        self, entry: _PendingRequest, future: asyncio.Future[Envelope]
    ) -> None:
        if not future.cancelled():
            return
        if self._pending.get(entry.request_id) is entry:
            del self._pending[entry.request_id]
        self._cancel_timer(entry)

    @staticmethod
    def _cancel_timer(entry: _PendingRequest) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
