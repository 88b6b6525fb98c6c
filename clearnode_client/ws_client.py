"""WebSocket client wrapper for Clearnode RPC."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ClearnodeTransportError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class ClearnodeWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class ClearnodeWsMessage:
    """Normalized WebSocket message payload."""

    type: ClearnodeWsMessageType
    data: str | None = None


class ClearnodeWsClient:
    """Wrapper around the websockets library for one Clearnode connection.

    Instances are single-use: reconnecting always builds a new client.
    """

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the node websocket."""
        self._ws = await connect_websocket(
            url,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def send_text(self, frame: str) -> None:
        """Send one text frame.

        Raises:
            ClearnodeTransportError: If not connected or the socket is closed
        """
        if self._ws is None:
            raise ClearnodeTransportError("WebSocket is not connected")
        try:
            await self._ws.send(frame)
        except (ConnectionClosed, WebSocketException) as err:
            raise ClearnodeTransportError("WebSocket send failed") from err

    def __aiter__(self) -> AsyncIterator[ClearnodeWsMessage]:
        if self._ws is None:
            raise ClearnodeTransportError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[ClearnodeWsMessage]:
        if self._ws is None:
            raise ClearnodeTransportError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed:
            yield ClearnodeWsMessage(type=ClearnodeWsMessageType.CLOSED)
        except Exception:
            yield ClearnodeWsMessage(type=ClearnodeWsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield ClearnodeWsMessage(type=ClearnodeWsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> ClearnodeWsMessage | None:
        """Normalize backend frames into ClearnodeWsMessage; binary is dropped."""
        if isinstance(msg, (bytes, bytearray, memoryview)):
            return None
        if isinstance(msg, str):
            return ClearnodeWsMessage(ClearnodeWsMessageType.TEXT, msg)
        return ClearnodeWsMessage(ClearnodeWsMessageType.TEXT, str(msg))

