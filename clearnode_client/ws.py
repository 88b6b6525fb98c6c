"""Opening WebSocket connections to a Clearnode."""

from __future__ import annotations

import asyncio
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import (
    ClearnodeHandshakeError,
    ClearnodeTimeout,
    ClearnodeTransportError,
)

WEBSOCKET_SCHEMES = ("ws", "wss")

# Seconds allowed for the closing handshake before the TCP socket is dropped.
_CLOSE_TIMEOUT = 5


def is_websocket_url(url: str) -> bool:
    """Return True for an absolute ``ws://`` or ``wss://`` URL with a host."""
    parts = urlsplit(url)
    return parts.scheme in WEBSOCKET_SCHEMES and bool(parts.hostname)


async def connect_websocket(
    url: str,
    *,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Open a WebSocket connection to a Clearnode endpoint.

    RPC frames are JSON text of unbounded size, so the library's message
    size limit is lifted. Protocol-level ping frames stay on, which reaps
    the socket when the node vanishes; RPC heartbeats run on top of that.

    Args:
        url: ``ws://`` or ``wss://`` endpoint
        ping_interval: Interval for WebSocket ping frames (None disables)
        timeout: Seconds allowed for TCP connect, TLS and the upgrade

    Raises:
        ValueError: If ``url`` is not a WebSocket URL
        ClearnodeTimeout: If the node did not accept in time
        ClearnodeHandshakeError: If the HTTP upgrade was refused
        ClearnodeTransportError: If the node could not be reached
    """
    if not is_websocket_url(url):
        raise ValueError(f"Not a ws:// or wss:// URL: {url!r}")
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=_CLOSE_TIMEOUT,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise ClearnodeTimeout(f"No WebSocket upgrade from {url} within {timeout:.1f}s") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise ClearnodeHandshakeError(f"WebSocket handshake with {url} failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise ClearnodeTransportError(f"WebSocket connection to {url} failed: {err}") from err
