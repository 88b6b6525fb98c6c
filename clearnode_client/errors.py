"""Client error types for Clearnode RPC sessions."""

from __future__ import annotations


class ClearnodeClientError(Exception):
    """Base error for Clearnode client failures."""


class ClearnodeTransportError(ClearnodeClientError):
    """Network connection to the node failed."""


class ClearnodeHandshakeError(ClearnodeTransportError):
    """WebSocket handshake failed."""


class ClearnodeConnectionLost(ClearnodeTransportError):
    """Connection dropped while a request was outstanding."""


class ClearnodeNotConnected(ClearnodeClientError):
    """Operation requires an authenticated connection."""


class ClearnodeTimeout(ClearnodeClientError, TimeoutError):
    """Timeout while waiting on the node or the caller."""


class ClearnodeAuthError(ClearnodeClientError):
    """Authentication handshake rejected by the node."""

    def __init__(self, message: str, *, credential_related: bool = False) -> None:
        super().__init__(message)
        self.credential_related = credential_related


class ClearnodeUserRejected(ClearnodeAuthError):
    """The user declined to sign the authentication challenge."""


class ClearnodeProtocolError(ClearnodeClientError):
    """Malformed or unroutable frame."""


class ClearnodeRPCError(ClearnodeClientError):
    """The node answered a request with an error response."""

    def __init__(self, message: str, *, request_id: int | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class ClearnodeChallengeTimeout(ClearnodeTimeout):
    """A pending challenge was neither approved nor rejected in time."""
