"""Asynchronous client for Clearnode state-channel RPC.

Connects to a Clearnode over WebSocket, authenticates a local session key on
behalf of a wallet, and correlates signed RPC requests with their responses.
"""

__version__ = "0.1.0"

from .auth import AuthPolicy, AuthResult, Authenticator, PendingChallenge
from .config import ClearnodeConfig, ConfigError, load_config
from .correlator import RequestCorrelator
from .credentials import CredentialStore, MemoryCredentialStore, SessionKey
from .errors import (
    ClearnodeAuthError,
    ClearnodeChallengeTimeout,
    ClearnodeClientError,
    ClearnodeConnectionLost,
    ClearnodeHandshakeError,
    ClearnodeNotConnected,
    ClearnodeProtocolError,
    ClearnodeRPCError,
    ClearnodeTimeout,
    ClearnodeTransportError,
    ClearnodeUserRejected,
)
from .protocol import (
    EVENT_BALANCE_UPDATE,
    EVENT_CHANNEL_UPDATE,
    EVENT_TRANSFER,
    DecodeError,
    Envelope,
    FrameKind,
    classify,
    decode,
    encode,
)
from .session import ClearnodeSession, ConnectionStatus
from .signer import MessageSigner, SessionKeySigner, WalletSigner
from .ws import connect_websocket
from .ws_client import ClearnodeWsClient, ClearnodeWsMessage, ClearnodeWsMessageType

__all__ = [
    "EVENT_BALANCE_UPDATE",
    "EVENT_CHANNEL_UPDATE",
    "EVENT_TRANSFER",
    "AuthPolicy",
    "AuthResult",
    "Authenticator",
    "ClearnodeAuthError",
    "ClearnodeChallengeTimeout",
    "ClearnodeClientError",
    "ClearnodeConfig",
    "ClearnodeConnectionLost",
    "ClearnodeHandshakeError",
    "ClearnodeNotConnected",
    "ClearnodeProtocolError",
    "ClearnodeRPCError",
    "ClearnodeSession",
    "ClearnodeTimeout",
    "ClearnodeTransportError",
    "ClearnodeUserRejected",
    "ClearnodeWsClient",
    "ClearnodeWsMessage",
    "ClearnodeWsMessageType",
    "ConfigError",
    "ConnectionStatus",
    "CredentialStore",
    "DecodeError",
    "Envelope",
    "FrameKind",
    "MemoryCredentialStore",
    "MessageSigner",
    "PendingChallenge",
    "RequestCorrelator",
    "SessionKey",
    "SessionKeySigner",
    "WalletSigner",
    "__version__",
    "classify",
    "connect_websocket",
    "decode",
    "encode",
    "load_config",
]
