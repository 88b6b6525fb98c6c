"""Envelope codec for Clearnode RPC frames.

Frames are JSON text. Requests travel as
``{"req": [request_id, method, params, timestamp_ms], "sig": [...]}`` and
responses as ``{"res": [...], "sig": [...]}``. Error responses reuse the
response shape with method ``"error"``.

Decoding never raises: malformed frames come back as :class:`DecodeError`
values and the caller decides whether to log or escalate.
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

METHOD_AUTH_REQUEST = "auth_request"
METHOD_AUTH_CHALLENGE = "auth_challenge"
METHOD_AUTH_VERIFY = "auth_verify"
METHOD_ERROR = "error"
METHOD_PING = "ping"
METHOD_PONG = "pong"

# Pushes the node sends without a matching request.
EVENT_BALANCE_UPDATE = "bu"
EVENT_CHANNEL_UPDATE = "cu"
EVENT_TRANSFER = "tr"

_MAX_FRAME_PREVIEW = 200

# Matches the head of a frame without parsing the rest of it.
_FRAME_HEAD = re.compile(r'^\s*\{\s*"(req|res|err)"\s*:\s*\[\s*\d+\s*,\s*"([^"\\]*)"')


class FrameKind(Enum):
    """Routing class of an inbound frame."""

    AUTH_CHALLENGE = "auth_challenge"
    AUTH_VERIFY = "auth_verify"
    ERROR = "error"
    RESPONSE = "response"
    REQUEST = "request"
    UNKNOWN = "unknown"

    @property
    def is_auth_control(self) -> bool:
        """Whether frames of this kind belong to the handshake."""
        return self in {
            FrameKind.AUTH_CHALLENGE,
            FrameKind.AUTH_VERIFY,
            FrameKind.ERROR,
        }


@dataclass(frozen=True)
class Envelope:
    """One RPC message, request or response."""

    request_id: int
    method: str
    params: list[Any] = field(default_factory=list)
    timestamp: int = 0
    signatures: tuple[str, ...] = ()
    is_response: bool = False

    @property
    def payload(self) -> list[Any]:
        """Wire array ``[request_id, method, params, timestamp]``."""
        return [self.request_id, self.method, self.params, self.timestamp]

    @property
    def is_error(self) -> bool:
        return self.method == METHOD_ERROR

    @property
    def error_message(self) -> str | None:
        """Detail text of an error response, or None for other frames."""
        if not self.is_error:
            return None
        return parse_error_detail(self.params)

    @property
    def result(self) -> Any:
        """First params element, the usual result object of a response."""
        return self.params[0] if self.params else None

    def with_signatures(self, *signatures: str) -> Envelope:
        """Return a copy carrying the given signatures."""
        return replace(self, signatures=tuple(signatures))


@dataclass(frozen=True)
class DecodeError:
    """A frame that could not be decoded into an envelope."""

    reason: str
    frame: str = ""

    def __str__(self) -> str:
        return f"{self.reason}: {self.frame[:_MAX_FRAME_PREVIEW]!r}"


def now_ms() -> int:
    """Current epoch time in milliseconds."""
    return int(time.time() * 1000)


def build_request(
    *,
    request_id: int,
    method: str,
    params: Sequence[Any] | None = None,
    timestamp_ms: int | None = None,
) -> Envelope:
    """Build an unsigned request envelope.

    Args:
        request_id: Sequence id assigned by the sending session.
        method: RPC method name.
        params: Positional parameters; defaults to an empty list.
        timestamp_ms: Optional epoch milliseconds override.
    """
    if request_id < 0:
        raise ValueError("request_id must be an unsigned integer")
    if not method:
        raise ValueError("method is required")
    return Envelope(
        request_id=request_id,
        method=method,
        params=list(params) if params is not None else [],
        timestamp=timestamp_ms if timestamp_ms is not None else now_ms(),
    )


def build_response(
    *,
    request_id: int,
    method: str,
    params: Sequence[Any] | None = None,
    timestamp_ms: int | None = None,
) -> Envelope:
    """Build a response envelope (used by tests and local peers)."""
    return replace(
        build_request(
            request_id=request_id,
            method=method,
            params=params,
            timestamp_ms=timestamp_ms,
        ),
        is_response=True,
    )


def build_error_response(
    *, request_id: int, message: str, timestamp_ms: int | None = None
) -> Envelope:
    """Build an ``error`` response carrying ``{"error": message}``."""
    return build_response(
        request_id=request_id,
        method=METHOD_ERROR,
        params=[{"error": message}],
        timestamp_ms=timestamp_ms,
    )


def build_auth_request(
    *,
    request_id: int,
    address: str,
    session_key: str,
    app_name: str,
    allowances: Sequence[Mapping[str, str]],
    expire: str,
    scope: str,
    application: str,
    timestamp_ms: int | None = None,
) -> Envelope:
    """Construct the unsigned ``auth_request`` that opens a challenge."""
    if not address:
        raise ValueError("address is required for auth_request frames")
    return build_request(
        request_id=request_id,
        method=METHOD_AUTH_REQUEST,
        timestamp_ms=timestamp_ms,
        params=[
            {
                "address": address,
                "session_key": session_key,
                "app_name": app_name,
                "allowances": [dict(item) for item in allowances],
                "expire": expire,
                "scope": scope,
                "application": application,
            }
        ],
    )


def build_auth_verify(
    *, request_id: int, challenge: str, timestamp_ms: int | None = None
) -> Envelope:
    """Construct an ``auth_verify`` answering a challenge (sign before sending)."""
    if not challenge:
        raise ValueError("challenge is required for auth_verify frames")
    return build_request(
        request_id=request_id,
        method=METHOD_AUTH_VERIFY,
        params=[{"challenge": challenge}],
        timestamp_ms=timestamp_ms,
    )


def build_auth_verify_with_jwt(
    *, request_id: int, jwt: str, timestamp_ms: int | None = None
) -> Envelope:
    """Construct an ``auth_verify`` presenting a cached token."""
    if not jwt:
        raise ValueError("jwt is required for token verification")
    return build_request(
        request_id=request_id,
        method=METHOD_AUTH_VERIFY,
        params=[{"jwt": jwt}],
        timestamp_ms=timestamp_ms,
    )


def build_ping(*, request_id: int, timestamp_ms: int | None = None) -> Envelope:
    """Construct a ``ping`` liveness check (sign before sending)."""
    return build_request(
        request_id=request_id, method=METHOD_PING, timestamp_ms=timestamp_ms
    )


def signing_payload(envelope: Envelope) -> str:
    """Canonical text a signer signs for an envelope."""
    return json.dumps(envelope.payload, separators=(",", ":"))


def encode(envelope: Envelope) -> str:
    """Serialize an envelope into a text frame."""
    key = "res" if envelope.is_response else "req"
    return json.dumps(
        {key: envelope.payload, "sig": list(envelope.signatures)},
        separators=(",", ":"),
    )


def decode(frame: str | bytes) -> Envelope | DecodeError:
    """Parse a text frame into an envelope.

    Returns a :class:`DecodeError` instead of raising for anything that is
    not a well-formed request, response or legacy error frame.
    """
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError:
            return DecodeError("frame is not valid UTF-8")

    try:
        data = json.loads(frame)
    except ValueError:
        return DecodeError("invalid JSON", frame)

    if not isinstance(data, dict):
        return DecodeError("frame is not a JSON object", frame)

    if "err" in data:
        return _decode_legacy_error(data["err"], frame)

    if "res" in data:
        key, is_response = "res", True
    elif "req" in data:
        key, is_response = "req", False
    else:
        return DecodeError("frame has no req/res member", frame)

    body = data[key]
    if not isinstance(body, list) or len(body) < 3:
        return DecodeError(f"{key} must be an array of at least 3 elements", frame)

    request_id, method, params = body[0], body[1], body[2]
    timestamp = body[3] if len(body) > 3 else 0

    if isinstance(request_id, bool) or not isinstance(request_id, int) or request_id < 0:
        return DecodeError("request id must be an unsigned integer", frame)
    if not isinstance(method, str) or not method:
        return DecodeError("method must be a non-empty string", frame)
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        return DecodeError("timestamp must be an integer", frame)

    signatures = data.get("sig") or []
    if not isinstance(signatures, list) or not all(
        isinstance(sig, str) for sig in signatures
    ):
        return DecodeError("sig must be an array of strings", frame)

    return Envelope(
        request_id=request_id,
        method=method,
        params=_normalize_params(params),
        timestamp=timestamp,
        signatures=tuple(signatures),
        is_response=is_response,
    )


def classify(frame: str | Envelope | DecodeError) -> FrameKind:
    """Return the routing class of a frame.

    Raw text is classified from the frame head alone, so handshake control
    messages can be told apart from application responses without a full
    parse. Anything the head pattern does not recognise falls back to
    :func:`decode`.
    """
    if isinstance(frame, DecodeError):
        return FrameKind.UNKNOWN
    if isinstance(frame, Envelope):
        return _kind_for(frame.method, "res" if frame.is_response else "req")

    match = _FRAME_HEAD.match(frame)
    if match is not None:
        return _kind_for(match.group(2), match.group(1))
    return classify(decode(frame))


def parse_error_detail(params: Sequence[Any]) -> str:
    """Extract the message of an error response's params."""
    if not params:
        return "unknown error"
    first = params[0]
    if isinstance(first, str):
        return first
    if isinstance(first, Mapping):
        detail = first.get("error") or first.get("message")
        if detail:
            return str(detail)
    return str(first)


def _kind_for(method: str, member: str) -> FrameKind:
    if member == "err" or method == METHOD_ERROR:
        return FrameKind.ERROR
    if member == "req":
        return FrameKind.REQUEST
    if method == METHOD_AUTH_CHALLENGE:
        return FrameKind.AUTH_CHALLENGE
    if method == METHOD_AUTH_VERIFY:
        return FrameKind.AUTH_VERIFY
    return FrameKind.RESPONSE


def _normalize_params(params: Any) -> list[Any]:
    """Responses sometimes carry a bare object instead of an array."""
    if isinstance(params, list):
        return params
    if params is None:
        return []
    return [params]


def _decode_legacy_error(body: Any, frame: str) -> Envelope | DecodeError:
    """Decode the older ``{"err": [id, code, message, ts]}`` form."""
    if not isinstance(body, list) or len(body) < 3:
        return DecodeError("err must be an array of at least 3 elements", frame)
    request_id = body[0]
    if isinstance(request_id, bool) or not isinstance(request_id, int) or request_id < 0:
        return DecodeError("request id must be an unsigned integer", frame)
    timestamp = body[3] if len(body) > 3 and isinstance(body[3], int) else 0
    return Envelope(
        request_id=request_id,
        method=METHOD_ERROR,
        params=[{"error": f"Error {body[1]}: {body[2]}"}],
        timestamp=timestamp,
        is_response=True,
    )
