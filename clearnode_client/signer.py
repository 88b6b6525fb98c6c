"""Signing capabilities consumed by the session.

The session never knows how a signature is produced. Anything exposing an
``address`` and an awaitable ``sign(payload)`` works: a browser wallet bridge,
a hardware device, or the local key signers below. A signer that wants to
report that its user declined raises :class:`ClearnodeUserRejected`.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_hex


@runtime_checkable
class MessageSigner(Protocol):
    """Asynchronous signing capability bound to one address."""

    @property
    def address(self) -> str: ...

    async def sign(self, payload: Any) -> str: ...


class SessionKeySigner:
    """Sign RPC envelopes with a local session key.

    The payload is serialized as compact JSON (strings are used as-is) and
    signed as a raw keccak-256 digest, the scheme the node verifies request
    signatures with.
    """

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, payload: Any) -> str:
        text = (
            payload
            if isinstance(payload, str)
            else json.dumps(payload, separators=(",", ":"))
        )
        signed = self._account.unsafe_sign_hash(keccak(text=text))
        return to_hex(signed.signature)


class WalletSigner:
    """Sign EIP-712 typed data with a locally held wallet key.

    Expects payloads shaped ``{"domain": ..., "types": ..., "message": ...}``
    where ``types`` omits ``EIP712Domain``.
    """

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, payload: Any) -> str:
        if not isinstance(payload, Mapping) or "types" not in payload:
            raise ValueError("WalletSigner expects EIP-712 typed data")
        signable = encode_typed_data(
            domain_data=dict(payload["domain"]),
            message_types=dict(payload["types"]),
            message_data=dict(payload["message"]),
        )
        signed = self._account.sign_message(signable)
        return to_hex(signed.signature)
