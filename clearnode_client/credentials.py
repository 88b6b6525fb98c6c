"""Persistence of the cached auth token and the local session key."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from eth_account import Account
from eth_utils import to_hex

from .signer import SessionKeySigner

_LOGGER = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = Path.home() / ".clearnode" / "credentials.json"

_TOKEN_KEY = "jwt_token"
_SESSION_KEY_KEY = "session_key"


@dataclass(frozen=True)
class SessionKey:
    """Local signing identity; only its address ever leaves the process."""

    private_key: str = field(repr=False)
    address: str

    @classmethod
    def generate(cls) -> SessionKey:
        """Create a fresh random keypair."""
        account = Account.create()
        return cls(private_key=to_hex(account.key), address=account.address)

    @classmethod
    def from_private_key(cls, private_key: str) -> SessionKey:
        account = Account.from_key(private_key)
        return cls(private_key=to_hex(account.key), address=account.address)

    def signer(self) -> SessionKeySigner:
        """Envelope signer backed by this key."""
        return SessionKeySigner(self.private_key)


def token_expired(token: str, *, now: float | None = None, leeway: float = 0.0) -> bool:
    """Check the ``exp`` claim of a JWT without verifying its signature.

    Tokens whose claims cannot be read are reported as not expired; the node
    is authoritative and rejects them during verification.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return False
    segment = parts[1]
    padding = "=" * (-len(segment) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment + padding))
    except (binascii.Error, ValueError):
        return False
    if not isinstance(claims, dict):
        return False
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return False
    current = time.time() if now is None else now
    return current >= exp - leeway


class CredentialStore:
    """File-backed cache of one token and one session key.

    The document is a small JSON object rewritten atomically on every change.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else DEFAULT_CREDENTIALS_PATH

    def load_token(self) -> str | None:
        token = self._read().get(_TOKEN_KEY)
        return token if isinstance(token, str) and token else None

    def save_token(self, token: str) -> None:
        if not token:
            raise ValueError("token must be a non-empty string")
        data = self._read()
        data[_TOKEN_KEY] = token
        self._write(data)
        _LOGGER.debug("Auth token cached")

    def clear_token(self) -> None:
        data = self._read()
        if data.pop(_TOKEN_KEY, None) is not None:
            self._write(data)
            _LOGGER.debug("Auth token cleared")

    def load_session_key(self) -> SessionKey | None:
        raw = self._read().get(_SESSION_KEY_KEY)
        if not isinstance(raw, dict) or "private_key" not in raw:
            return None
        try:
            return SessionKey.from_private_key(raw["private_key"])
        except (ValueError, TypeError) as err:
            _LOGGER.warning("Stored session key is unusable: %s", err)
            return None

    def save_session_key(self, key: SessionKey) -> None:
        data = self._read()
        data[_SESSION_KEY_KEY] = {
            "private_key": key.private_key,
            "address": key.address,
        }
        self._write(data)

    def load_or_create_session_key(self) -> SessionKey:
        """Return the stored session key, generating and saving one if absent."""
        key = self.load_session_key()
        if key is None:
            key = SessionKey.generate()
            self.save_session_key(key)
            _LOGGER.info("Generated session key %s", key.address)
        return key

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as err:
            _LOGGER.warning("Ignoring unreadable credential file %s: %s", self.path, err)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(data), encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self.path)


class MemoryCredentialStore(CredentialStore):
    """In-process credential cache with the same interface."""

    def __init__(self, *, token: str | None = None, session_key: SessionKey | None = None) -> None:
        super().__init__(path=Path(os.devnull))
        self._data: dict[str, Any] = {}
        if token:
            self._data[_TOKEN_KEY] = token
        if session_key is not None:
            self._data[_SESSION_KEY_KEY] = {
                "private_key": session_key.private_key,
                "address": session_key.address,
            }

    def _read(self) -> dict[str, Any]:
        return dict(self._data)

    def _write(self, data: dict[str, Any]) -> None:
        self._data = dict(data)
