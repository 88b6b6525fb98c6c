"""Tests for the credential cache."""

from __future__ import annotations

import base64
import json
import stat

import pytest
from fakes import SESSION_PRIVATE_KEY

from clearnode_client.credentials import (
    CredentialStore,
    MemoryCredentialStore,
    SessionKey,
    token_expired,
)
from clearnode_client.signer import SessionKeySigner


def make_jwt(claims) -> str:
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
    return f"eyJhbGciOiJIUzI1NiJ9.{body}.c2lnbmF0dXJl"


class TestTokenExpired:
    """Tests for token_expired()."""

    def test_future_exp(self):
        assert not token_expired(make_jwt({"exp": 2000}), now=1000)

    def test_past_exp(self):
        assert token_expired(make_jwt({"exp": 1000}), now=2000)

    def test_leeway(self):
        assert token_expired(make_jwt({"exp": 1010}), now=1000, leeway=30)

    def test_unreadable_tokens_are_not_expired(self):
        """Test the node, not the client, judges opaque tokens."""
        assert not token_expired("jwt-abc")
        assert not token_expired("a.!!!.c")
        assert not token_expired(make_jwt({"sub": "x"}))
        assert not token_expired(make_jwt(["not", "a", "dict"]))
        assert not token_expired(make_jwt({"exp": "soon"}))


class TestSessionKey:
    """Tests for SessionKey."""

    def test_generate(self):
        key = SessionKey.generate()

        assert key.address.startswith("0x")
        assert len(key.address) == 42
        assert key.private_key.startswith("0x")

    def test_from_private_key(self):
        key = SessionKey.from_private_key(SESSION_PRIVATE_KEY)

        assert key.private_key == SESSION_PRIVATE_KEY
        assert key == SessionKey.from_private_key(SESSION_PRIVATE_KEY)

    def test_repr_hides_private_key(self):
        key = SessionKey.from_private_key(SESSION_PRIVATE_KEY)

        assert SESSION_PRIVATE_KEY not in repr(key)

    def test_signer(self):
        key = SessionKey.from_private_key(SESSION_PRIVATE_KEY)
        signer = key.signer()

        assert isinstance(signer, SessionKeySigner)
        assert signer.address == key.address


class TestCredentialStore:
    """Tests for the file-backed store."""

    def test_token_roundtrip(self, tmp_path):
        store = CredentialStore(tmp_path / "creds.json")

        assert store.load_token() is None
        store.save_token("jwt-abc")

        assert CredentialStore(tmp_path / "creds.json").load_token() == "jwt-abc"

    def test_clear_token_keeps_session_key(self, tmp_path):
        store = CredentialStore(tmp_path / "creds.json")
        key = store.load_or_create_session_key()
        store.save_token("jwt-abc")

        store.clear_token()

        assert store.load_token() is None
        assert store.load_session_key() == key

    def test_file_is_private(self, tmp_path):
        path = tmp_path / "nested" / "creds.json"
        CredentialStore(path).save_token("jwt-abc")

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert not (tmp_path / "nested" / "creds.json.tmp").exists()

    def test_session_key_persists(self, tmp_path):
        """Test the generated key is reused by later stores."""
        first = CredentialStore(tmp_path / "creds.json").load_or_create_session_key()
        second = CredentialStore(tmp_path / "creds.json").load_or_create_session_key()

        assert first == second

    def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "creds.json"
        path.write_text("{not json")
        store = CredentialStore(path)

        assert store.load_token() is None
        store.save_token("jwt-abc")
        assert store.load_token() == "jwt-abc"

    def test_unusable_session_key(self, tmp_path):
        path = tmp_path / "creds.json"
        path.write_text(json.dumps({"session_key": {"private_key": "0x1234"}}))

        assert CredentialStore(path).load_session_key() is None

    def test_empty_token_refused(self, tmp_path):
        store = CredentialStore(tmp_path / "creds.json")

        with pytest.raises(ValueError):
            store.save_token("")


class TestMemoryCredentialStore:
    """Tests for the in-memory store."""

    def test_initial_values(self):
        key = SessionKey.from_private_key(SESSION_PRIVATE_KEY)
        store = MemoryCredentialStore(token="jwt-abc", session_key=key)

        assert store.load_token() == "jwt-abc"
        assert store.load_session_key() == key

    def test_does_not_touch_disk(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        store = MemoryCredentialStore()

        store.save_token("jwt-abc")
        store.clear_token()

        assert store.load_token() is None
        assert list(tmp_path.iterdir()) == []
