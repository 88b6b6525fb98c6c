"""Pytest configuration and fixtures for clearnode_client tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from unittest.mock import patch

import pytest
import pytest_asyncio
from fakes import SESSION_PRIVATE_KEY, WALLET_KEY, FakeNode

from clearnode_client.config import ClearnodeConfig
from clearnode_client.credentials import MemoryCredentialStore, SessionKey
from clearnode_client.session import ClearnodeSession
from clearnode_client.signer import WalletSigner


@pytest.fixture
def node() -> Iterator[FakeNode]:
    """Scripted node; every socket the session opens connects to it."""
    fake = FakeNode()
    with patch("clearnode_client.session.ClearnodeWsClient", side_effect=fake.new_client):
        yield fake


@pytest.fixture
def wallet() -> WalletSigner:
    return WalletSigner(WALLET_KEY)


@pytest.fixture
def identity() -> SessionKey:
    return SessionKey.from_private_key(SESSION_PRIVATE_KEY)


@pytest.fixture
def store() -> MemoryCredentialStore:
    return MemoryCredentialStore()


@pytest.fixture
def config() -> ClearnodeConfig:
    """Fast timers so reconnect and timeout paths finish quickly."""
    return ClearnodeConfig(
        url="ws://node.test/ws",
        request_timeout=1.0,
        handshake_timeout=1.0,
        ping_interval=30.0,
        retry_base_delay=0.01,
        retry_max_delay=0.04,
        max_retries=3,
    )


@pytest_asyncio.fixture
async def session(
    node: FakeNode, config: ClearnodeConfig, store: MemoryCredentialStore
) -> AsyncIterator[ClearnodeSession]:
    client = ClearnodeSession(config, store=store, label="test")
    yield client
    await client.close()
