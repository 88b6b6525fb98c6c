"""Session configuration.

Configuration is plain data: a frozen dataclass with defaults, optionally
loaded from a YAML document such as::

    url: wss://clearnet.example.org/ws
    request_timeout: 10
    ping_interval: 20
    max_retries: 5
    policy:
      app_name: Snake Game
      scope: snake-game
      allowances:
        - {asset: usdc, amount: "0"}
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .auth import AuthPolicy
from .ws import is_websocket_url


class ConfigError(Exception):
    """Error loading or validating a configuration."""


_DURATIONS = (
    "request_timeout",
    "handshake_timeout",
    "connect_timeout",
    "ping_interval",
    "retry_base_delay",
    "retry_max_delay",
)


@dataclass(frozen=True)
class ClearnodeConfig:
    """Tunables of one :class:`~clearnode_client.session.ClearnodeSession`.

    Attributes:
        url: WebSocket endpoint of the node.
        request_timeout: Default per-request timeout (seconds).
        handshake_timeout: Bound on each server round trip during auth.
        challenge_timeout: Bound on waiting for challenge approval; None
            waits indefinitely.
        connect_timeout: WebSocket open timeout.
        ping_interval: RPC heartbeat interval while connected.
        retry_base_delay: First reconnect delay; doubles per attempt.
        retry_max_delay: Upper bound of a single reconnect delay.
        max_retries: Reconnect attempts before giving up.
        auto_approve: Sign challenges as soon as they arrive.
        credentials_path: Credential file; None uses the default location.
        policy: Scope and allowances requested during authentication.
    """

    url: str = "ws://localhost:8000/ws"
    request_timeout: float = 10.0
    handshake_timeout: float = 30.0
    challenge_timeout: float | None = 300.0
    connect_timeout: float = 15.0
    ping_interval: float = 20.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    max_retries: int = 5
    auto_approve: bool = True
    credentials_path: Path | None = None
    policy: AuthPolicy = field(default_factory=AuthPolicy)

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not is_websocket_url(self.url):
            raise ConfigError(f"url must be a ws:// or wss:// URL, got {self.url!r}")
        for name in _DURATIONS:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.challenge_timeout is not None and self.challenge_timeout <= 0:
            raise ConfigError("challenge_timeout must be positive or null")
        if self.max_retries < 0:
            raise ConfigError("max_retries must not be negative")
        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigError("retry_max_delay must be >= retry_base_delay")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ClearnodeConfig:
        """Build a config from parsed YAML/JSON data; unknown keys are errors."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = dict(data)
        if (policy := values.get("policy")) is not None:
            if not isinstance(policy, Mapping):
                raise ConfigError("policy must be a mapping")
            values["policy"] = _parse_policy(policy)
        if (path := values.get("credentials_path")) is not None:
            values["credentials_path"] = Path(path).expanduser()

        try:
            return cls(**values)
        except TypeError as err:
            raise ConfigError(str(err)) from err


def _parse_policy(data: Mapping[str, Any]) -> AuthPolicy:
    allowances = data.get("allowances", [])
    if not isinstance(allowances, list) or not all(
        isinstance(item, Mapping) and "asset" in item for item in allowances
    ):
        raise ConfigError("policy.allowances must be a list of {asset, amount}")

    return AuthPolicy(
        app_name=str(data.get("app_name", AuthPolicy.app_name)),
        scope=str(data.get("scope", AuthPolicy.scope)),
        application=data.get("application"),
        allowances=tuple(
            {"asset": str(item["asset"]), "amount": str(item.get("amount", "0"))}
            for item in allowances
        ),
        expire_seconds=int(data.get("expire_seconds", AuthPolicy.expire_seconds)),
    )


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return data


def load_config(path: Path | str) -> ClearnodeConfig:
    """Load a session configuration from a YAML file.

    Raises:
        ConfigError: If the file is missing, malformed or invalid.
    """
    return ClearnodeConfig.from_mapping(_load_yaml(Path(path)))
