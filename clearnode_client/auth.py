"""Authentication handshake for Clearnode sessions.

After the socket opens the session hands control to an :class:`Authenticator`,
which runs one attempt at a time:

1. With a cached, unexpired token it sends ``auth_verify`` carrying the
   token. If the node rejects the token itself, the token is discarded and
   the attempt falls through to the challenge path once.
2. Otherwise it sends ``auth_request`` and waits for ``auth_challenge``.
3. The challenge is held as the single pending challenge until the caller
   approves it (EIP-712 signature by the wallet, then ``auth_verify``) or
   rejects it.

Concurrent calls to :meth:`Authenticator.authenticate` join the attempt that
is already running. Inbound frames reach the authenticator only through
:meth:`Authenticator.handle_frame`, called from the session's single dispatch
loop, so no frame is ever consumed by two readers.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from eth_utils import to_checksum_address

from .credentials import token_expired
from .errors import (
    ClearnodeAuthError,
    ClearnodeChallengeTimeout,
    ClearnodeClientError,
    ClearnodeConnectionLost,
    ClearnodeTimeout,
    ClearnodeUserRejected,
)
from .protocol import (
    METHOD_AUTH_CHALLENGE,
    METHOD_AUTH_VERIFY,
    Envelope,
    FrameKind,
    build_auth_request,
    build_auth_verify,
    build_auth_verify_with_jwt,
)

if TYPE_CHECKING:
    from .credentials import CredentialStore, SessionKey
    from .signer import MessageSigner

_LOGGER = logging.getLogger(__name__)

AUTH_TYPES: dict[str, list[dict[str, str]]] = {
    "Policy": [
        {"name": "challenge", "type": "string"},
        {"name": "scope", "type": "string"},
        {"name": "wallet", "type": "address"},
        {"name": "application", "type": "address"},
        {"name": "participant", "type": "address"},
        {"name": "expire", "type": "uint256"},
        {"name": "allowances", "type": "Allowance[]"},
    ],
    "Allowance": [
        {"name": "asset", "type": "string"},
        {"name": "amount", "type": "uint256"},
    ],
}

# Rejections of a presented token that warrant dropping it.
_CREDENTIAL_ERROR = re.compile(r"jwt|token|expired|invalid|malformed", re.IGNORECASE)

# Application-phase errors meaning the session's token is no longer accepted.
_TOKEN_EXPIRY = re.compile(
    r"jwt|(expired|invalid|missing)\s+(auth\s+)?token|token\s+(has\s+)?expired"
    r"|session\s+expired",
    re.IGNORECASE,
)


def is_credential_error(message: str | None) -> bool:
    """Whether a rejection of a token-based attempt blames the token."""
    return bool(message) and _CREDENTIAL_ERROR.search(message) is not None


def is_token_expiry(message: str | None) -> bool:
    """Whether an application-phase error reports an expired/invalid token."""
    return bool(message) and _TOKEN_EXPIRY.search(message) is not None


@dataclass(frozen=True)
class AuthPolicy:
    """Scope and allowances requested for the session key.

    Attributes:
        app_name: Application name; also the EIP-712 domain name.
        scope: Requested permission scope.
        application: Application address; defaults to the wallet address.
        allowances: Spending allowances as ``{"asset", "amount"}`` mappings.
        expire_seconds: Lifetime requested for the session key.
    """

    app_name: str = "clearnode-client"
    scope: str = "console"
    application: str | None = None
    allowances: tuple[Mapping[str, str], ...] = ()
    expire_seconds: int = 24 * 60 * 60

    def expire_at(self, now: float | None = None) -> str:
        """Epoch-seconds expiry claim, as the string the node expects."""
        current = time.time() if now is None else now
        return str(int(current) + self.expire_seconds)

    def typed_data(
        self, *, challenge: str, wallet: str, participant: str, expire: str
    ) -> dict[str, Any]:
        """EIP-712 payload the wallet signs to approve a challenge."""
        wallet_address = to_checksum_address(wallet)
        return {
            "domain": {"name": self.app_name},
            "types": AUTH_TYPES,
            "primaryType": "Policy",
            "message": {
                "challenge": challenge,
                "scope": self.scope,
                "wallet": wallet_address,
                "application": to_checksum_address(self.application or wallet),
                "participant": to_checksum_address(participant),
                "expire": int(expire),
                "allowances": [
                    {"asset": item["asset"], "amount": int(item.get("amount", 0))}
                    for item in self.allowances
                ],
            },
        }


@dataclass(frozen=True)
class PendingChallenge:
    """A challenge received from the node and not yet answered."""

    challenge: str
    expire: str
    raw: Envelope = field(repr=False)
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful handshake."""

    address: str
    session_key: str
    jwt_token: str | None = field(default=None, repr=False)
    used_cached_token: bool = False


class AuthHost(Protocol):
    """What the authenticator needs from the session that owns the socket."""

    label: str

    def next_request_id(self) -> int: ...

    async def send_envelope(self, envelope: Envelope) -> None: ...

    def challenge_received(self, challenge: PendingChallenge) -> None: ...

    def challenge_cleared(self) -> None: ...


def extract_challenge(envelope: Envelope) -> str | None:
    """Pull the challenge text out of an ``auth_challenge`` response."""
    result = envelope.result
    if isinstance(result, str):
        return result or None
    if isinstance(result, Mapping):
        value = result.get("challenge_message") or result.get("challenge")
        return str(value) if value else None
    return None


class Authenticator:
    """Drive the challenge/credential handshake over the host's socket."""

    def __init__(
        self,
        host: AuthHost,
        *,
        identity: SessionKey,
        signer: MessageSigner,
        store: CredentialStore,
        policy: AuthPolicy,
        handshake_timeout: float = 30.0,
        challenge_timeout: float | None = 300.0,
        auto_approve: bool = True,
    ) -> None:
        self._host = host
        self._identity = identity
        self._signer = signer
        self._store = store
        self._policy = policy
        self._handshake_timeout = handshake_timeout
        self._challenge_timeout = challenge_timeout
        self._auto_approve = auto_approve

        self._attempt: asyncio.Task[AuthResult] | None = None
        self._waiter: asyncio.Future[Envelope] | None = None
        self._waiting_for: int | None = None
        self._pending: PendingChallenge | None = None
        self._outcome: asyncio.Future[AuthResult] | None = None
        self._approval_task: asyncio.Task[AuthResult] | None = None
        self._approving = False

    @property
    def in_progress(self) -> bool:
        return self._attempt is not None

    @property
    def pending_challenge(self) -> PendingChallenge | None:
        return self._pending

    @property
    def identity(self) -> SessionKey:
        return self._identity

    @property
    def signer(self) -> MessageSigner:
        return self._signer

    # -------------------------------------------------------------------------
    # Attempt lifecycle
    # -------------------------------------------------------------------------

    async def authenticate(self) -> AuthResult:
        """Run an authentication attempt, or join the one in flight."""
        if self._attempt is None:
            self._attempt = asyncio.get_running_loop().create_task(
                self._run(), name=f"{self._host.label}-auth"
            )
            self._attempt.add_done_callback(self._attempt_finished)
        else:
            _LOGGER.debug(
                "[%s] Authentication already in progress, joining it",
                self._host.label,
            )
        return await asyncio.shield(self._attempt)

    def abort(self, reason: str) -> None:
        """Fail whatever the current attempt waits on; safe to call anytime."""
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(ClearnodeConnectionLost(reason))
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_exception(ClearnodeConnectionLost(reason))
        if self._approval_task is not None:
            self._approval_task.cancel()
        self._clear_challenge(self._pending)

    def _attempt_finished(self, task: asyncio.Task[AuthResult]) -> None:
        if self._attempt is task:
            self._attempt = None
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.debug(
                "[%s] Authentication attempt ended: %s",
                self._host.label,
                task.exception(),
            )

    async def _run(self) -> AuthResult:
        token = self._load_usable_token()
        if token is not None:
            try:
                return await self._verify_token(token)
            except ClearnodeAuthError as err:
                if not err.credential_related:
                    raise
                _LOGGER.warning(
                    "[%s] Cached token rejected (%s), falling back to challenge",
                    self._host.label,
                    err,
                )
                self._store.clear_token()
        return await self._challenge_flow()

    def _load_usable_token(self) -> str | None:
        token = self._store.load_token()
        if token is None:
            return None
        if token_expired(token):
            _LOGGER.info("[%s] Cached token expired, discarding", self._host.label)
            self._store.clear_token()
            return None
        return token

    # -------------------------------------------------------------------------
    # Handshake steps
    # -------------------------------------------------------------------------

    async def _verify_token(self, token: str) -> AuthResult:
        _LOGGER.debug("[%s] Verifying with cached token", self._host.label)
        request = build_auth_verify_with_jwt(
            request_id=self._host.next_request_id(), jwt=token
        )
        response = await self._exchange(request)
        return self._complete(response, cached_token=token)

    async def _challenge_flow(self) -> AuthResult:
        expire = self._policy.expire_at()
        request = build_auth_request(
            request_id=self._host.next_request_id(),
            address=self._signer.address,
            session_key=self._identity.address,
            app_name=self._policy.app_name,
            allowances=self._policy.allowances,
            expire=expire,
            scope=self._policy.scope,
            application=self._policy.application or self._signer.address,
        )
        _LOGGER.debug(
            "[%s] Requesting challenge for %s (session key %s)",
            self._host.label,
            self._signer.address,
            self._identity.address,
        )
        response = await self._exchange(request)

        if response.is_error:
            raise ClearnodeAuthError(response.error_message or "Authentication failed")
        if response.method != METHOD_AUTH_CHALLENGE:
            raise ClearnodeAuthError(
                f"Expected {METHOD_AUTH_CHALLENGE}, got {response.method}"
            )
        text = extract_challenge(response)
        if text is None:
            raise ClearnodeAuthError("auth_challenge carried no challenge")

        challenge = PendingChallenge(challenge=text, expire=expire, raw=response)
        outcome: asyncio.Future[AuthResult] = asyncio.get_running_loop().create_future()
        self._pending = challenge
        self._outcome = outcome
        _LOGGER.info("[%s] Challenge received, awaiting approval", self._host.label)
        self._host.challenge_received(challenge)

        if self._auto_approve:
            self._approval_task = asyncio.get_running_loop().create_task(
                self.approve(), name=f"{self._host.label}-approve"
            )
            self._approval_task.add_done_callback(self._approval_finished)

        try:
            return await self._await_outcome(outcome)
        finally:
            self._outcome = None
            self._clear_challenge(challenge)

    async def _await_outcome(self, outcome: asyncio.Future[AuthResult]) -> AuthResult:
        if self._challenge_timeout is None:
            return await outcome
        await asyncio.wait({outcome}, timeout=self._challenge_timeout)
        if outcome.done() or self._approving:
            # The signer is never timed out once approval has started.
            return await outcome
        outcome.cancel()
        raise ClearnodeChallengeTimeout(
            f"Challenge not approved within {self._challenge_timeout:.1f}s"
        )

    async def approve(self) -> AuthResult:
        """Sign the pending challenge and complete verification.

        Raises:
            ClearnodeAuthError: If nothing awaits approval or the node
                rejects the signature.
            ClearnodeUserRejected: If the signer reports the user declined.
        """
        challenge, outcome = self._pending, self._outcome
        if challenge is None or outcome is None or outcome.done():
            raise ClearnodeAuthError("No challenge is awaiting approval")
        if self._approving:
            return await asyncio.shield(outcome)

        self._approving = True
        try:
            result = await self._answer_challenge(challenge)
        except ClearnodeUserRejected as err:
            self._settle(outcome, err)
            raise
        except ClearnodeClientError as err:
            self._settle(outcome, err)
            raise
        except Exception as err:
            wrapped = ClearnodeAuthError(f"Challenge signing failed: {err}")
            self._settle(outcome, wrapped)
            raise wrapped from err
        else:
            if not outcome.done():
                outcome.set_result(result)
            return result
        finally:
            self._approving = False
            self._clear_challenge(challenge)

    async def reject(self, reason: str = "User rejected the challenge") -> None:
        """Decline the pending challenge without contacting the node."""
        challenge, outcome = self._pending, self._outcome
        if challenge is None or outcome is None or outcome.done():
            raise ClearnodeAuthError("No challenge is awaiting approval")
        _LOGGER.info("[%s] Challenge rejected: %s", self._host.label, reason)
        self._clear_challenge(challenge)
        outcome.set_exception(ClearnodeUserRejected(reason))

    async def _answer_challenge(self, challenge: PendingChallenge) -> AuthResult:
        typed_data = self._policy.typed_data(
            challenge=challenge.challenge,
            wallet=self._signer.address,
            participant=self._identity.address,
            expire=challenge.expire,
        )
        signature = await self._signer.sign(typed_data)

        if self._pending is not challenge:
            raise ClearnodeConnectionLost("Challenge was discarded while signing")

        request = build_auth_verify(
            request_id=self._host.next_request_id(), challenge=challenge.challenge
        ).with_signatures(signature)
        response = await self._exchange(request)
        return self._complete(response)

    def _complete(
        self, response: Envelope, *, cached_token: str | None = None
    ) -> AuthResult:
        if response.is_error:
            message = response.error_message or "Authentication failed"
            raise ClearnodeAuthError(
                message,
                credential_related=cached_token is not None
                and is_credential_error(message),
            )
        if response.method != METHOD_AUTH_VERIFY:
            raise ClearnodeAuthError(
                f"Expected {METHOD_AUTH_VERIFY}, got {response.method}"
            )

        body = response.result if isinstance(response.result, Mapping) else {}
        if body.get("success") is False:
            raise ClearnodeAuthError(
                "Authentication rejected", credential_related=cached_token is not None
            )

        token = body.get("jwt_token") or body.get("jwtToken")
        if token:
            self._store.save_token(str(token))

        _LOGGER.info(
            "[%s] Authenticated as %s (%s)",
            self._host.label,
            body.get("address", self._signer.address),
            "cached token" if cached_token else "challenge",
        )
        return AuthResult(
            address=str(body.get("address", self._signer.address)),
            session_key=str(body.get("session_key", self._identity.address)),
            jwt_token=str(token) if token else cached_token,
            used_cached_token=cached_token is not None,
        )

    # -------------------------------------------------------------------------
    # Frame exchange
    # -------------------------------------------------------------------------

    def handle_frame(self, envelope: Envelope, kind: FrameKind) -> bool:
        """Offer an inbound handshake frame; returns True if it was consumed.

        Only a response carrying the id of the handshake request in flight
        is taken; anything else is left to the caller.
        """
        waiter = self._waiter
        if waiter is None or waiter.done():
            return False
        if not kind.is_auth_control or not envelope.is_response:
            return False
        if envelope.request_id != self._waiting_for:
            return False
        waiter.set_result(envelope)
        return True

    async def _exchange(self, request: Envelope) -> Envelope:
        waiter: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        self._waiter = waiter
        self._waiting_for = request.request_id
        try:
            await self._host.send_envelope(request)
            return await asyncio.wait_for(waiter, self._handshake_timeout)
        except TimeoutError as err:
            if isinstance(err, ClearnodeClientError):
                raise
            raise ClearnodeTimeout(
                f"No answer to {request.method} within {self._handshake_timeout:.1f}s"
            ) from err
        finally:
            if self._waiter is waiter:
                self._waiter = None
                self._waiting_for = None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _clear_challenge(self, challenge: PendingChallenge | None) -> None:
        if challenge is not None and self._pending is challenge:
            self._pending = None
            self._host.challenge_cleared()

    def _approval_finished(self, task: asyncio.Task[AuthResult]) -> None:
        if self._approval_task is task:
            self._approval_task = None
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.debug(
                "[%s] Automatic approval failed: %s", self._host.label, task.exception()
            )

    @staticmethod
    def _settle(outcome: asyncio.Future[AuthResult], exc: BaseException) -> None:
        if not outcome.done():
            outcome.set_exception(exc)
