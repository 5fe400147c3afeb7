"""
In-memory identity provider implementing the IdentityProvider protocol.

Mirrors the behaviour the runtime relies on from a hosted provider:
- error codes for bad credentials, disabled accounts and throttling
- a session-changed stream that replays the current principal to new listeners
- `create_user` registers without signing in
- `delete_user` removes an account, signing it out if it is current
"""

import asyncio
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass

from carewatch.domain.models import Principal
from carewatch.services.contracts import (
    IdentityErrorCode,
    IdentityProviderError,
    Result,
    logger,
)


@dataclass
class _Account:
    identity_id: str
    email: str
    password: str
    disabled: bool = False
    failed_attempts: int = 0


class InMemoryIdentityProvider:
    """Process-local accounts with provider-style session events."""

    def __init__(self, max_failed_attempts: int = 5, latency_seconds: float = 0.0) -> None:
        self.max_failed_attempts = max_failed_attempts
        self.latency_seconds = latency_seconds
        self.network_available = True
        self.sign_out_calls = 0
        self.logger = logger.bind(component="memory_identity_provider")

        self._accounts: dict[str, _Account] = {}
        self._current: Principal | None = None
        self._listeners: set[asyncio.Queue[Principal | None]] = set()

    @property
    def current_principal(self) -> Principal | None:
        return self._current

    def add_account(
        self,
        email: str,
        password: str,
        identity_id: str | None = None,
        disabled: bool = False,
    ) -> Principal:
        account = _Account(
            identity_id=identity_id or uuid.uuid4().hex,
            email=email,
            password=password,
            disabled=disabled,
        )
        self._accounts[email.lower()] = account
        return Principal(identity_id=account.identity_id, email=email)

    def emit(self, principal: Principal | None) -> None:
        """Report a session change to every listener."""
        if principal == self._current:
            return
        self._current = principal
        self.logger.debug(
            "principal_changed", identity_id=principal.identity_id if principal else None
        )
        for queue in self._listeners:
            queue.put_nowait(principal)

    async def _round_trip(self) -> IdentityProviderError | None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        if not self.network_available:
            return IdentityProviderError(IdentityErrorCode.NETWORK_REQUEST_FAILED)
        return None

    async def sign_in(self, email: str, password: str) -> Result[Principal, IdentityProviderError]:
        failure = await self._round_trip()
        if failure is not None:
            return Result.err(failure)
        if "@" not in email:
            return Result.err(IdentityProviderError(IdentityErrorCode.INVALID_EMAIL))

        account = self._accounts.get(email.lower())
        if account is None:
            return Result.err(IdentityProviderError(IdentityErrorCode.INVALID_CREDENTIAL))
        if account.disabled:
            return Result.err(IdentityProviderError(IdentityErrorCode.USER_DISABLED))
        if account.failed_attempts >= self.max_failed_attempts:
            return Result.err(IdentityProviderError(IdentityErrorCode.TOO_MANY_REQUESTS))
        if account.password != password:
            account.failed_attempts += 1
            return Result.err(IdentityProviderError(IdentityErrorCode.INVALID_CREDENTIAL))

        account.failed_attempts = 0
        principal = Principal(identity_id=account.identity_id, email=account.email)
        self.emit(principal)
        return Result.ok(principal)

    async def create_user(
        self, email: str, password: str
    ) -> Result[Principal, IdentityProviderError]:
        failure = await self._round_trip()
        if failure is not None:
            return Result.err(failure)
        if "@" not in email:
            return Result.err(IdentityProviderError(IdentityErrorCode.INVALID_EMAIL))
        if email.lower() in self._accounts:
            return Result.err(IdentityProviderError(IdentityErrorCode.EMAIL_ALREADY_IN_USE))
        return Result.ok(self.add_account(email, password))

    async def delete_user(self, identity_id: str) -> None:
        failure = await self._round_trip()
        if failure is not None:
            raise failure
        for key, account in list(self._accounts.items()):
            if account.identity_id == identity_id:
                del self._accounts[key]
        if self._current is not None and self._current.identity_id == identity_id:
            self.emit(None)

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.emit(None)

    async def session_changes(self) -> AsyncIterator[Principal | None]:
        queue: asyncio.Queue[Principal | None] = asyncio.Queue()
        self._listeners.add(queue)
        try:
            yield self._current
            while True:
                yield await queue.get()
        finally:
            self._listeners.discard(queue)
