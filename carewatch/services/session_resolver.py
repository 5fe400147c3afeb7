"""
Session resolution: identity provider principal -> profile lookup -> role.

Key patterns:
- One writer for the SessionStore, driven by the provider's session-changed stream
- Race guard keyed by identity id: a lookup may only publish while its identity is current
- Profile-integrity failures are fatal to the session (Invalid + forced sign-out)
- Provider error codes never leak; callers get fixed user-facing messages
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from carewatch.config import BackendConfig
from carewatch.domain.models import (
    SERVER_TIMESTAMP,
    Invalid,
    Loading,
    Principal,
    Resolved,
    Role,
    Session,
    SessionState,
    SignedOut,
)
from carewatch.services.contracts import (
    IdentityErrorCode,
    IdentityProvider,
    IdentityProviderError,
    ProfileStore,
    Result,
    logger,
)
from carewatch.services.session_store import SessionStore

_INVALID_CREDENTIALS_MESSAGE = "Invalid email or password. Please try again."

SIGN_IN_ERROR_MESSAGES: dict[IdentityErrorCode, str] = {
    IdentityErrorCode.INVALID_CREDENTIAL: _INVALID_CREDENTIALS_MESSAGE,
    IdentityErrorCode.USER_NOT_FOUND: _INVALID_CREDENTIALS_MESSAGE,
    IdentityErrorCode.WRONG_PASSWORD: _INVALID_CREDENTIALS_MESSAGE,
    IdentityErrorCode.INVALID_EMAIL: "Invalid email address format.",
    IdentityErrorCode.USER_DISABLED: "This account has been disabled. Please contact support.",
    IdentityErrorCode.TOO_MANY_REQUESTS: "Too many failed login attempts. Please try again later.",
    IdentityErrorCode.NETWORK_REQUEST_FAILED: (
        "Network error. Please check your connection and try again."
    ),
    IdentityErrorCode.EMAIL_ALREADY_IN_USE: "An account with this email already exists.",
}
DEFAULT_SIGN_IN_MESSAGE = "An error occurred during login. Please try again."
UNEXPECTED_SIGN_IN_MESSAGE = "An unexpected error occurred. Please try again."
PROFILE_CREATE_FAILED_MESSAGE = "We could not create your profile. Please try again."

INVALID_SESSION_MESSAGES: dict[str, str] = {
    "missing-profile": "User profile not found. Please complete registration.",
    "bad-role": "Invalid user role. Please contact support.",
    "lookup-failed": "We could not load your profile. Please sign in again.",
}


class SignInError(Exception):
    """User-facing identity failure. `code` is kept for logs and tests only."""

    def __init__(self, message: str, code: IdentityErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    @classmethod
    def from_provider(cls, error: IdentityProviderError) -> "SignInError":
        return cls(SIGN_IN_ERROR_MESSAGES.get(error.code, DEFAULT_SIGN_IN_MESSAGE), error.code)


def session_state_from_profile(principal: Principal, profile: dict[str, Any] | None) -> SessionState:
    """Derive the resolution outcome for a completed profile lookup."""
    if profile is None:
        return Invalid(reason="missing-profile")

    role = Role.parse(profile.get("role"))
    if role is None:
        return Invalid(reason="bad-role")

    return Resolved(
        session=Session(
            identity_id=principal.identity_id,
            email=profile.get("email") or principal.email,
            role=role,
            profile=profile,
        )
    )


class SessionResolver:
    """
    Resolves "who is the caller and what role do they hold".

    Design principles:
    - Loading until the lookup for the current identity completes
    - Stale lookups are cancelled and, if they still complete, discarded
    - A half-authenticated session never grants access
    """

    def __init__(
        self,
        provider: IdentityProvider,
        profiles: ProfileStore,
        store: SessionStore | None = None,
        backend: BackendConfig | None = None,
    ) -> None:
        self.provider = provider
        self.profiles = profiles
        self.store = store or SessionStore()
        self.backend = backend or BackendConfig()
        self.logger = logger.bind(component="session_resolver")

        self._current_identity: str | None = None
        self._lookup_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def current_identity(self) -> str | None:
        """Identity id the provider reported last."""
        return self._current_identity

    def observe_session(self) -> AsyncIterator[SessionState]:
        return self.store.observe()

    def start(self) -> None:
        """Bind to the provider's session-changed stream."""
        if self._watch_task is not None and not self._watch_task.done():
            raise RuntimeError("SessionResolver already started")
        self._watch_task = asyncio.create_task(self._consume_session_changes())
        self.logger.info("session_resolver_started")

    async def stop(self) -> None:
        for task in (self._watch_task, self._lookup_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._watch_task = None
        self._lookup_task = None
        self.logger.info("session_resolver_stopped")

    @asynccontextmanager
    async def running(self) -> AsyncIterator["SessionResolver"]:
        self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def _consume_session_changes(self) -> None:
        async for principal in self.provider.session_changes():
            self.handle_session_change(principal)

    def handle_session_change(self, principal: Principal | None) -> None:
        """React to one provider event. Never blocks; lookups run as tasks."""
        if principal is None:
            self._current_identity = None
            self._cancel_lookup()
            self.store.publish(SignedOut())
            self.logger.info("session_signed_out")
            return

        session = self.store.session
        if session is not None and session.identity_id == principal.identity_id:
            # Re-notification for the identity already resolved.
            return

        self._current_identity = principal.identity_id
        self._cancel_lookup()
        self.store.publish(Loading())
        self._lookup_task = asyncio.create_task(self._resolve(principal))
        self.logger.info("profile_lookup_started", identity_id=principal.identity_id)

    def _cancel_lookup(self) -> None:
        if self._lookup_task is not None and not self._lookup_task.done():
            self._lookup_task.cancel()
        self._lookup_task = None

    async def _resolve(self, principal: Principal) -> None:
        identity_id = principal.identity_id
        try:
            profile = await self.profiles.get_document(self.backend.profile_path(identity_id))
        except Exception as e:
            self.logger.exception("profile_lookup_failed", identity_id=identity_id, error=str(e))
            state: SessionState = Invalid(reason="lookup-failed")
        else:
            state = session_state_from_profile(principal, profile)

        if not self.apply_lookup(identity_id, state):
            return

        if isinstance(state, Invalid):
            await self._force_sign_out(identity_id, state.reason)

    def apply_lookup(self, identity_id: str, state: SessionState) -> bool:
        """
        Publish a lookup outcome if `identity_id` is still current.

        Current means both the last event consumed and the provider's own
        principal, which may already be ahead of a queued event.
        """
        reported = self.provider.current_principal
        reported_identity = reported.identity_id if reported is not None else None
        if identity_id != self._current_identity or identity_id != reported_identity:
            self.logger.debug(
                "stale_profile_lookup_discarded",
                identity_id=identity_id,
                current_identity=self._current_identity,
                provider_identity=reported_identity,
            )
            return False

        self.store.publish(state)
        if isinstance(state, Resolved):
            role = state.session.role
            self.logger.info(
                "session_resolved", identity_id=identity_id, role=role.value if role else None
            )
        elif isinstance(state, Invalid):
            self.logger.warning("session_invalid", identity_id=identity_id, reason=state.reason)
        return True

    async def _force_sign_out(self, identity_id: str, reason: str) -> None:
        self.logger.warning("forcing_sign_out", identity_id=identity_id, reason=reason)
        try:
            await self.provider.sign_out()
        except Exception as e:
            # The session stays Invalid, which already denies access.
            self.logger.exception("forced_sign_out_failed", identity_id=identity_id, error=str(e))

    async def sign_in(self, email: str, password: str) -> Result[Principal, SignInError]:
        """
        Authenticate with the provider.

        Resolution continues through the session-changed stream; the returned
        principal only confirms the credentials were accepted.
        """
        try:
            result = await self.provider.sign_in(email, password)
        except IdentityProviderError as e:
            result = Result.err(e)
        except Exception as e:
            self.logger.exception("sign_in_unexpected_error", error=str(e))
            return Result.err(SignInError(UNEXPECTED_SIGN_IN_MESSAGE))

        if result.is_err():
            error = result.unwrap_err()
            self.logger.warning("sign_in_failed", code=error.code.value)
            return Result.err(SignInError.from_provider(error))

        principal = result.unwrap()
        self.logger.info("sign_in_accepted", identity_id=principal.identity_id)
        return Result.ok(principal)

    async def register(
        self,
        email: str,
        password: str,
        role: Role | str,
        profile: dict[str, Any] | None = None,
    ) -> Result[Principal, SignInError]:
        """Create an account with its profile record, then sign it in."""
        parsed_role = Role.parse(role)
        if parsed_role is None:
            raise ValueError(f"Unknown role: {role!r}")

        try:
            created = await self.provider.create_user(email, password)
        except IdentityProviderError as e:
            created = Result.err(e)

        if created.is_err():
            error = created.unwrap_err()
            self.logger.warning("registration_failed", code=error.code.value)
            return Result.err(SignInError.from_provider(error))

        principal = created.unwrap()
        document = {
            **(profile or {}),
            "uid": principal.identity_id,
            "role": parsed_role.value,
            "email": email,
            "createdAt": SERVER_TIMESTAMP,
        }
        try:
            await self.profiles.set_document(
                self.backend.profile_path(principal.identity_id), document
            )
        except Exception as e:
            self.logger.exception(
                "profile_create_failed", identity_id=principal.identity_id, error=str(e)
            )
            await self._discard_account(principal.identity_id)
            return Result.err(SignInError(PROFILE_CREATE_FAILED_MESSAGE))

        self.logger.info(
            "profile_created", identity_id=principal.identity_id, role=parsed_role.value
        )

        return await self.sign_in(email, password)

    async def _discard_account(self, identity_id: str) -> None:
        """Remove an account whose profile could not be written, so signup can be retried."""
        try:
            await self.provider.delete_user(identity_id)
        except Exception as e:
            self.logger.exception(
                "orphan_account_cleanup_failed", identity_id=identity_id, error=str(e)
            )
            return
        self.logger.info("orphan_account_removed", identity_id=identity_id)

    async def sign_out(self) -> None:
        """Sign out at the provider; the local session is reset even if that fails."""
        try:
            await self.provider.sign_out()
        except Exception as e:
            self.logger.exception("sign_out_failed", error=str(e))
        finally:
            self._current_identity = None
            self._cancel_lookup()
            self.store.reset()
