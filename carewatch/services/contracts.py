"""
Backend contracts for the care monitoring runtime.

Key patterns:
- Protocol-based dependency injection for the identity provider and document store
- Generic Result type for expected failures (bad credentials, unknown accounts)
- Callback-style push listeners returning an unsubscribe handle
- Structured logging shared by every service module, reconfigurable from LoggingConfig
"""

import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any, Generic, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import TypeVar

from carewatch.config import LoggingConfig
from carewatch.domain.models import Principal


def configure_logging(config: LoggingConfig) -> None:
    """
    Configure structured logging (production-ready observability).

    The level is applied to the stdlib root logger, which `filter_by_level`
    consults, so it also reaches loggers that are already bound. The format
    picks the final renderer for loggers bound after the call.
    """
    logging.basicConfig(format="%(message)s", level=config.level)
    logging.getLogger().setLevel(config.level)

    renderer: structlog.types.Processor
    if config.format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(LoggingConfig())

logger = structlog.get_logger(__name__)

# Generic Result type for explicit error handling
ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException, default=Exception)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Used where failure is ordinary business logic: a wrong password is not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class IdentityErrorCode(str, Enum):
    """Error codes reported by the identity provider."""

    INVALID_CREDENTIAL = "auth/invalid-credential"
    USER_NOT_FOUND = "auth/user-not-found"
    WRONG_PASSWORD = "auth/wrong-password"
    INVALID_EMAIL = "auth/invalid-email"
    USER_DISABLED = "auth/user-disabled"
    TOO_MANY_REQUESTS = "auth/too-many-requests"
    NETWORK_REQUEST_FAILED = "auth/network-request-failed"
    EMAIL_ALREADY_IN_USE = "auth/email-already-in-use"
    UNKNOWN = "auth/unknown"


class IdentityProviderError(Exception):
    """Raw failure from the identity provider, carrying its error code."""

    def __init__(self, code: IdentityErrorCode, message: str = "") -> None:
        super().__init__(message or code.value)
        self.code = code


class DocumentSnapshot(BaseModel):
    """One document of a pushed collection snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    data: dict[str, Any] = Field(default_factory=dict)


SnapshotCallback = Callable[[list[DocumentSnapshot]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class IdentityProvider(Protocol):
    """
    External service authenticating credentials and reporting session changes.

    `create_user` registers an account without signing it in; only `sign_in`
    and `sign_out` produce session-changed events.
    """

    @property
    def current_principal(self) -> Principal | None:
        """Principal the provider holds right now, ahead of any queued event."""
        ...

    async def sign_in(
        self, email: str, password: str
    ) -> Result[Principal, IdentityProviderError]: ...

    async def create_user(
        self, email: str, password: str
    ) -> Result[Principal, IdentityProviderError]: ...

    async def delete_user(self, identity_id: str) -> None:
        """Remove an account that was created but never completed registration."""
        ...

    async def sign_out(self) -> None: ...

    def session_changes(self) -> AsyncIterator[Principal | None]:
        """Yield the current principal (or None) and every change after it."""
        ...


class ProfileStore(Protocol):
    """Keyed record lookup; profiles live at users/{identity_id}."""

    async def get_document(self, path: str) -> dict[str, Any] | None: ...

    async def set_document(self, path: str, data: dict[str, Any]) -> None: ...


class AlertStore(Protocol):
    """Collection store supporting live push subscriptions."""

    def listen(
        self,
        collection_path: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        """
        Start pushing ordered snapshots of the collection.

        Pushes are delivered asynchronously, in store order. The returned callable
        stops delivery; calling it more than once must be harmless.
        """
        ...


class AuditStore(Protocol):
    """Append-only collection store."""

    async def add_document(self, collection_path: str, data: dict[str, Any]) -> str: ...
