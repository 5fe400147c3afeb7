"""
Domain models for role-gated patient monitoring.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation and are frozen so a published state can be
shared between readers without copying.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Application roles stored on the profile record."""

    PATIENT = "patient"
    CARETAKER = "caretaker"
    MEDICAL = "medical"

    @classmethod
    def parse(cls, value: object) -> "Role | None":
        """Return the role for a raw profile value, or None if unrecognised."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class Principal(BaseModel):
    """Signed-in identity as reported by the identity provider."""

    model_config = ConfigDict(frozen=True)

    identity_id: str = Field(min_length=1)
    email: str | None = None


class Session(BaseModel):
    """Resolved, role-bearing representation of the signed-in principal."""

    model_config = ConfigDict(frozen=True)

    identity_id: str = Field(min_length=1)
    email: str | None = None
    role: Role | None = None
    profile: dict[str, Any] = Field(default_factory=dict)


InvalidReason = Literal["missing-profile", "bad-role", "lookup-failed"]


class Loading(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["loading"] = "loading"


class SignedOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["signed_out"] = "signed_out"


class Resolved(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["resolved"] = "resolved"
    session: Session


class Invalid(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["invalid"] = "invalid"
    reason: InvalidReason


SessionState = Loading | SignedOut | Resolved | Invalid


class Wait(BaseModel):
    """Gate outcome while the session is still resolving."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["wait"] = "wait"


class Permit(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["permit"] = "permit"


class Redirect(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["redirect"] = "redirect"
    target: str


GateDecision = Wait | Permit | Redirect


class Alert(BaseModel):
    """Read-only mirror of one document under patients/{patient_id}/alerts."""

    model_config = ConfigDict(frozen=True)

    id: str
    patient_id: str
    fields: dict[str, Any] = Field(default_factory=dict)

    @property
    def title(self) -> str | None:
        return self.fields.get("title")

    @property
    def message(self) -> str | None:
        return self.fields.get("message")

    @property
    def severity(self) -> str | None:
        return self.fields.get("severity")


class ServerTimestamp(BaseModel):
    """Sentinel asking the store to stamp the write with its own clock."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["server_timestamp"] = "server_timestamp"


SERVER_TIMESTAMP = ServerTimestamp()


class AuditLogEntry(BaseModel):
    """Append-only compliance record attributed to the resolved session."""

    model_config = ConfigDict(frozen=True)

    action: str = Field(min_length=1)
    actor_id: str = Field(min_length=1)
    timestamp: datetime | ServerTimestamp = SERVER_TIMESTAMP
    details: dict[str, Any] = Field(default_factory=dict)
    user_agent: str | None = None

    def to_document(self) -> dict[str, Any]:
        """Field layout of the auditLogs collection."""
        return {
            "action": self.action,
            "userId": self.actor_id,
            "timestamp": self.timestamp,
            "details": dict(self.details),
            "userAgent": self.user_agent,
        }


class VitalsReading(BaseModel):
    """Data shape produced by paired devices and health platforms."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    heart_rate: float | None = Field(default=None, gt=0)
    blood_pressure_systolic: float | None = Field(default=None, gt=0)
    blood_pressure_diastolic: float | None = Field(default=None, gt=0)
    oxygen_level: float | None = Field(default=None, ge=0, le=100)
    temperature: float | None = None
    glucose: float | None = Field(default=None, ge=0)
