"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no API keys in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables from .env file
load_dotenv()


class BackendConfig(BaseModel):
    """Identity provider and document store settings."""

    project_id: str = Field(default="carewatch-dev", min_length=1, description="Backend project")
    api_key: str | None = Field(default=None, description="Backend web API key")

    users_collection: str = Field(default="users", min_length=1)
    alerts_collection_template: str = Field(
        default="patients/{patient_id}/alerts",
        description="Per-patient alert collection path",
    )
    audit_collection: str = Field(default="auditLogs", min_length=1)

    @field_validator("alerts_collection_template")
    def validate_alerts_template(cls, v: str) -> str:
        if "{patient_id}" not in v:
            raise ValueError("alerts collection template must contain '{patient_id}'")
        return v

    def profile_path(self, identity_id: str) -> str:
        return f"{self.users_collection}/{identity_id}"

    def alerts_path(self, patient_id: str) -> str:
        return self.alerts_collection_template.format(patient_id=patient_id)


class RoutingConfig(BaseModel):
    """Logical route targets used by the gates."""

    login_path: str = Field(default="/login")
    dashboard_path_template: str = Field(default="/dashboard/{role}")

    @field_validator("login_path", "dashboard_path_template")
    def validate_absolute(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("route paths must start with '/'")
        return v

    @field_validator("dashboard_path_template")
    def validate_dashboard_template(cls, v: str) -> str:
        if "{role}" not in v:
            raise ValueError("dashboard path template must contain '{role}'")
        return v


class AuditConfig(BaseModel):
    """Compliance audit trail settings."""

    enabled: bool = Field(default=True, description="Append audit entries to the store")
    user_agent: str = Field(default="carewatch-runtime", description="Client identifier on entries")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    backend: BackendConfig = Field(default_factory=BackendConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    @model_validator(mode="after")
    def api_key_outside_dev(self) -> "AppConfig":
        """Deployed environments must talk to a real backend project."""
        if self.environment != "development":
            key = self.backend.api_key
            if not key or key == "your-api-key-here":
                raise ValueError("backend API key must be set outside development")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    backend_config = BackendConfig(
        project_id=os.getenv("BACKEND_PROJECT_ID", "carewatch-dev"),
        api_key=os.getenv("BACKEND_API_KEY") or None,
        users_collection=os.getenv("USERS_COLLECTION", "users"),
        alerts_collection_template=os.getenv(
            "ALERTS_COLLECTION_TEMPLATE", "patients/{patient_id}/alerts"
        ),
        audit_collection=os.getenv("AUDIT_COLLECTION", "auditLogs"),
    )

    routing_config = RoutingConfig(
        login_path=os.getenv("LOGIN_PATH", "/login"),
        dashboard_path_template=os.getenv("DASHBOARD_PATH_TEMPLATE", "/dashboard/{role}"),
    )

    audit_config = AuditConfig(
        enabled=_parse_bool(os.getenv("AUDIT_ENABLED"), True),
        user_agent=os.getenv("AUDIT_USER_AGENT", "carewatch-runtime"),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        backend=backend_config,
        routing=routing_config,
        audit=audit_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def validate_config() -> None:
    """Validate configuration at startup."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        if config.backend.api_key:
            print("Backend API key configured")
        if not config.audit.enabled:
            print("WARNING: audit trail disabled")

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nBACKEND")
    print(f"Project: {config.backend.project_id}")
    print(f"Profiles: {config.backend.users_collection}")
    print(f"Alerts: {config.backend.alerts_collection_template}")
    print(f"Audit Log: {config.backend.audit_collection}")

    print("\nROUTING")
    print(f"Login: {config.routing.login_path}")
    print(f"Dashboard: {config.routing.dashboard_path_template}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
