"""
Best-effort compliance audit trail.

Entries are attributed to the session resolved at call time, never to a name
supplied by the caller. Appends run in the background; a failing store is
logged and otherwise ignored so the audited action is never blocked.
"""

import asyncio
import traceback
from enum import Enum
from typing import Any

from carewatch.config import AuditConfig, BackendConfig
from carewatch.domain.models import SERVER_TIMESTAMP, AuditLogEntry
from carewatch.services.contracts import AuditStore, logger
from carewatch.services.session_store import SessionStore


class AuditAction(str, Enum):
    """Predefined audit actions for consistency."""

    # Authentication actions
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    EMAIL_VERIFIED = "email_verified"

    # Device actions
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_SYNC_STARTED = "device_sync_started"
    DEVICE_SYNC_COMPLETED = "device_sync_completed"
    DEVICE_SYNC_FAILED = "device_sync_failed"

    # Data access actions
    VITALS_VIEWED = "vitals_viewed"
    VITALS_EXPORTED = "vitals_exported"
    PATIENT_PROFILE_VIEWED = "patient_profile_viewed"
    PATIENT_PROFILE_UPDATED = "patient_profile_updated"

    # Alert actions
    ALERT_CREATED = "alert_created"
    ALERT_VIEWED = "alert_viewed"
    ALERT_DISMISSED = "alert_dismissed"

    # Invitation actions
    INVITATION_SENT = "invitation_sent"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    INVITATION_REVOKED = "invitation_revoked"

    # Settings actions
    SETTINGS_UPDATED = "settings_updated"
    NOTIFICATION_PREFERENCES_UPDATED = "notification_preferences_updated"

    # Medical professional actions
    MEDICAL_NOTE_CREATED = "medical_note_created"
    MEDICAL_NOTE_UPDATED = "medical_note_updated"
    PRESCRIPTION_CREATED = "prescription_created"

    # System actions
    ERROR_OCCURRED = "error_occurred"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"


class AuditLogger:
    """Fire-and-forget appender for the auditLogs collection."""

    def __init__(
        self,
        store: AuditStore,
        sessions: SessionStore,
        config: AuditConfig | None = None,
        backend: BackendConfig | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.config = config or AuditConfig()
        self.backend = backend or BackendConfig()
        self.logger = logger.bind(component="audit_logger")
        self._pending: set[asyncio.Task[None]] = set()

    def record(self, action: AuditAction | str, details: dict[str, Any] | None = None) -> None:
        """Append an entry for the current session. Never raises, never blocks."""
        action_name = action.value if isinstance(action, AuditAction) else action
        if not self.config.enabled:
            return

        session = self.sessions.session
        if session is None:
            self.logger.warning("audit_skipped_no_session", action=action_name)
            return

        try:
            entry = AuditLogEntry(
                action=action_name,
                actor_id=session.identity_id,
                timestamp=SERVER_TIMESTAMP,
                details={**(details or {}), "userEmail": session.email},
                user_agent=self.config.user_agent,
            )
            task = asyncio.get_running_loop().create_task(self._append(entry))
        except Exception as e:
            self.logger.exception("audit_record_failed", action=action_name, error=str(e))
            return

        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _append(self, entry: AuditLogEntry) -> None:
        try:
            document_id = await self.store.add_document(
                self.backend.audit_collection, entry.to_document()
            )
        except Exception as e:
            self.logger.error(
                "audit_append_failed",
                action=entry.action,
                actor_id=entry.actor_id,
                error=str(e),
            )
            return
        self.logger.debug("audit_appended", action=entry.action, document_id=document_id)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for appends already scheduled (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def log_device_action(self, action: AuditAction | str, device_id: str, device_type: str) -> None:
        self.record(action, {"deviceId": device_id, "deviceType": device_type})

    def log_data_access(
        self, action: AuditAction | str, data_type: str, resource_id: str | None = None
    ) -> None:
        self.record(action, {"dataType": data_type, "resourceId": resource_id})

    def log_error(self, error_message: str, error: object = None) -> None:
        if isinstance(error, BaseException):
            error_details: object = {
                "name": type(error).__name__,
                "message": str(error),
                "stack": "".join(traceback.format_exception(error)),
            }
        else:
            error_details = error
        self.record(
            AuditAction.ERROR_OCCURRED,
            {"errorMessage": error_message, "errorDetails": error_details},
        )
