"""
Runtime that wires session resolution, route gates, alert feeds and auditing.

This is the composition root of the application:
1. Identity provider events resolve into the SessionStore
2. Route gates read the store to render or redirect
3. The resolved patient identity keys the live alert subscription, once the
   caller is confirmed as that patient, their caretaker or their doctor
4. Login, logout, alert views and device syncs are audited against the session
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from typing import Any, Literal

import structlog

from carewatch.config import AppConfig, get_config
from carewatch.domain.models import (
    Alert,
    GateDecision,
    Loading,
    Principal,
    Resolved,
    Role,
    Session,
    SessionState,
    VitalsReading,
)
from carewatch.services.alert_subscriptions import AlertSnapshot, AlertSubscriptionManager
from carewatch.services.audit_logger import AuditAction, AuditLogger
from carewatch.services.contracts import (
    AlertStore,
    AuditStore,
    IdentityProvider,
    ProfileStore,
    Result,
    configure_logging,
)
from carewatch.services.route_guard import RouteGuard
from carewatch.services.session_resolver import SessionResolver, SignInError
from carewatch.services.session_store import SessionStore

logger = structlog.get_logger()

SyncStage = Literal["started", "completed", "failed"]

_SYNC_ACTIONS: dict[SyncStage, AuditAction] = {
    "started": AuditAction.DEVICE_SYNC_STARTED,
    "completed": AuditAction.DEVICE_SYNC_COMPLETED,
    "failed": AuditAction.DEVICE_SYNC_FAILED,
}

_ASSIGNMENT_FIELDS: dict[Role, str] = {
    Role.CARETAKER: "assignedCaretakerId",
    Role.MEDICAL: "assignedDoctorId",
}


def patient_key(state: SessionState, selected_patient_id: str | None = None) -> str | None:
    """
    Patient whose alerts the current session should see.

    Patients always see their own feed; caretakers and medical staff see the
    patient they selected. Anything unresolved has no feed.
    """
    if not isinstance(state, Resolved):
        return None
    session = state.session
    if session.role is Role.PATIENT:
        return session.identity_id
    return selected_patient_id


def may_view_patient(
    session: Session, patient_id: str, patient_profile: dict[str, Any] | None
) -> bool:
    """
    Whether `session` may follow `patient_id`'s alerts.

    Patients see only themselves. Caretakers and medical staff must be the
    caretaker or doctor named on the patient's profile.
    """
    if session.role is Role.PATIENT:
        return patient_id == session.identity_id
    field = _ASSIGNMENT_FIELDS.get(session.role) if session.role else None
    if field is None or patient_profile is None:
        return False
    return patient_profile.get(field) == session.identity_id


class CareWatchRuntime:
    """Main service that owns one SessionStore and the components reading it."""

    def __init__(
        self,
        provider: IdentityProvider,
        profiles: ProfileStore,
        alerts: AlertStore,
        audit_store: AuditStore,
        config: AppConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        configure_logging(self.config.logging)
        self.profiles = profiles
        self.logger = logger.bind(component="carewatch_runtime")

        self.sessions = SessionStore()
        self.resolver = SessionResolver(provider, profiles, self.sessions, self.config.backend)
        self.guard = RouteGuard(self.sessions, self.config.routing)
        self.alerts = AlertSubscriptionManager(alerts, self.config.backend)
        self.audit = AuditLogger(audit_store, self.sessions, self.config.audit, self.config.backend)

        self._selected_patient_id: str | None = None
        self._key_listeners: set[asyncio.Queue[None]] = set()
        self._audited_identity: str | None = None
        self._login_audit_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SessionState:
        return self.sessions.state

    @property
    def selected_patient_id(self) -> str | None:
        return self._selected_patient_id

    @asynccontextmanager
    async def running(self) -> AsyncIterator["CareWatchRuntime"]:
        """Bind to the provider for the lifetime of the block."""
        self.logger.info("runtime_starting", environment=self.config.environment)
        self._login_audit_task = asyncio.create_task(self._audit_logins())
        try:
            async with self.resolver.running():
                yield self
        finally:
            self._login_audit_task.cancel()
            try:
                await self._login_audit_task
            except asyncio.CancelledError:
                pass
            self._login_audit_task = None
            self.alerts.dispose()
            await self.audit.flush()
            self.logger.info("runtime_stopped")

    async def _audit_logins(self) -> None:
        async for state in self.sessions.observe():
            if not isinstance(state, Resolved):
                if not isinstance(state, Loading):
                    self._audited_identity = None
                continue
            identity_id = state.session.identity_id
            if identity_id == self._audited_identity:
                continue
            self._audited_identity = identity_id
            role = state.session.role
            self.audit.record(AuditAction.USER_LOGIN, {"role": role.value if role else None})

    async def sign_in(self, email: str, password: str) -> Result[Principal, SignInError]:
        return await self.resolver.sign_in(email, password)

    async def register(
        self,
        email: str,
        password: str,
        role: Role | str,
        profile: dict[str, Any] | None = None,
    ) -> Result[Principal, SignInError]:
        return await self.resolver.register(email, password, role, profile)

    async def sign_out(self) -> None:
        # Recorded first: the entry needs the session that is about to end.
        self.audit.record(AuditAction.USER_LOGOUT)
        self.select_patient(None)
        await self.resolver.sign_out()

    async def wait_until_settled(self) -> SessionState:
        """Wait for the session to leave Loading."""
        async with aclosing(self.sessions.observe()) as states:
            async for state in states:
                if not isinstance(state, Loading):
                    return state
        return self.sessions.state

    def navigate(self, path: str) -> GateDecision:
        return self.guard.decide(path)

    def select_patient(self, patient_id: str | None) -> None:
        """Choose which patient a caretaker or medical session follows."""
        if patient_id == self._selected_patient_id:
            return
        self._selected_patient_id = patient_id
        for queue in self._key_listeners:
            queue.put_nowait(None)
        self.logger.info("patient_selected", patient_id=patient_id)

    async def _assignment_allows(self, session: Session, patient_id: str) -> bool:
        """Check the patient's assignment, auditing a refusal."""
        if session.role is Role.PATIENT:
            return may_view_patient(session, patient_id, None)
        try:
            profile = await self.profiles.get_document(
                self.config.backend.profile_path(patient_id)
            )
        except Exception as e:
            self.logger.exception(
                "patient_assignment_lookup_failed", patient_id=patient_id, error=str(e)
            )
            profile = None
        if may_view_patient(session, patient_id, profile):
            return True

        role = session.role.value if session.role else None
        self.logger.warning(
            "patient_access_denied",
            identity_id=session.identity_id,
            role=role,
            patient_id=patient_id,
        )
        self.audit.record(
            AuditAction.UNAUTHORIZED_ACCESS_ATTEMPT, {"patientId": patient_id, "role": role}
        )
        return False

    async def _patient_keys(self) -> AsyncIterator[str | None]:
        wakeups: asyncio.Queue[None] = asyncio.Queue()
        self._key_listeners.add(wakeups)

        async def forward_session_changes() -> None:
            async for _ in self.sessions.observe():
                wakeups.put_nowait(None)

        forwarder = asyncio.create_task(forward_session_changes())
        checked: tuple[str, str] | None = None
        allowed = False
        try:
            while True:
                await wakeups.get()
                state = self.sessions.state
                key = patient_key(state, self._selected_patient_id)
                if key is None or not isinstance(state, Resolved):
                    checked = None
                    yield None
                    continue

                candidate = (state.session.identity_id, key)
                if candidate != checked:
                    verdict = await self._assignment_allows(state.session, key)
                    now = self.sessions.state
                    if (
                        patient_key(now, self._selected_patient_id) != key
                        or not isinstance(now, Resolved)
                        or now.session.identity_id != candidate[0]
                    ):
                        # Superseded during the check; its wakeup is already queued.
                        continue
                    checked, allowed = candidate, verdict
                yield key if allowed else None
        finally:
            forwarder.cancel()
            self._key_listeners.discard(wakeups)

    def watch_patient_alerts(self) -> AsyncIterator[AlertSnapshot]:
        """Live alert sets for whichever patient the session currently resolves to."""
        return self.alerts.follow(self._patient_keys())

    def view_alert(self, alert: Alert) -> None:
        self.audit.log_data_access(AuditAction.ALERT_VIEWED, "alert", alert.id)

    def record_device_sync(
        self,
        device_id: str,
        device_type: str,
        stage: SyncStage,
        readings: list[VitalsReading] | None = None,
    ) -> None:
        """Audit a device sync step without copying clinical values into the trail."""
        if not readings:
            self.audit.log_device_action(_SYNC_ACTIONS[stage], device_id, device_type)
            return
        latest = max(reading.timestamp for reading in readings)
        self.audit.record(
            _SYNC_ACTIONS[stage],
            {
                "deviceId": device_id,
                "deviceType": device_type,
                "readingCount": len(readings),
                "latestReadingAt": latest.isoformat(),
            },
        )
