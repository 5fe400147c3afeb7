"""
Render-or-redirect gates evaluated purely from SessionState.

Both gates treat Loading as absorbing: no redirect decision is made before
resolution completes, so unauthenticated content never flashes.
"""

from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum

from pydantic import BaseModel, ConfigDict

from carewatch.config import RoutingConfig
from carewatch.domain.models import (
    GateDecision,
    Invalid,
    Loading,
    Permit,
    Redirect,
    Resolved,
    Role,
    SessionState,
    SignedOut,
    Wait,
)
from carewatch.services.contracts import logger
from carewatch.services.session_store import SessionStore


class GateKind(str, Enum):
    PUBLIC = "public"
    PROTECTED = "protected"


class RouteNotFoundError(LookupError):
    """Raised for a path outside the logical route surface."""


class RouteRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    gate: GateKind
    # Raw path segment; unknown values never match a resolved role.
    required_role: str | None = None


def dashboard_path(role: Role, routing: RoutingConfig | None = None) -> str:
    routing = routing or RoutingConfig()
    return routing.dashboard_path_template.format(role=role.value)


def evaluate_public_gate(state: SessionState, routing: RoutingConfig | None = None) -> GateDecision:
    """Public views render for visitors; signed-in users go to their dashboard."""
    if isinstance(state, Loading):
        return Wait()
    if isinstance(state, Resolved) and state.session.role is not None:
        return Redirect(target=dashboard_path(state.session.role, routing))
    return Permit()


def evaluate_protected_gate(
    state: SessionState,
    required_role: Role | str | None = None,
    routing: RoutingConfig | None = None,
) -> GateDecision:
    """
    Protected views render only for a resolved session.

    A role mismatch sends the caller to their own dashboard rather than
    showing a forbidden page.
    """
    routing = routing or RoutingConfig()
    if isinstance(state, Loading):
        return Wait()
    if isinstance(state, SignedOut | Invalid):
        return Redirect(target=routing.login_path)

    role = state.session.role
    if role is None:
        return Redirect(target=routing.login_path)
    if required_role is not None and Role.parse(required_role) is not role:
        return Redirect(target=dashboard_path(role, routing))
    return Permit()


class RouteTable:
    """Logical route surface: /, /login, /signup/{role}, /dashboard/{role}, /settings."""

    def __init__(self, routing: RoutingConfig | None = None) -> None:
        self.routing = routing or RoutingConfig()
        self._static: dict[str, RouteRule] = {
            "/": RouteRule(path="/", gate=GateKind.PUBLIC),
            self.routing.login_path: RouteRule(path=self.routing.login_path, gate=GateKind.PUBLIC),
            "/settings": RouteRule(path="/settings", gate=GateKind.PROTECTED),
        }
        prefix, _, suffix = self.routing.dashboard_path_template.partition("{role}")
        self._dashboard_prefix = prefix
        self._dashboard_suffix = suffix

    def resolve(self, path: str) -> RouteRule:
        normalized = path.rstrip("/") or "/"
        if normalized in self._static:
            return self._static[normalized]

        if normalized.startswith("/signup/"):
            segment = normalized.removeprefix("/signup/")
            if Role.parse(segment) is not None:
                return RouteRule(path=normalized, gate=GateKind.PUBLIC)

        if normalized.startswith(self._dashboard_prefix) and normalized.endswith(
            self._dashboard_suffix
        ):
            end = len(normalized) - len(self._dashboard_suffix)
            segment = normalized[len(self._dashboard_prefix) : end]
            if segment and "/" not in segment:
                return RouteRule(path=normalized, gate=GateKind.PROTECTED, required_role=segment)

        raise RouteNotFoundError(path)


class RouteGuard:
    """Evaluates route gates against the live SessionStore."""

    def __init__(self, store: SessionStore, routing: RoutingConfig | None = None) -> None:
        self.store = store
        self.routing = routing or RoutingConfig()
        self.routes = RouteTable(self.routing)
        self.logger = logger.bind(component="route_guard")

    def evaluate(self, rule: RouteRule, state: SessionState) -> GateDecision:
        if rule.gate is GateKind.PUBLIC:
            return evaluate_public_gate(state, self.routing)
        return evaluate_protected_gate(state, rule.required_role, self.routing)

    def decide(self, path: str) -> GateDecision:
        rule = self.routes.resolve(path)
        decision = self.evaluate(rule, self.store.state)
        self.logger.debug("gate_evaluated", path=rule.path, decision=decision.kind)
        return decision

    async def watch(self, path: str) -> AsyncIterator[GateDecision]:
        """Yield the decision for `path` whenever the session changes it."""
        rule = self.routes.resolve(path)
        last: GateDecision | None = None
        async with aclosing(self.store.observe()) as states:
            async for state in states:
                decision = self.evaluate(rule, state)
                if decision != last:
                    last = decision
                    yield decision
