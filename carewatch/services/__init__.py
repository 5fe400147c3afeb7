"""
Core services for the application.

This package contains the session resolver, route gates, alert subscription
manager, audit logger and the runtime that wires them together.
"""

from .alert_subscriptions import AlertSubscription, AlertSubscriptionManager
from .audit_logger import AuditAction, AuditLogger
from .contracts import Result
from .route_guard import RouteGuard, evaluate_protected_gate, evaluate_public_gate
from .runtime import CareWatchRuntime
from .session_resolver import SessionResolver, SignInError
from .session_store import SessionStore

__all__ = [
    "AlertSubscription",
    "AlertSubscriptionManager",
    "AuditAction",
    "AuditLogger",
    "CareWatchRuntime",
    "Result",
    "RouteGuard",
    "SessionResolver",
    "SessionStore",
    "SignInError",
    "evaluate_protected_gate",
    "evaluate_public_gate",
]
