"""
auth/events.py -- Best-effort session event notifications.

The session service publishes an event after each authoritative state change
has committed (login, rotation, reuse detection, logout, logout-all, lockout).
Collaborators (audit log, security e-mail, notification fan-out) subscribe as
listeners. Delivery is fire-and-forget: a listener that raises is logged and
skipped, and never changes the outcome of the request that produced the event.

With an executor, listeners run off the request thread.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger("sitepass.auth.events")
audit_logger = logging.getLogger("sitepass.audit")

LOGIN_SUCCEEDED = "login_succeeded"
LOGIN_FAILED = "login_failed"
ACCOUNT_LOCKED = "account_locked"
REFRESH_ROTATED = "refresh_rotated"
REFRESH_REUSE_DETECTED = "refresh_reuse_detected"
LOGOUT = "logout"
LOGOUT_ALL = "logout_all"


@dataclass(frozen=True)
class SessionEvent:
    kind: str
    at: datetime
    user_id: int | None = None
    session_id: str | None = None
    ip: str | None = None
    detail: dict = field(default_factory=dict)


Listener = Callable[[SessionEvent], None]


class EventDispatcher:
    def __init__(self, executor: Executor | None = None) -> None:
        self._listeners: list[Listener] = []
        self._executor = executor

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def publish(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            if self._executor is not None:
                self._executor.submit(_deliver, listener, event)
            else:
                _deliver(listener, event)


def _deliver(listener: Listener, event: SessionEvent) -> None:
    try:
        listener(event)
    except Exception:
        logger.exception("Session event listener failed for %s", event.kind)


def audit_log_listener(event: SessionEvent) -> None:
    """Default listener: one structured line per event on the sitepass.audit logger."""
    audit_logger.info(
        "%s user=%s session=%s ip=%s %s",
        event.kind,
        event.user_id,
        event.session_id,
        event.ip,
        " ".join(f"{k}={v}" for k, v in sorted(event.detail.items())),
    )
