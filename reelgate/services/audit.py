"""Structured audit events handed to pluggable sinks.

The default sink writes one log record per event on the ``reelgate.audit``
logger; deployments attach their own sink to persist events elsewhere.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import Request

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("reelgate.audit")

USER_LOGIN = "user.login"
USER_LOGIN_FAILED = "user.login_failed"
USER_LOGOUT = "user.logout"
USER_UPDATED = "user.updated"
USER_PASSWORD_CHANGED = "user.password_changed"
USER_SESSIONS_REVOKED = "user.sessions_revoked"
USER_MFA_ENROLLED = "user.mfa_enrolled"
USER_MFA_RESET = "user.mfa_reset"
USER_PASSKEY_ADDED = "user.passkey_added"
USER_PASSKEY_REMOVED = "user.passkey_removed"
USER_IDENTITY_LINKED = "user.identity_linked"
USER_IDENTITY_UNLINKED = "user.identity_unlinked"
USER_BANNED = "user.banned"
USER_UNBANNED = "user.unbanned"
USER_CREATED = "user.created"
USER_DELETED = "user.deleted"


@dataclass
class AuditEvent:
    action: str
    actor: str | None = None
    target: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


AuditSink = Callable[[AuditEvent], "Awaitable[None] | None"]


def log_sink(event: AuditEvent) -> None:
    audit_logger.info(
        "%s actor=%s target=%s",
        event.action,
        event.actor or "-",
        event.target or "-",
        extra={"audit": json.dumps(event.to_dict(), default=str, sort_keys=True)},
    )


def client_ip(request: Request | None) -> str | None:
    """Socket peer address. Proxy headers are applied by middleware, only for trusted proxies."""
    if not request:
        return None
    if request.client and request.client.host:
        return str(request.client.host)[:64]
    return None


class AuditEmitter:
    def __init__(self, sinks: list[AuditSink] | None = None):
        self._sinks: list[AuditSink] = list(sinks) if sinks is not None else [log_sink]

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    async def emit(
        self,
        action: str,
        *,
        actor: str | None = None,
        target: str | None = None,
        request: Request | None = None,
        **metadata: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            action=action,
            actor=actor,
            target=target,
            ip=client_ip(request),
            user_agent=(request.headers.get("user-agent", "")[:512] or None) if request else None,
            metadata=metadata,
        )
        for sink in self._sinks:
            try:
                result = sink(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # Audit delivery never blocks the auth flow.
                logger.warning("audit sink failed for %s", action, exc_info=True)
        return event
