"""Audit trail for deployments and machines.

Records immutable audit events for every deployment state transition and
for reconciler findings. Each event captures the actor, action, tenant,
deployment and machine context, and a freeform details mapping.

Actions:
  - ``deployment.<state>`` once per state entered (including ``pending``)
  - ``deployment.cancel_requested``
  - ``machine.reconciled``
  - ``machine.drift_detected``

Recording is fire-and-forget: sink errors are logged, never raised into
the deployment that produced the event.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from .observability.logging import get_logger
from .observability.metrics import AUDIT_EVENTS_EMITTED

logger = get_logger(__name__)

OUTCOME_SUCCESS = 'success'
OUTCOME_FAILURE = 'failure'
OUTCOME_PENDING = 'pending'

# Keys that must never appear in audit details.
_SENSITIVE_KEYS = frozenset({
    'authorization',
    'api_key',
    'api_token',
    'access_token',
    'secret_access_key',
    'aws_secret_access_key',
    'session_token',
    'token',
    'secret',
    'password',
    'private_key',
    'credentials',
})


@dataclass(frozen=True)
class AuditEvent:
    """Immutable audit record."""

    action: str
    outcome: str
    tenant_id: str
    deployment_id: str | None = None
    machine_id: str | None = None
    actor: str = 'system'
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    id: str = field(default_factory=lambda: f'aud_{uuid.uuid4().hex[:12]}')

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'action': self.action,
            'outcome': self.outcome,
            'tenant_id': self.tenant_id,
            'deployment_id': self.deployment_id,
            'machine_id': self.machine_id,
            'actor': self.actor,
            'details': _sanitize_payload(self.details),
            'timestamp': self.timestamp.isoformat(),
        }


def _sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Deep-copy payload with sensitive keys redacted."""
    sanitized: dict[str, Any] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            sanitized[key] = '[REDACTED]'
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_payload(value)
        else:
            sanitized[key] = value
    return sanitized


# ── Sink protocol ────────────────────────────────────────────────────


@runtime_checkable
class AuditSink(Protocol):
    """Append-only audit event sink."""

    async def record(self, event: AuditEvent) -> None: ...


# ── In-memory implementation ──────────────────────────────────────────


class InMemoryAuditSink:
    """Simple in-memory audit store for testing."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self._events.append(event)
        AUDIT_EVENTS_EMITTED.labels(action=event.action).inc()

    def for_deployment(self, deployment_id: str) -> list[AuditEvent]:
        return [e for e in self._events if e.deployment_id == deployment_id]

    def for_machine(self, machine_id: str) -> list[AuditEvent]:
        return [e for e in self._events if e.machine_id == machine_id]

    @property
    def events(self) -> list[AuditEvent]:
        """Access all events (for testing assertions)."""
        return list(self._events)


# ── Log-backed implementation ─────────────────────────────────────────


class LoggingAuditSink:
    """AuditSink that writes each event as a structured log record.

    record() is fire-and-forget: errors are logged but never raised.
    """

    def __init__(self, *, logger_name: str = 'machina.audit.trail') -> None:
        self._logger = get_logger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        try:
            self._logger.info('audit_event', **event.to_dict())
            AUDIT_EVENTS_EMITTED.labels(action=event.action).inc()
        except Exception:
            logger.exception(
                'audit_record_failed',
                action=event.action,
                deployment_id=event.deployment_id,
            )


async def record_safely(sink: AuditSink, event: AuditEvent) -> None:
    """Record ``event`` on any sink without letting sink errors escape."""
    try:
        await sink.record(event)
    except Exception:
        logger.exception(
            'audit_record_failed',
            action=event.action,
            deployment_id=event.deployment_id,
            machine_id=event.machine_id,
        )
