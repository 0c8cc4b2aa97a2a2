"""Deployment state machine.

Implements the fixed deployment flow:
  pending -> validating -> (awaiting_approval ->) in_progress -> completed

And the terminal exits:
  validating | in_progress -> failed
  pending | validating | awaiting_approval | in_progress -> cancelled

Every function here is pure: it takes a ``Deployment`` snapshot and returns
a new one. Terminal snapshots are never advanced.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from ..errors import ErrorCode
from ..models import Deployment, DeploymentState, DeploymentType, PlanSummary

S = DeploymentState

TERMINAL_STATES = frozenset({S.completed, S.failed, S.cancelled})
ACTIVE_STATES = frozenset({S.validating, S.awaiting_approval, S.in_progress})

ALLOWED_TRANSITIONS: Mapping[DeploymentState, frozenset[DeploymentState]] = (
    MappingProxyType(
        {
            S.pending: frozenset({S.validating, S.cancelled}),
            S.validating: frozenset(
                {S.awaiting_approval, S.in_progress, S.failed, S.cancelled}
            ),
            S.awaiting_approval: frozenset({S.in_progress, S.cancelled}),
            S.in_progress: frozenset({S.completed, S.failed, S.cancelled}),
            S.completed: frozenset(),
            S.failed: frozenset(),
            S.cancelled: frozenset(),
        }
    )
)

CANCELLED_MESSAGE = 'cancelled by request'


class InvalidStateTransition(ValueError):
    """Raised for invalid deployment state transitions."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


def create_deployment(
    *,
    deployment_id: str,
    tenant_id: str,
    machine_id: str,
    type: DeploymentType,
    now: datetime,
    payload: Mapping[str, Any] | None = None,
    initiated_by: str = 'system',
) -> Deployment:
    """Create a new pending deployment snapshot."""
    _require_aware_datetime(now)
    if not tenant_id:
        raise ValueError('tenant_id is required')
    if not machine_id:
        raise ValueError('machine_id is required')
    return Deployment(
        deployment_id=deployment_id,
        tenant_id=tenant_id,
        machine_id=machine_id,
        type=DeploymentType(type),
        state=S.pending,
        created_at=now,
        state_entered_at=now,
        initiated_by=initiated_by,
        payload=MappingProxyType(dict(payload or {})),
    )


def begin_validation(deployment: Deployment, *, now: datetime) -> Deployment:
    """The machine lock was granted: ``pending -> validating``."""
    return _transition(deployment, to_state=S.validating, now=now, start=True)


def request_approval(
    deployment: Deployment,
    *,
    plan: PlanSummary,
    now: datetime,
) -> Deployment:
    """Store the plan and park in ``awaiting_approval``."""
    return _transition(
        deployment,
        to_state=S.awaiting_approval,
        now=now,
        plan=plan,
    )


def start_apply(
    deployment: Deployment,
    *,
    now: datetime,
    plan: PlanSummary | None = None,
    approved_by: str | None = None,
) -> Deployment:
    """Move to ``in_progress`` from validating (no approval) or approval."""
    if deployment.state is S.awaiting_approval and not approved_by:
        raise ValueError('approved_by is required to leave awaiting_approval')
    return _transition(
        deployment,
        to_state=S.in_progress,
        now=now,
        plan=plan,
        approved_by=approved_by,
    )


def complete(
    deployment: Deployment,
    *,
    now: datetime,
    outputs: Mapping[str, Any] | None = None,
) -> Deployment:
    return _transition(
        deployment,
        to_state=S.completed,
        now=now,
        outputs=outputs,
    )


def fail(
    deployment: Deployment,
    *,
    now: datetime,
    error_code: ErrorCode | str,
    error: str,
) -> Deployment:
    """Move to terminal ``failed`` with a human-readable diagnostic."""
    if not error:
        raise ValueError('error message is required')
    return _transition(
        deployment,
        to_state=S.failed,
        now=now,
        error_code=ErrorCode(error_code).value,
        error=error,
    )


def cancel(
    deployment: Deployment,
    *,
    now: datetime,
    reason: str = CANCELLED_MESSAGE,
) -> Deployment:
    return _transition(
        deployment,
        to_state=S.cancelled,
        now=now,
        error=reason,
    )


def mark_cancel_requested(deployment: Deployment) -> Deployment:
    """Flag a running deployment for cooperative cancellation."""
    _require_not_terminal(deployment, 'cancel_requested')
    if deployment.cancel_requested:
        return deployment
    return replace(deployment, cancel_requested=True)


def record_attempt(deployment: Deployment) -> Deployment:
    """Count one apply attempt."""
    if deployment.state is not S.in_progress:
        raise InvalidStateTransition(deployment.state.value, 'apply_attempt')
    return replace(deployment, apply_attempts=deployment.apply_attempts + 1)


def _transition(
    deployment: Deployment,
    *,
    to_state: DeploymentState,
    now: datetime,
    start: bool = False,
    plan: PlanSummary | None = None,
    approved_by: str | None = None,
    outputs: Mapping[str, Any] | None = None,
    error_code: str | None = None,
    error: str | None = None,
) -> Deployment:
    _require_aware_datetime(now)
    allowed = ALLOWED_TRANSITIONS.get(deployment.state, frozenset())
    if to_state not in allowed:
        raise InvalidStateTransition(deployment.state.value, to_state.value)

    return replace(
        deployment,
        state=to_state,
        state_entered_at=now,
        started_at=deployment.started_at or (now if start else None),
        finished_at=now if to_state in TERMINAL_STATES else None,
        plan=plan if plan is not None else deployment.plan,
        approved_by=approved_by or deployment.approved_by,
        outputs=(
            MappingProxyType(dict(outputs))
            if outputs is not None
            else deployment.outputs
        ),
        error_code=error_code,
        error=error,
    )


def _require_not_terminal(deployment: Deployment, to_state: str) -> None:
    if deployment.state in TERMINAL_STATES:
        raise InvalidStateTransition(deployment.state.value, to_state)


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')
