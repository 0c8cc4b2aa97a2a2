"""Domain records for machines, deployments, and provider accounts.

Machines are mutable repository records. Deployments are frozen state
snapshots: every transition in ``deployments.state_machine`` returns a new
``Deployment`` via ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


def utcnow() -> datetime:
    """UTC-aware now for records and transitions."""
    return datetime.now(timezone.utc)


# ── Enumerations ─────────────────────────────────────────────────────


class ProviderType(str, Enum):
    """Closed set of supported cloud providers."""

    digitalocean = 'digitalocean'
    aws = 'aws'
    gcp = 'gcp'
    hetzner = 'hetzner'


class MachineStatus(str, Enum):
    """Machine lifecycle status (desired or observed)."""

    pending = 'pending'
    provisioning = 'provisioning'
    running = 'running'
    stopping = 'stopping'
    stopped = 'stopped'
    rebooting = 'rebooting'
    terminating = 'terminating'
    terminated = 'terminated'
    error = 'error'


class AgentStatus(str, Enum):
    connected = 'connected'
    disconnected = 'disconnected'
    not_installed = 'not_installed'
    unknown = 'unknown'


class SyncStatus(str, Enum):
    """Whether the machine record matches the provider's view."""

    in_sync = 'in_sync'
    drifted = 'drifted'
    unknown = 'unknown'
    pending = 'pending'


class CredentialStatus(str, Enum):
    valid = 'valid'
    invalid = 'invalid'
    expired = 'expired'
    unchecked = 'unchecked'


class DeploymentType(str, Enum):
    create = 'create'
    reboot = 'reboot'
    destroy = 'destroy'
    service_restart = 'service_restart'


class DeploymentState(str, Enum):
    pending = 'pending'
    validating = 'validating'
    awaiting_approval = 'awaiting_approval'
    in_progress = 'in_progress'
    completed = 'completed'
    failed = 'failed'
    cancelled = 'cancelled'


# Desired status a deployment of each type records once it starts applying.
DESIRED_STATUS_FOR_TYPE: Mapping[DeploymentType, MachineStatus | None] = (
    MappingProxyType(
        {
            DeploymentType.create: MachineStatus.running,
            DeploymentType.reboot: MachineStatus.running,
            DeploymentType.destroy: MachineStatus.terminated,
            DeploymentType.service_restart: None,
        }
    )
)


# ── Provider account (collaborator-owned) ────────────────────────────


@dataclass(frozen=True, slots=True)
class ProviderAccount:
    """Read-only view of a stored provider account."""

    provider_account_id: str
    tenant_id: str
    provider_type: ProviderType
    credential_status: CredentialStatus = CredentialStatus.unchecked
    label: str = ''


# ── Machine ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class MachineSpec:
    """Request payload for a ``create`` deployment.

    ``bootstrap_config`` is the rendered cloud-init/script body. It is
    handed to the provisioning tool as-is and never parsed here.

    ``idempotency_key`` is the orchestrator's machine id. Adapters attach it
    to the provider resource so a retried create finds the machine an
    earlier attempt already made instead of making a second one.
    """

    name: str
    provider_account_id: str
    region: str
    size: str
    image: str
    provider: ProviderType | None = None
    tags: Mapping[str, str] = field(default_factory=dict)
    bootstrap_config: str = ''
    idempotency_key: str = ''

    def __post_init__(self) -> None:
        for attr in ('name', 'provider_account_id', 'region', 'size', 'image'):
            value = getattr(self, attr)
            if not value or not str(value).strip():
                raise ValueError(f'{attr} is required')


@dataclass
class Machine:
    """Row-level machine record."""

    machine_id: str
    tenant_id: str
    name: str
    provider: ProviderType
    provider_account_id: str
    region: str
    size: str
    image: str
    desired_status: MachineStatus = MachineStatus.running
    actual_status: MachineStatus = MachineStatus.pending
    public_ip: str | None = None
    private_ip: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    agent_status: AgentStatus = AgentStatus.unknown
    sync_status: SyncStatus = SyncStatus.pending
    provider_resource_id: str | None = None
    last_reconciled_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_spec(
        cls,
        *,
        machine_id: str,
        tenant_id: str,
        spec: MachineSpec,
        provider: ProviderType,
    ) -> Machine:
        return cls(
            machine_id=machine_id,
            tenant_id=tenant_id,
            name=spec.name,
            provider=provider,
            provider_account_id=spec.provider_account_id,
            region=spec.region,
            size=spec.size,
            image=spec.image,
            tags=dict(spec.tags),
        )

    def to_spec(self, *, bootstrap_config: str = '') -> MachineSpec:
        return MachineSpec(
            name=self.name,
            provider_account_id=self.provider_account_id,
            region=self.region,
            size=self.size,
            image=self.image,
            provider=self.provider,
            tags=dict(self.tags),
            bootstrap_config=bootstrap_config,
            idempotency_key=self.machine_id,
        )


# ── Plan ─────────────────────────────────────────────────────────────

DESTRUCTIVE_ACTIONS = frozenset({'delete', 'replace'})


@dataclass(frozen=True, slots=True)
class ResourceChange:
    """One resource the provisioning tool intends to touch."""

    address: str
    action: str
    resource_type: str = ''
    resource_name: str = ''


@dataclass(frozen=True, slots=True)
class PlanSummary:
    """Dry-run preview of what an apply would change."""

    changes: tuple[ResourceChange, ...] = ()
    raw_output: str = ''

    @property
    def resources_to_add(self) -> int:
        return sum(1 for c in self.changes if c.action in ('create', 'replace'))

    @property
    def resources_to_change(self) -> int:
        return sum(1 for c in self.changes if c.action == 'update')

    @property
    def resources_to_destroy(self) -> int:
        return sum(1 for c in self.changes if c.action in DESTRUCTIVE_ACTIONS)

    @property
    def destructive(self) -> bool:
        return any(c.action in DESTRUCTIVE_ACTIONS for c in self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            'resources_to_add': self.resources_to_add,
            'resources_to_change': self.resources_to_change,
            'resources_to_destroy': self.resources_to_destroy,
            'destructive': self.destructive,
            'resource_changes': [
                {
                    'address': c.address,
                    'action': c.action,
                    'resource_type': c.resource_type,
                    'resource_name': c.resource_name,
                }
                for c in self.changes
            ],
        }


# ── Deployment ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Deployment:
    """State snapshot for one deployment."""

    deployment_id: str
    tenant_id: str
    machine_id: str
    type: DeploymentType
    state: DeploymentState = DeploymentState.pending
    created_at: datetime = field(default_factory=utcnow)
    state_entered_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    initiated_by: str = 'system'
    payload: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    plan: PlanSummary | None = None
    error_code: str | None = None
    error: str | None = None
    log_cursor: int = 0
    apply_attempts: int = 0
    cancel_requested: bool = False
    approved_by: str | None = None
    outputs: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in (
            DeploymentState.completed,
            DeploymentState.failed,
            DeploymentState.cancelled,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'deployment_id': self.deployment_id,
            'machine_id': self.machine_id,
            'type': self.type.value,
            'state': self.state.value,
            'created_at': self.created_at.isoformat(),
            'started_at': _iso(self.started_at),
            'finished_at': _iso(self.finished_at),
            'initiated_by': self.initiated_by,
            'plan': self.plan.to_dict() if self.plan else None,
            'error_code': self.error_code,
            'error': self.error,
            'log_cursor': self.log_cursor,
            'apply_attempts': self.apply_attempts,
            'cancel_requested': self.cancel_requested,
            'approved_by': self.approved_by,
            'outputs': dict(self.outputs),
        }


def machine_to_dict(machine: Machine) -> dict[str, Any]:
    return {
        'machine_id': machine.machine_id,
        'name': machine.name,
        'provider': machine.provider.value,
        'provider_account_id': machine.provider_account_id,
        'region': machine.region,
        'size': machine.size,
        'image': machine.image,
        'desired_status': machine.desired_status.value,
        'actual_status': machine.actual_status.value,
        'public_ip': machine.public_ip,
        'private_ip': machine.private_ip,
        'tags': dict(machine.tags),
        'agent_status': machine.agent_status.value,
        'sync_status': machine.sync_status.value,
        'provider_resource_id': machine.provider_resource_id,
        'last_reconciled_at': _iso(machine.last_reconciled_at),
        'created_at': machine.created_at.isoformat(),
        'updated_at': machine.updated_at.isoformat(),
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
