"""Repository and collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, database-backed elsewhere) must satisfy. The
orchestrator accepts any implementation that matches these protocols.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable

from .models import (
    AgentStatus,
    Deployment,
    DeploymentState,
    DeploymentType,
    Machine,
    MachineStatus,
    ProviderAccount,
    SyncStatus,
)


@runtime_checkable
class MachineRepository(Protocol):
    """Machine records.

    ``update`` is the general write path and must reject ``actual_status``;
    only ``record_observation`` (used by the reconciler) writes it.
    """

    async def get(self, machine_id: str) -> Machine | None: ...
    async def create(self, machine: Machine) -> Machine: ...
    async def list_for_tenant(self, tenant_id: str) -> list[Machine]: ...
    async def update(self, machine_id: str, **fields: Any) -> Machine | None: ...
    async def record_observation(
        self,
        machine_id: str,
        *,
        actual_status: MachineStatus | None,
        public_ip: str | None,
        private_ip: str | None,
        sync_status: SyncStatus,
        agent_status: AgentStatus | None,
    ) -> Machine | None: ...


@runtime_checkable
class DeploymentRepository(Protocol):
    """Deployment snapshots, keyed by deployment id."""

    async def create(self, deployment: Deployment) -> Deployment: ...
    async def get(self, deployment_id: str) -> Deployment | None: ...
    async def save(self, deployment: Deployment) -> Deployment: ...
    async def list(
        self,
        tenant_id: str,
        *,
        machine_id: str | None = None,
        type: DeploymentType | None = None,
        state: DeploymentState | None = None,
    ) -> list[Deployment]: ...


@runtime_checkable
class ProviderAccountRepository(Protocol):
    """Read-only access to stored provider accounts."""

    async def get(self, provider_account_id: str) -> ProviderAccount | None: ...


@runtime_checkable
class CredentialProvider(Protocol):
    """Returns already-decrypted credentials for a provider account."""

    async def resolve(self, provider_account_id: str) -> Mapping[str, str]: ...


@runtime_checkable
class HeartbeatSource(Protocol):
    """Read-only view of machine agent heartbeats."""

    async def last_heartbeat(self, machine_id: str) -> datetime | None: ...


@runtime_checkable
class AgentClient(Protocol):
    """Calls into the agent running on a machine."""

    async def restart_service(self, machine: Machine, service_name: str) -> None: ...
