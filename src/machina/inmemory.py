"""In-memory collaborator implementations for local development and tests.

These satisfy the protocol interfaces in ``machina.protocols`` (and the
``ProviderAdapter`` ABC) but keep everything in dicts, with no persistence
across restarts.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Mapping

from .errors import ProviderNotFoundError
from .models import (
    AgentStatus,
    Deployment,
    DeploymentState,
    DeploymentType,
    Machine,
    MachineSpec,
    MachineStatus,
    ProviderAccount,
    ProviderType,
    SyncStatus,
    utcnow,
)
from .providers.base import CreatedMachine, ObservedMachine, ProviderAdapter

_MACHINE_FIELDS = frozenset(f.name for f in fields(Machine))
_IMMUTABLE_MACHINE_FIELDS = frozenset(
    {'machine_id', 'tenant_id', 'created_at', 'actual_status'}
)


def _copy(machine: Machine) -> Machine:
    return replace(machine, tags=dict(machine.tags))


class InMemoryMachineRepository:
    def __init__(self) -> None:
        self._machines: dict[str, Machine] = {}

    async def get(self, machine_id: str) -> Machine | None:
        machine = self._machines.get(machine_id)
        return _copy(machine) if machine else None

    async def create(self, machine: Machine) -> Machine:
        if machine.machine_id in self._machines:
            raise ValueError(f'machine {machine.machine_id!r} already exists')
        self._machines[machine.machine_id] = _copy(machine)
        return _copy(machine)

    async def list_for_tenant(self, tenant_id: str) -> list[Machine]:
        return [
            _copy(m) for m in self._machines.values()
            if m.tenant_id == tenant_id
        ]

    async def update(self, machine_id: str, **changes: Any) -> Machine | None:
        blocked = _IMMUTABLE_MACHINE_FIELDS.intersection(changes)
        if blocked:
            raise ValueError(
                f'fields cannot be written through update(): {sorted(blocked)}'
            )
        unknown = set(changes) - _MACHINE_FIELDS
        if unknown:
            raise ValueError(f'unknown machine fields: {sorted(unknown)}')
        machine = self._machines.get(machine_id)
        if machine is None:
            return None
        updated = replace(machine, **{**changes, 'updated_at': utcnow()})
        self._machines[machine_id] = updated
        return _copy(updated)

    async def record_observation(
        self,
        machine_id: str,
        *,
        actual_status: MachineStatus | None,
        public_ip: str | None,
        private_ip: str | None,
        sync_status: SyncStatus,
        agent_status: AgentStatus | None,
    ) -> Machine | None:
        machine = self._machines.get(machine_id)
        if machine is None:
            return None
        now = utcnow()
        changes: dict[str, Any] = {
            'sync_status': sync_status,
            'last_reconciled_at': now,
            'updated_at': now,
        }
        if actual_status is not None:
            changes['actual_status'] = actual_status
            changes['public_ip'] = public_ip
            changes['private_ip'] = private_ip
        if agent_status is not None:
            changes['agent_status'] = agent_status
        updated = replace(machine, **changes)
        self._machines[machine_id] = updated
        return _copy(updated)


class InMemoryDeploymentRepository:
    def __init__(self) -> None:
        self._deployments: dict[str, Deployment] = {}

    async def create(self, deployment: Deployment) -> Deployment:
        if deployment.deployment_id in self._deployments:
            raise ValueError(
                f'deployment {deployment.deployment_id!r} already exists'
            )
        self._deployments[deployment.deployment_id] = deployment
        return deployment

    async def get(self, deployment_id: str) -> Deployment | None:
        return self._deployments.get(deployment_id)

    async def save(self, deployment: Deployment) -> Deployment:
        if deployment.deployment_id not in self._deployments:
            raise KeyError(deployment.deployment_id)
        self._deployments[deployment.deployment_id] = deployment
        return deployment

    async def list(
        self,
        tenant_id: str,
        *,
        machine_id: str | None = None,
        type: DeploymentType | None = None,
        state: DeploymentState | None = None,
    ) -> list[Deployment]:
        matching = [
            (i, d) for i, d in enumerate(self._deployments.values())
            if d.tenant_id == tenant_id
            and (machine_id is None or d.machine_id == machine_id)
            and (type is None or d.type is type)
            and (state is None or d.state is state)
        ]
        # Most recent first; insertion order breaks timestamp ties.
        matching.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [d for _, d in matching]


class InMemoryProviderAccountRepository:
    def __init__(self, accounts: list[ProviderAccount] | None = None) -> None:
        self._accounts = {a.provider_account_id: a for a in accounts or []}

    def add(self, account: ProviderAccount) -> None:
        self._accounts[account.provider_account_id] = account

    async def get(self, provider_account_id: str) -> ProviderAccount | None:
        return self._accounts.get(provider_account_id)


class InMemoryCredentialProvider:
    def __init__(self, credentials: Mapping[str, Mapping[str, str]] | None = None) -> None:
        self._credentials = {k: dict(v) for k, v in (credentials or {}).items()}

    def set(self, provider_account_id: str, credentials: Mapping[str, str]) -> None:
        self._credentials[provider_account_id] = dict(credentials)

    async def resolve(self, provider_account_id: str) -> Mapping[str, str]:
        try:
            return dict(self._credentials[provider_account_id])
        except KeyError:
            raise KeyError(
                f'no credentials stored for {provider_account_id!r}'
            ) from None


class InMemoryHeartbeatSource:
    def __init__(self) -> None:
        self._beats: dict[str, datetime] = {}

    def beat(self, machine_id: str, at: datetime | None = None) -> None:
        self._beats[machine_id] = at or utcnow()

    async def last_heartbeat(self, machine_id: str) -> datetime | None:
        return self._beats.get(machine_id)


class InMemoryAgentClient:
    """Test agent client that tracks calls."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failures: list[Exception] = []

    async def restart_service(self, machine: Machine, service_name: str) -> None:
        self.calls.append((machine.machine_id, service_name))
        if self.failures:
            raise self.failures.pop(0)


class InMemoryProviderAdapter(ProviderAdapter):
    """Test provider adapter with scripted failures.

    ``fail_next('reboot', TransientProviderError(...))`` makes the next
    reboot call raise. ``gate('create_machine')`` returns an event the
    call waits on before it touches anything, so tests can hold an apply in
    flight. ``hold_reply('create_machine')`` holds the call after the
    machine exists, the way a slow provider response looks.

    Creates honor ``MachineSpec.idempotency_key``: a repeated key returns
    the machine made the first time.
    """

    def __init__(self, provider_type: ProviderType = ProviderType.digitalocean) -> None:
        self.provider_type = provider_type
        self.machines: dict[str, ObservedMachine] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[Exception]] = {}
        self._gates: dict[str, asyncio.Event] = {}
        self._reply_gates: dict[str, asyncio.Event] = {}
        self._by_key: dict[str, str] = {}
        self._ids = itertools.count(1)

    def fail_next(self, operation: str, *errors: Exception) -> None:
        self._failures.setdefault(operation, []).extend(errors)

    def gate(self, operation: str) -> asyncio.Event:
        event = self._gates.setdefault(operation, asyncio.Event())
        event.clear()
        return event

    def ungate(self, operation: str) -> None:
        event = self._gates.pop(operation, None)
        if event is not None:
            event.set()

    def hold_reply(self, operation: str) -> asyncio.Event:
        event = self._reply_gates.setdefault(operation, asyncio.Event())
        event.clear()
        return event

    def release_reply(self, operation: str) -> None:
        event = self._reply_gates.pop(operation, None)
        if event is not None:
            event.set()

    def call_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def _enter(self, operation: str, arg: str) -> None:
        self.calls.append((operation, arg))
        gate = self._gates.get(operation)
        if gate is not None:
            await gate.wait()
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def _reply(self, operation: str) -> None:
        gate = self._reply_gates.get(operation)
        if gate is not None:
            await gate.wait()

    async def create_machine(self, spec: MachineSpec) -> CreatedMachine:
        await self._enter('create_machine', spec.name)
        provider_id = self._by_key.get(spec.idempotency_key) if spec.idempotency_key else None
        if provider_id is None:
            n = next(self._ids)
            provider_id = f'{self.provider_type.value}-{n}'
            self.machines[provider_id] = ObservedMachine(
                status=MachineStatus.running,
                public_ip=f'203.0.113.{n}',
                private_ip=f'10.0.0.{n}',
            )
            if spec.idempotency_key:
                self._by_key[spec.idempotency_key] = provider_id
        await self._reply('create_machine')
        observed = self.machines.get(provider_id, ObservedMachine(status=MachineStatus.terminated))
        return CreatedMachine(
            provider_machine_id=provider_id,
            public_ip=observed.public_ip,
            private_ip=observed.private_ip,
        )

    async def reboot(self, provider_machine_id: str) -> None:
        await self._enter('reboot', provider_machine_id)
        if provider_machine_id not in self.machines:
            raise ProviderNotFoundError(
                f'no machine {provider_machine_id!r}',
                provider=self.provider_type.value,
                operation='reboot',
                status_code=404,
            )

    async def destroy(self, provider_machine_id: str) -> None:
        await self._enter('destroy', provider_machine_id)
        self.machines.pop(provider_machine_id, None)

    async def fetch_status(self, provider_machine_id: str) -> ObservedMachine:
        await self._enter('fetch_status', provider_machine_id)
        return self.machines.get(
            provider_machine_id,
            ObservedMachine(status=MachineStatus.terminated),
        )
