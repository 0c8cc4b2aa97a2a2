"""Orchestrator facade: the public entry point for deployments.

Operators enqueue, approve, cancel, inspect and stream deployments here.
Requests are scoped to a tenant; records that belong to another tenant are
reported as not found.
"""

from __future__ import annotations

import secrets
from dataclasses import replace
from typing import Any, AsyncIterator, Iterable, Mapping

from ..agent_client import HttpAgentClient
from ..audit import AuditSink, LoggingAuditSink
from ..errors import DeploymentNotFound, MachineNotFound
from ..executor.base import Executor
from ..executor.provisioning import ProvisioningExecutor
from ..models import (
    Deployment,
    DeploymentState,
    DeploymentType,
    Machine,
    MachineSpec,
    MachineStatus,
    utcnow,
)
from ..observability.logging import get_logger
from ..protocols import (
    AgentClient,
    CredentialProvider,
    DeploymentRepository,
    HeartbeatSource,
    MachineRepository,
    ProviderAccountRepository,
)
from ..providers import build_provider_adapter
from ..reconciler import AdapterFactory, Reconciler
from ..settings import OrchestratorSettings
from . import state_machine as sm
from .locks import LockOutcome, MachineLockManager
from .logstream import DeploymentLogStore, LogGap, LogLine
from .runner import DeploymentRunner

logger = get_logger(__name__)


def _new_id(prefix: str) -> str:
    return f'{prefix}_{secrets.token_hex(8)}'


class Orchestrator:
    """Wires the runner, lock table, log store and reconciler together."""

    def __init__(
        self,
        *,
        settings: OrchestratorSettings,
        machines: MachineRepository,
        deployments: DeploymentRepository,
        accounts: ProviderAccountRepository,
        credentials: CredentialProvider,
        audit: AuditSink | None = None,
        heartbeats: HeartbeatSource | None = None,
        agent_client: AgentClient | None = None,
        executor: Executor | None = None,
        adapter_factory: AdapterFactory = build_provider_adapter,
    ) -> None:
        self.settings = settings
        self._machines = machines
        self._deployments = deployments
        self._accounts = accounts
        self.audit = audit or LoggingAuditSink()
        self.locks = MachineLockManager()
        self.logs = DeploymentLogStore(
            subscriber_buffer=settings.log_subscriber_buffer,
            retained=settings.retained_logs,
        )
        self.reconciler = Reconciler(
            machines=machines,
            accounts=accounts,
            credentials=credentials,
            audit=self.audit,
            heartbeats=heartbeats,
            adapter_factory=adapter_factory,
            heartbeat_timeout_seconds=settings.agent_heartbeat_timeout_seconds,
        )
        self.executor = executor or ProvisioningExecutor(
            settings=settings,
            adapter_factory=adapter_factory,
            agent_client=agent_client or HttpAgentClient(port=settings.agent_port),
        )
        self._runner = DeploymentRunner(
            settings=settings,
            deployments=deployments,
            machines=machines,
            accounts=accounts,
            credentials=credentials,
            executor=self.executor,
            reconciler=self.reconciler,
            locks=self.locks,
            logs=self.logs,
            audit=self.audit,
            heartbeats=heartbeats,
        )

    # ── Commands ─────────────────────────────────────────────────

    async def enqueue_deployment(
        self,
        tenant_id: str,
        type: DeploymentType | str,
        *,
        machine_id: str | None = None,
        spec: MachineSpec | None = None,
        payload: Mapping[str, Any] | None = None,
        initiated_by: str = 'system',
        plan_timeout: float | None = None,
        apply_timeout: float | None = None,
    ) -> str:
        """Record a pending deployment and start driving it.

        ``create`` takes a ``spec`` and reserves a new machine record. All
        other types act on an existing ``machine_id``.

        Raises:
            ValueError: The request is malformed.
            MachineNotFound: ``machine_id`` is unknown for this tenant.
        """
        if not tenant_id:
            raise ValueError('tenant_id is required')
        kind = DeploymentType(type)
        body = dict(payload or {})

        if kind is DeploymentType.create:
            if spec is None:
                raise ValueError('create deployments require a machine spec')
            if machine_id is not None:
                raise ValueError('create deployments allocate their own machine_id')
            machine = await self._reserve_machine(tenant_id, spec)
            if spec.bootstrap_config:
                body.setdefault('bootstrap_config', spec.bootstrap_config)
        else:
            if not machine_id:
                raise ValueError(f'{kind.value} deployments require a machine_id')
            machine = await self.get_machine(tenant_id, machine_id)
            if kind is DeploymentType.service_restart and not body.get('service_name'):
                raise ValueError('service_restart deployments require payload.service_name')

        deployment = sm.create_deployment(
            deployment_id=_new_id('dep'),
            tenant_id=tenant_id,
            machine_id=machine.machine_id,
            type=kind,
            now=utcnow(),
            payload=body,
            initiated_by=initiated_by,
        )
        await self._deployments.create(deployment)
        await self._runner.register(
            deployment,
            plan_timeout=plan_timeout,
            apply_timeout=apply_timeout,
        )
        outcome = self.locks.acquire(machine.machine_id, deployment.deployment_id)
        logger.info(
            'deployment_enqueued',
            deployment_id=deployment.deployment_id,
            machine_id=machine.machine_id,
            deployment_type=kind.value,
            lock=outcome.value,
        )
        if outcome is LockOutcome.queued:
            holder = self.locks.holder(machine.machine_id)
            self.logs.append(
                deployment.deployment_id,
                f'waiting for machine lock held by {holder}',
            )
        self._runner.start(deployment.deployment_id)
        return deployment.deployment_id

    async def approve(
        self, tenant_id: str, deployment_id: str, approved_by: str,
    ) -> Deployment:
        """Approve a deployment parked in ``awaiting_approval``.

        Approving one that is already past approval is a no-op.
        """
        if not approved_by:
            raise ValueError('approved_by is required')
        await self.get_deployment(tenant_id, deployment_id)
        await self._runner.approve(deployment_id, approved_by)
        return await self.get_deployment(tenant_id, deployment_id)

    async def cancel(self, tenant_id: str, deployment_id: str) -> Deployment:
        """Request cancellation.

        Pending and awaiting-approval deployments are cancelled at once.
        Validating and in-progress ones stop at their next safe point.
        Repeating a cancel is a no-op.
        """
        await self.get_deployment(tenant_id, deployment_id)
        await self._runner.cancel(deployment_id)
        return await self.get_deployment(tenant_id, deployment_id)

    async def reconcile_machine(self, tenant_id: str, machine_id: str) -> Machine:
        await self.get_machine(tenant_id, machine_id)
        return await self.reconciler.on_tick(machine_id)

    # ── Queries ──────────────────────────────────────────────────

    async def get_deployment(self, tenant_id: str, deployment_id: str) -> Deployment:
        deployment = await self._deployments.get(deployment_id)
        if deployment is None or deployment.tenant_id != tenant_id:
            raise DeploymentNotFound(deployment_id)
        if not self.logs.known(deployment_id):
            return deployment
        return replace(deployment, log_cursor=self.logs.last_cursor(deployment_id))

    async def list_deployments(
        self,
        tenant_id: str,
        *,
        machine_id: str | None = None,
        type: DeploymentType | str | None = None,
        state: DeploymentState | str | None = None,
    ) -> list[Deployment]:
        return await self._deployments.list(
            tenant_id,
            machine_id=machine_id,
            type=DeploymentType(type) if type else None,
            state=DeploymentState(state) if state else None,
        )

    async def get_logs(
        self,
        tenant_id: str,
        deployment_id: str,
        *,
        after: int = 0,
        limit: int | None = None,
    ) -> list[LogLine]:
        await self.get_deployment(tenant_id, deployment_id)
        return self.logs.lines(deployment_id, after=after, limit=limit)

    async def stream_logs(
        self,
        tenant_id: str,
        deployment_id: str,
        *,
        after_cursor: int = 0,
    ) -> AsyncIterator[LogLine | LogGap]:
        """Yield history after ``after_cursor`` then live lines until done."""
        deployment = await self.get_deployment(tenant_id, deployment_id)
        if deployment.is_terminal and not self.logs.known(deployment_id):
            return
        async for item in self.logs.subscribe(deployment_id, after_cursor=after_cursor):
            yield item

    async def get_machine(self, tenant_id: str, machine_id: str) -> Machine:
        machine = await self._machines.get(machine_id)
        if machine is None or machine.tenant_id != tenant_id:
            raise MachineNotFound(machine_id)
        return machine

    async def list_machines(self, tenant_id: str) -> list[Machine]:
        return await self._machines.list_for_tenant(tenant_id)

    async def wait_for_state(
        self,
        tenant_id: str,
        deployment_id: str,
        states: Iterable[DeploymentState | str],
        *,
        timeout: float | None = None,
    ) -> Deployment:
        await self.get_deployment(tenant_id, deployment_id)
        await self._runner.wait_for_state(deployment_id, states, timeout=timeout)
        return await self.get_deployment(tenant_id, deployment_id)

    async def wait_until_finished(
        self, tenant_id: str, deployment_id: str, *, timeout: float | None = None,
    ) -> Deployment:
        return await self.wait_for_state(
            tenant_id, deployment_id, sm.TERMINAL_STATES, timeout=timeout,
        )

    def active_deployments(self) -> list[str]:
        return self._runner.active_deployments()

    async def close(self) -> None:
        await self._runner.close()

    # ── Internals ────────────────────────────────────────────────

    async def _reserve_machine(self, tenant_id: str, spec: MachineSpec) -> Machine:
        account = await self._accounts.get(spec.provider_account_id)
        if account is None or account.tenant_id != tenant_id:
            raise ValueError(
                f'provider account {spec.provider_account_id!r} not found'
            )
        if spec.provider is not None and spec.provider is not account.provider_type:
            raise ValueError(
                f'spec provider {spec.provider.value!r} does not match account '
                f'provider {account.provider_type.value!r}'
            )
        machine = Machine.from_spec(
            machine_id=_new_id('mach'),
            tenant_id=tenant_id,
            spec=spec,
            provider=account.provider_type,
        )
        machine.desired_status = MachineStatus.running
        return await self._machines.create(machine)
