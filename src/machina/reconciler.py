"""Machine reconciler: the only writer of ``Machine.actual_status``.

``reconcile`` performs an authoritative provider read and records the
observed status, addresses, sync status and agent status. A failed read
leaves ``actual_status`` untouched, marks the machine ``unknown`` and emits
``machine.drift_detected``; it never raises into the caller's deployment.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, Mapping

from .audit import OUTCOME_FAILURE, OUTCOME_SUCCESS, AuditEvent, AuditSink, record_safely
from .errors import MachineNotFound, PreconditionFailed
from .models import (
    AgentStatus,
    Machine,
    MachineStatus,
    ProviderAccount,
    SyncStatus,
    utcnow,
)
from .observability.logging import get_logger
from .observability.metrics import RECONCILE_TOTAL
from .protocols import (
    CredentialProvider,
    HeartbeatSource,
    MachineRepository,
    ProviderAccountRepository,
)
from .providers import build_provider_adapter
from .providers.base import ObservedMachine, ProviderAdapter

logger = get_logger(__name__)

AdapterFactory = Callable[[ProviderAccount, Mapping[str, str]], ProviderAdapter]


class Reconciler:
    """Converges machine records with what the provider reports."""

    def __init__(
        self,
        *,
        machines: MachineRepository,
        accounts: ProviderAccountRepository,
        credentials: CredentialProvider,
        audit: AuditSink,
        heartbeats: HeartbeatSource | None = None,
        adapter_factory: AdapterFactory = build_provider_adapter,
        heartbeat_timeout_seconds: float = 90.0,
    ) -> None:
        self._machines = machines
        self._accounts = accounts
        self._credentials = credentials
        self._audit = audit
        self._heartbeats = heartbeats
        self._adapter_factory = adapter_factory
        self._heartbeat_timeout = timedelta(seconds=heartbeat_timeout_seconds)

    async def reconcile(self, machine_id: str) -> Machine:
        """Read the provider and record what it reports.

        Raises:
            MachineNotFound: No machine record exists.
        """
        machine = await self._machines.get(machine_id)
        if machine is None:
            raise MachineNotFound(machine_id)

        if not machine.provider_resource_id:
            if machine.desired_status is not MachineStatus.terminated:
                # Nothing exists at the provider yet.
                updated = await self._machines.record_observation(
                    machine_id,
                    actual_status=None,
                    public_ip=None,
                    private_ip=None,
                    sync_status=SyncStatus.pending,
                    agent_status=None,
                )
                return updated or machine
            observed = ObservedMachine(status=MachineStatus.terminated)
        else:
            try:
                observed = await self._read_provider(machine)
            except Exception as exc:
                return await self._record_read_failure(machine, exc)

        agent_status = await self._agent_status(machine, observed.status)
        updated = await self._machines.record_observation(
            machine_id,
            actual_status=observed.status,
            public_ip=observed.public_ip,
            private_ip=observed.private_ip,
            sync_status=SyncStatus.in_sync,
            agent_status=agent_status,
        )
        RECONCILE_TOTAL.labels(provider=machine.provider.value, outcome='in_sync').inc()
        logger.info(
            'machine_reconciled',
            machine_id=machine_id,
            previous_status=machine.actual_status.value,
            actual_status=observed.status.value,
        )
        await record_safely(
            self._audit,
            AuditEvent(
                action='machine.reconciled',
                outcome=OUTCOME_SUCCESS,
                tenant_id=machine.tenant_id,
                machine_id=machine_id,
                details={
                    'previous_status': machine.actual_status.value,
                    'actual_status': observed.status.value,
                    'desired_status': machine.desired_status.value,
                },
            ),
        )
        return updated or machine

    async def on_tick(self, machine_id: str) -> Machine:
        """Reconcile, then flag drift if actual differs from desired."""
        machine = await self.reconcile(machine_id)
        if (
            machine.sync_status is SyncStatus.in_sync
            and machine.actual_status is not machine.desired_status
        ):
            flagged = await self.flag_drift(
                machine_id,
                f'actual status {machine.actual_status.value!r} does not match '
                f'desired status {machine.desired_status.value!r}',
            )
            return flagged or machine
        return machine

    async def flag_drift(
        self,
        machine_id: str,
        reason: str,
        *,
        deployment_id: str | None = None,
    ) -> Machine | None:
        """Mark the machine drifted and record why."""
        machine = await self._machines.update(machine_id, sync_status=SyncStatus.drifted)
        if machine is None:
            return None
        RECONCILE_TOTAL.labels(provider=machine.provider.value, outcome='drifted').inc()
        logger.warning(
            'machine_drift_detected',
            machine_id=machine_id,
            reason=reason,
            deployment_id=deployment_id,
        )
        await record_safely(
            self._audit,
            AuditEvent(
                action='machine.drift_detected',
                outcome=OUTCOME_FAILURE,
                tenant_id=machine.tenant_id,
                deployment_id=deployment_id,
                machine_id=machine_id,
                details={'reason': reason},
            ),
        )
        return machine

    async def _read_provider(self, machine: Machine) -> ObservedMachine:
        account = await self._accounts.get(machine.provider_account_id)
        if account is None:
            raise PreconditionFailed(
                f'provider account {machine.provider_account_id!r} not found'
            )
        credentials = await self._credentials.resolve(account.provider_account_id)
        adapter = self._adapter_factory(account, credentials)
        try:
            return await adapter.fetch_status(machine.provider_resource_id or '')
        finally:
            await adapter.aclose()

    async def _record_read_failure(self, machine: Machine, exc: Exception) -> Machine:
        reason = f'provider read failed: {exc}'
        logger.warning(
            'machine_reconcile_failed',
            machine_id=machine.machine_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        RECONCILE_TOTAL.labels(provider=machine.provider.value, outcome='unknown').inc()
        updated = await self._machines.record_observation(
            machine.machine_id,
            actual_status=None,
            public_ip=None,
            private_ip=None,
            sync_status=SyncStatus.unknown,
            agent_status=None,
        )
        await record_safely(
            self._audit,
            AuditEvent(
                action='machine.drift_detected',
                outcome=OUTCOME_FAILURE,
                tenant_id=machine.tenant_id,
                machine_id=machine.machine_id,
                details={'reason': reason},
            ),
        )
        return updated or machine

    async def _agent_status(
        self, machine: Machine, observed: MachineStatus,
    ) -> AgentStatus | None:
        if self._heartbeats is None:
            return None
        if observed in (MachineStatus.terminated, MachineStatus.stopped):
            return AgentStatus.disconnected
        last = await self._heartbeats.last_heartbeat(machine.machine_id)
        if last is None:
            if machine.agent_status in (AgentStatus.unknown, AgentStatus.not_installed):
                return AgentStatus.not_installed
            return AgentStatus.disconnected
        if utcnow() - last <= self._heartbeat_timeout:
            return AgentStatus.connected
        return AgentStatus.disconnected
