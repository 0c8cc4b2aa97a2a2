"""Provisioning executor: turns a deployment into provider work.

Dispatches on deployment type:
  create           -> terraform apply, or ProviderAdapter.create_machine
  destroy          -> terraform destroy, or ProviderAdapter.destroy
  reboot           -> ProviderAdapter.reboot, then poll until running
  service_restart  -> machine agent restart call

Terraform is used for create/destroy when ``settings.use_terraform`` is set
(destroy only when the machine's workspace holds terraform state). Without
terraform, plans are synthesized from the deployment type.

Every mutating call is preceded by a cancellation checkpoint and by
``ApplyContext.mark_mutated()``. Errors never propagate: they are returned
as diagnostics on the result objects.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from ..errors import (
    Diagnostic,
    ErrorCode,
    PreconditionFailed,
    ProviderError,
    diagnostic_from_exception,
)
from ..models import DeploymentType, MachineStatus, PlanSummary, ProviderAccount, ResourceChange
from ..observability.logging import get_logger
from ..protocols import AgentClient
from ..providers import build_provider_adapter
from ..providers.base import ProviderAdapter
from ..settings import OrchestratorSettings
from .base import (
    ApplyContext,
    ApplyResult,
    ExecutionTarget,
    LogCallback,
    PlanResult,
)
from .terraform import TerraformError, TerraformRunner

logger = get_logger(__name__)

AdapterFactory = Callable[[ProviderAccount, Mapping[str, str]], ProviderAdapter]

# Terraform variable names for each provider's credentials.
_TERRAFORM_CREDENTIAL_VARS: dict[str, dict[str, str]] = {
    'digitalocean': {'api_token': 'do_token'},
    'hetzner': {'api_token': 'hcloud_token'},
    'gcp': {'access_token': 'gcp_access_token', 'project_id': 'gcp_project'},
    'aws': {
        'access_key_id': 'aws_access_key',
        'secret_access_key': 'aws_secret_key',
    },
}

# Output names a module may use for the provider-side machine id.
_RESOURCE_ID_OUTPUTS = (
    'provider_resource_id',
    'droplet_id',
    'server_id',
    'instance_id',
)


def terraform_variables(target: ExecutionTarget) -> dict[str, Any]:
    """Build the tfvars document for ``target``.

    Raises:
        PreconditionFailed: A credential the module needs is missing.
    """
    machine = target.machine
    provider = target.account.provider_type.value
    variables: dict[str, Any] = {
        'name': machine.name,
        'machine_id': machine.machine_id,
        'region': machine.region,
        'size': machine.size,
        'image': machine.image,
        'tags': dict(machine.tags),
        'user_data': str(target.deployment.payload.get('bootstrap_config', '')),
    }
    for cred_key, var_name in _TERRAFORM_CREDENTIAL_VARS[provider].items():
        value = target.credentials.get(cred_key)
        if not value:
            raise PreconditionFailed(
                f'credentials for account {target.account.provider_account_id!r} '
                f'are missing: {cred_key}'
            )
        variables[var_name] = value
    if provider == 'aws' and target.credentials.get('session_token'):
        variables['aws_session_token'] = target.credentials['session_token']
    return variables


def synthesize_plan(target: ExecutionTarget) -> PlanSummary:
    """Describe what a direct provider call would change."""
    deployment = target.deployment
    machine = target.machine
    resource_type = f'{machine.provider.value}_machine'
    address = f'{resource_type}.{machine.name}'
    if deployment.type is DeploymentType.service_restart:
        service = str(deployment.payload.get('service_name', ''))
        change = ResourceChange(
            address=f'service.{service}',
            action='update',
            resource_type='service',
            resource_name=service,
        )
    else:
        action = {
            DeploymentType.create: 'create',
            DeploymentType.reboot: 'update',
            DeploymentType.destroy: 'delete',
        }[deployment.type]
        change = ResourceChange(
            address=address,
            action=action,
            resource_type=resource_type,
            resource_name=machine.name,
        )
    return PlanSummary(
        changes=(change,),
        raw_output=f'{change.action} {change.address}',
    )


class ProvisioningExecutor:
    """Plan/apply for all deployment types."""

    def __init__(
        self,
        *,
        settings: OrchestratorSettings,
        adapter_factory: AdapterFactory = build_provider_adapter,
        agent_client: AgentClient | None = None,
    ) -> None:
        self._settings = settings
        self._adapter_factory = adapter_factory
        self._agent = agent_client

    # ── Terraform selection ──────────────────────────────────────

    def terraform_runner(self, machine_id: str) -> TerraformRunner:
        return TerraformRunner(
            workspace_dir=self._settings.terraform_workspaces_dir / machine_id,
            modules_dir=self._settings.terraform_modules_dir,
            binary=self._settings.terraform_binary,
            interrupt_grace_seconds=self._settings.terraform_interrupt_grace_seconds,
        )

    def _uses_terraform(self, target: ExecutionTarget) -> bool:
        if not self._settings.use_terraform:
            return False
        kind = target.deployment.type
        if kind is DeploymentType.create:
            return True
        if kind is DeploymentType.destroy:
            return self.terraform_runner(target.machine.machine_id).has_state()
        return False

    # ── Plan ─────────────────────────────────────────────────────

    async def plan(self, target: ExecutionTarget, on_log: LogCallback) -> PlanResult:
        try:
            if self._uses_terraform(target):
                summary = await self._terraform_plan(target, on_log)
            else:
                summary = synthesize_plan(target)
        except TerraformError as exc:
            return PlanResult(error=exc.to_diagnostic())
        except Exception as exc:
            return PlanResult(error=_diagnose(exc, 'plan'))

        on_log(
            f'plan: {summary.resources_to_add} to add, '
            f'{summary.resources_to_change} to change, '
            f'{summary.resources_to_destroy} to destroy',
            level='info',
            source='system',
        )
        return PlanResult(summary=summary)

    async def _terraform_plan(
        self, target: ExecutionTarget, on_log: LogCallback,
    ) -> PlanSummary:
        runner = self.terraform_runner(target.machine.machine_id)
        runner.prepare(target.account.provider_type.value)
        runner.write_vars(terraform_variables(target))
        on_log('initializing terraform workspace', level='info', source='system')
        await runner.init(on_log)
        on_log('creating execution plan', level='info', source='system')
        return await runner.plan(
            on_log,
            destroy=target.deployment.type is DeploymentType.destroy,
        )

    # ── Apply ────────────────────────────────────────────────────

    async def apply(self, target: ExecutionTarget, context: ApplyContext) -> ApplyResult:
        try:
            if self._uses_terraform(target):
                return await self._terraform_apply(target, context)
            kind = target.deployment.type
            if kind is DeploymentType.create:
                return await self._create(target, context)
            if kind is DeploymentType.destroy:
                return await self._destroy(target, context)
            if kind is DeploymentType.reboot:
                return await self._reboot(target, context)
            return await self._restart_service(target, context)
        except TerraformError as exc:
            return ApplyResult(success=False, error=exc.to_diagnostic())
        except Exception as exc:
            return ApplyResult(success=False, error=_diagnose(exc, 'apply'))

    def _adapter(self, target: ExecutionTarget) -> ProviderAdapter:
        return self._adapter_factory(target.account, target.credentials)

    async def _terraform_apply(
        self, target: ExecutionTarget, context: ApplyContext,
    ) -> ApplyResult:
        runner = self.terraform_runner(target.machine.machine_id)
        if not runner.has_plan():
            # The saved plan was consumed by an earlier attempt.
            context.log('refreshing execution plan', source='system')
            runner.write_vars(terraform_variables(target))
            await runner.plan(
                context.log,
                destroy=target.deployment.type is DeploymentType.destroy,
            )
        if context.cancelled:
            return ApplyResult(success=False, cancelled=True)

        context.log('applying changes', source='system')
        result = await runner.apply(
            context.log,
            cancel_event=context.cancel_event,
            deadline_event=context.deadline_event,
            on_mutation=context.mark_mutated,
        )
        if result.interrupted:
            return ApplyResult(success=False, cancelled=context.cancelled)

        if target.deployment.type is DeploymentType.destroy:
            return ApplyResult(success=True)
        return ApplyResult(success=True, outputs=_normalize_outputs(await runner.outputs()))

    async def _create(self, target: ExecutionTarget, context: ApplyContext) -> ApplyResult:
        if context.cancelled:
            return ApplyResult(success=False, cancelled=True)
        adapter = self._adapter(target)
        spec = target.machine.to_spec(
            bootstrap_config=str(target.deployment.payload.get('bootstrap_config', '')),
        )
        context.log(
            f'creating {target.machine.provider.value} machine {spec.name!r} '
            f'in {spec.region}',
            source='provider',
        )
        context.mark_mutated()
        created = await adapter.create_machine(spec)
        context.log(
            f'machine created with provider id {created.provider_machine_id}',
            source='provider',
        )
        return ApplyResult(
            success=True,
            outputs={
                'provider_resource_id': created.provider_machine_id,
                'public_ip': created.public_ip,
                'private_ip': created.private_ip,
            },
        )

    async def _destroy(self, target: ExecutionTarget, context: ApplyContext) -> ApplyResult:
        resource_id = target.machine.provider_resource_id
        if not resource_id:
            context.log(
                'machine has no provider resource; nothing to destroy',
                level='warn',
                source='system',
            )
            return ApplyResult(success=True)
        if context.cancelled:
            return ApplyResult(success=False, cancelled=True)
        adapter = self._adapter(target)
        context.log(f'destroying provider machine {resource_id}', source='provider')
        context.mark_mutated()
        await adapter.destroy(resource_id)
        return ApplyResult(success=True)

    async def _reboot(self, target: ExecutionTarget, context: ApplyContext) -> ApplyResult:
        resource_id = target.machine.provider_resource_id
        if not resource_id:
            raise PreconditionFailed('machine has no provider resource id')
        if context.cancelled:
            return ApplyResult(success=False, cancelled=True)
        adapter = self._adapter(target)
        context.log(f'rebooting provider machine {resource_id}', source='provider')
        context.mark_mutated()
        await adapter.reboot(resource_id)

        attempts = self._settings.reboot_poll_attempts
        interval = self._settings.reboot_poll_interval_seconds
        for poll in range(1, attempts + 1):
            if await context.pause(interval):
                return ApplyResult(success=False, cancelled=context.cancelled)
            try:
                observed = await adapter.fetch_status(resource_id)
            except ProviderError as exc:
                if not exc.transient:
                    raise
                context.log(
                    f'status poll {poll}/{attempts} failed: {exc}',
                    level='warn',
                    source='provider',
                )
                continue
            if observed.status is MachineStatus.running:
                context.log('machine is running again', source='provider')
                return ApplyResult(
                    success=True,
                    outputs={
                        'public_ip': observed.public_ip,
                        'private_ip': observed.private_ip,
                    },
                )
            context.log(
                f'waiting for machine to come back ({observed.status.value})',
                level='debug',
                source='provider',
            )

        return ApplyResult(
            success=False,
            error=Diagnostic(
                code=ErrorCode.permanent_provider_error,
                message=(
                    f'machine did not return to running within '
                    f'{attempts} status checks after reboot'
                ),
            ),
        )

    async def _restart_service(
        self, target: ExecutionTarget, context: ApplyContext,
    ) -> ApplyResult:
        if self._agent is None:
            raise PreconditionFailed('no machine agent client is configured')
        service_name = str(target.deployment.payload.get('service_name', ''))
        if not service_name:
            raise PreconditionFailed('service_restart requires a service_name')
        if context.cancelled:
            return ApplyResult(success=False, cancelled=True)
        context.log(f'restarting service {service_name!r}', source='agent')
        context.mark_mutated()
        await self._agent.restart_service(target.machine, service_name)
        return ApplyResult(success=True, outputs={'service_name': service_name})


def _normalize_outputs(outputs: Mapping[str, Any]) -> dict[str, Any]:
    normalized = dict(outputs)
    for key in _RESOURCE_ID_OUTPUTS:
        if outputs.get(key) is not None:
            normalized['provider_resource_id'] = str(outputs[key])
            break
    return normalized


def _diagnose(exc: Exception, step: str) -> Diagnostic:
    diagnostic = diagnostic_from_exception(exc)
    if diagnostic.code is ErrorCode.executor_crash:
        logger.exception('executor_step_crashed', step=step)
    return diagnostic
