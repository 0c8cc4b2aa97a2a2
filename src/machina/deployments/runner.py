"""Deployment runner: drives one deployment through the state machine.

For each deployment the runner:
  1. Waits for the machine lock (no worker slot held while queued).
  2. ``pending -> validating`` and checks preconditions.
  3. Plans under a worker slot, retrying transient errors.
  4. Parks in ``awaiting_approval`` when the approval policy says so.
  5. ``-> in_progress`` and applies, retrying transient errors with
     exponential backoff. Each attempt writes ``apply attempt N/M``.
  6. Reconciles the machine, then ``-> completed`` (or ``failed`` /
     ``cancelled``), and always releases the machine lock.

The runner is the only component that turns executor diagnostics into
state transitions. Every transition is persisted, audited once, counted and
logged.
"""

from __future__ import annotations

import asyncio
import functools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import AsyncIterator, Callable, Iterable

from ..audit import (
    OUTCOME_FAILURE,
    OUTCOME_PENDING,
    OUTCOME_SUCCESS,
    AuditEvent,
    AuditSink,
    record_safely,
)
from ..errors import (
    Diagnostic,
    DeploymentNotFound,
    ErrorCode,
    InvalidDeploymentState,
    PreconditionFailed,
)
from ..executor.base import ApplyContext, ApplyResult, ExecutionTarget, Executor, PlanResult
from ..models import (
    DESIRED_STATUS_FOR_TYPE,
    AgentStatus,
    CredentialStatus,
    Deployment,
    DeploymentState,
    DeploymentType,
    Machine,
    MachineStatus,
    utcnow,
)
from ..observability.logging import deployment_id_ctx, get_logger
from ..observability.metrics import (
    DEPLOYMENT_APPLY_ATTEMPTS_TOTAL,
    DEPLOYMENT_DURATION_SECONDS,
    DEPLOYMENT_TRANSITIONS_TOTAL,
    DEPLOYMENTS_IN_FLIGHT,
)
from ..protocols import (
    CredentialProvider,
    DeploymentRepository,
    HeartbeatSource,
    MachineRepository,
    ProviderAccountRepository,
)
from ..reconciler import Reconciler
from ..settings import OrchestratorSettings
from . import state_machine as sm
from .locks import MachineLockManager
from .logstream import DeploymentLogStore

logger = get_logger(__name__)

S = DeploymentState

PARTIAL_APPLY_MESSAGE = (
    'cancelled after provider changes were sent; the machine may be '
    'partially changed'
)


@dataclass
class _DeploymentHandle:
    """In-process coordination state for one deployment."""

    deployment_id: str
    machine_id: str
    plan_timeout: float
    apply_timeout: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    changed: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None

    def notify(self) -> None:
        previous, self.changed = self.changed, asyncio.Event()
        previous.set()


class DeploymentRunner:
    """Owns deployment tasks and every deployment state transition."""

    def __init__(
        self,
        *,
        settings: OrchestratorSettings,
        deployments: DeploymentRepository,
        machines: MachineRepository,
        accounts: ProviderAccountRepository,
        credentials: CredentialProvider,
        executor: Executor,
        reconciler: Reconciler,
        locks: MachineLockManager,
        logs: DeploymentLogStore,
        audit: AuditSink,
        heartbeats: HeartbeatSource | None = None,
    ) -> None:
        self._settings = settings
        self._deployments = deployments
        self._machines = machines
        self._accounts = accounts
        self._credentials = credentials
        self._executor = executor
        self._reconciler = reconciler
        self._locks = locks
        self._logs = logs
        self._audit = audit
        self._heartbeats = heartbeats
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_deployments)
        self._handles: dict[str, _DeploymentHandle] = {}

    # ── Lifecycle ────────────────────────────────────────────────

    async def register(
        self,
        deployment: Deployment,
        *,
        plan_timeout: float | None = None,
        apply_timeout: float | None = None,
    ) -> None:
        """Track a freshly created pending deployment and audit it."""
        self._handles[deployment.deployment_id] = _DeploymentHandle(
            deployment_id=deployment.deployment_id,
            machine_id=deployment.machine_id,
            plan_timeout=plan_timeout or self._settings.plan_timeout_seconds,
            apply_timeout=apply_timeout or self._settings.apply_timeout_seconds,
        )
        self._log(
            deployment.deployment_id,
            f'{deployment.type.value} deployment queued for machine '
            f'{deployment.machine_id} by {deployment.initiated_by}',
        )
        await self._after_transition(None, deployment)

    def start(self, deployment_id: str) -> asyncio.Task:
        handle = self._handles[deployment_id]
        handle.task = asyncio.create_task(
            self._run(handle), name=f'deployment-{deployment_id}',
        )
        return handle.task

    async def close(self) -> None:
        """Cancel outstanding deployment tasks (shutdown only)."""
        tasks = [
            h.task for h in self._handles.values()
            if h.task is not None and not h.task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def active_deployments(self) -> list[str]:
        """Deployments whose task has not finished yet."""
        return list(self._handles)

    # ── Operator actions ─────────────────────────────────────────

    async def approve(self, deployment_id: str, approved_by: str) -> Deployment:
        handle = await self._handle(deployment_id)

        def change(current: Deployment) -> Deployment | None:
            if current.state is S.in_progress or current.is_terminal:
                return None
            if current.state is not S.awaiting_approval:
                raise InvalidDeploymentState(
                    deployment_id, current.state.value, 'approve',
                )
            return sm.start_apply(current, now=utcnow(), approved_by=approved_by)

        current, updated = await self._update(handle, change)
        if updated is None:
            return current
        self._log(deployment_id, f'plan approved by {approved_by}')
        handle.wakeup.set()
        return updated

    async def cancel(self, deployment_id: str) -> Deployment:
        handle = await self._handle(deployment_id)

        def change(current: Deployment) -> Deployment | None:
            if current.is_terminal:
                if current.cancel_requested:
                    return None
                raise InvalidDeploymentState(
                    deployment_id, current.state.value, 'cancel',
                )
            if current.cancel_requested:
                return None
            flagged = sm.mark_cancel_requested(current)
            if current.state in (S.pending, S.awaiting_approval):
                return sm.cancel(flagged, now=utcnow())
            return flagged

        current, updated = await self._update(handle, change)
        if updated is None:
            return current

        handle.cancel_event.set()
        handle.wakeup.set()
        if updated.state is S.cancelled:
            self._locks.withdraw(handle.machine_id, deployment_id)
        else:
            self._log(
                deployment_id,
                'cancellation requested; stopping at the next safe point',
                level='warn',
            )
            await record_safely(
                self._audit,
                AuditEvent(
                    action='deployment.cancel_requested',
                    outcome=OUTCOME_PENDING,
                    tenant_id=updated.tenant_id,
                    deployment_id=deployment_id,
                    machine_id=updated.machine_id,
                    details={'state': updated.state.value},
                ),
            )
        return updated

    async def wait_for_state(
        self,
        deployment_id: str,
        states: Iterable[DeploymentState],
        *,
        timeout: float | None = None,
    ) -> Deployment:
        """Return the deployment once it is in one of ``states``.

        Raises:
            TimeoutError: ``timeout`` elapsed first.
        """
        wanted = frozenset(DeploymentState(s) for s in states)
        handle = await self._handle(deployment_id)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            changed = handle.changed
            current = await self._load(deployment_id)
            if current.state in wanted:
                return current
            if current.is_terminal:
                raise InvalidDeploymentState(
                    deployment_id, current.state.value, 'wait for',
                )
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise TimeoutError(
                    f'deployment {deployment_id!r} still {current.state.value!r}'
                )
            await asyncio.wait_for(changed.wait(), timeout=remaining)

    # ── Driver ───────────────────────────────────────────────────

    async def _run(self, handle: _DeploymentHandle) -> None:
        token = deployment_id_ctx.set(handle.deployment_id)
        try:
            await self._drive(handle)
        except asyncio.CancelledError:
            logger.warning('deployment_task_cancelled', deployment_id=handle.deployment_id)
            raise
        except Exception as exc:
            logger.exception('deployment_runner_crashed', deployment_id=handle.deployment_id)
            await self._crash(handle, exc)
        finally:
            self._locks.release(handle.machine_id, handle.deployment_id)
            if not self._logs.is_closed(handle.deployment_id):
                self._logs.close(handle.deployment_id)
            handle.notify()
            self._handles.pop(handle.deployment_id, None)
            deployment_id_ctx.reset(token)

    async def _drive(self, handle: _DeploymentHandle) -> None:
        deployment_id = handle.deployment_id
        if not await self._locks.wait_until_granted(handle.machine_id, deployment_id):
            return

        deployment = await self._advance(handle, sm.begin_validation)
        if deployment is None:
            return
        self._log(deployment_id, f'lock acquired on machine {handle.machine_id}; validating')

        try:
            target = await self._check_preconditions(deployment)
        except PreconditionFailed as exc:
            await self._fail(
                handle,
                Diagnostic(code=ErrorCode.precondition_failed, message=str(exc)),
            )
            return
        if handle.cancel_event.is_set():
            await self._advance(handle, sm.cancel)
            return

        plan_result = await self._plan(handle, target)
        if handle.cancel_event.is_set():
            await self._advance(handle, sm.cancel)
            return
        if plan_result.error is not None or plan_result.summary is None:
            await self._fail(
                handle,
                plan_result.error or Diagnostic(
                    code=ErrorCode.executor_crash,
                    message='executor returned an empty plan',
                ),
            )
            return

        plan = plan_result.summary
        if self._settings.approval.requires_approval(deployment.type, plan):
            await self._advance(handle, sm.request_approval, plan=plan)
            self._log(
                deployment_id,
                f'awaiting approval ({plan.resources_to_destroy} to destroy)',
            )
            await handle.wakeup.wait()
            current = await self._load(deployment_id)
            if current.state is not S.in_progress:
                return
        else:
            if await self._advance(handle, sm.start_apply, plan=plan) is None:
                return

        await self._record_desired_status(deployment)
        await self._apply(handle, target)

    async def _record_desired_status(self, deployment: Deployment) -> None:
        """Store the status the operator asked for once the apply is committed."""
        desired = DESIRED_STATUS_FOR_TYPE[deployment.type]
        if desired is None:
            return
        machine = await self._machines.get(deployment.machine_id)
        if machine is not None and machine.desired_status is not desired:
            await self._machines.update(machine.machine_id, desired_status=desired)

    async def _plan(self, handle: _DeploymentHandle, target: ExecutionTarget) -> PlanResult:
        policy = self._settings.retry
        on_log = functools.partial(self._log, handle.deployment_id)
        result = PlanResult()
        for attempt in range(1, policy.max_attempts + 1):
            self._log(handle.deployment_id, f'plan attempt {attempt}/{policy.max_attempts}')
            async with self._slot():
                try:
                    result = await asyncio.wait_for(
                        self._executor.plan(target, on_log),
                        timeout=handle.plan_timeout,
                    )
                except TimeoutError:
                    result = PlanResult(error=_timeout_diagnostic('plan', handle.plan_timeout))
            if result.error is None or not result.error.transient:
                return result
            if attempt == policy.max_attempts:
                return result
            delay = policy.delay_for(attempt)
            self._log(
                handle.deployment_id,
                f'plan failed with a transient error: {result.error.message}; '
                f'retrying in {delay:g}s',
                level='warn',
            )
            if await _sleep_or_cancel(handle.cancel_event, delay):
                return result
        return result

    async def _apply(self, handle: _DeploymentHandle, target: ExecutionTarget) -> None:
        deployment_id = handle.deployment_id
        policy = self._settings.retry
        context = ApplyContext(
            on_log=functools.partial(self._log, deployment_id),
            cancel_event=handle.cancel_event,
        )
        kind = target.deployment.type.value

        for attempt in range(1, policy.max_attempts + 1):
            if context.cancelled:
                await self._finish_cancelled(handle, context)
                return
            await self._update(handle, sm.record_attempt)
            self._log(deployment_id, f'apply attempt {attempt}/{policy.max_attempts}')

            async with self._slot():
                result = await self._attempt(handle, target, context)

            # A cancel that lands while a mutating call is in flight wins over
            # that call's outcome.
            if result.cancelled or context.cancelled:
                DEPLOYMENT_APPLY_ATTEMPTS_TOTAL.labels(type=kind, outcome='cancelled').inc()
                await self._finish_cancelled(handle, context, result)
                return
            if result.success:
                DEPLOYMENT_APPLY_ATTEMPTS_TOTAL.labels(type=kind, outcome='success').inc()
                await self._finish_completed(handle, result)
                return

            diagnostic = result.error or Diagnostic(
                code=ErrorCode.executor_crash,
                message='executor reported failure without a diagnostic',
            )
            DEPLOYMENT_APPLY_ATTEMPTS_TOTAL.labels(type=kind, outcome=diagnostic.code.value).inc()
            self._log(
                deployment_id,
                f'apply attempt {attempt} failed: {diagnostic.message}',
                level='error',
            )
            if not diagnostic.transient or attempt == policy.max_attempts:
                await self._fail(handle, diagnostic, mutated=context.mutated)
                return

            delay = policy.delay_for(attempt)
            self._log(deployment_id, f'retrying in {delay:g}s', level='warn')
            if await _sleep_or_cancel(handle.cancel_event, delay):
                await self._finish_cancelled(handle, context)
                return

    async def _attempt(
        self,
        handle: _DeploymentHandle,
        target: ExecutionTarget,
        context: ApplyContext,
    ) -> ApplyResult:
        """Run one executor apply under the attempt deadline.

        At the deadline the executor is told to stop through
        ``context.deadline_event`` and gets ``apply_grace_seconds`` to
        return. The call is cancelled only after that, so a provider call
        that is merely slow still reports what it did.
        """
        timeout = handle.apply_timeout
        context.begin_attempt()
        call = asyncio.ensure_future(self._executor.apply(target, context))
        try:
            done, _ = await asyncio.wait({call}, timeout=timeout)
            if not done:
                grace = self._settings.apply_grace_seconds
                context.expire()
                self._log(
                    handle.deployment_id,
                    f'apply attempt exceeded {timeout:g}s; '
                    f'waiting up to {grace:g}s for it to stop',
                    level='warn',
                )
                done, _ = await asyncio.wait({call}, timeout=grace)
            if not done:
                call.cancel()
                await asyncio.wait({call})
        except asyncio.CancelledError:
            call.cancel()
            raise

        if call.cancelled():
            return ApplyResult(
                success=False,
                error=_timeout_diagnostic('apply attempt', timeout),
            )
        result = call.result()
        stopped_by_deadline = (
            context.timed_out and not context.cancelled
            and not result.success and result.error is None
        )
        if stopped_by_deadline:
            return ApplyResult(
                success=False,
                error=_timeout_diagnostic('apply attempt', timeout),
            )
        return result

    # ── Outcomes ─────────────────────────────────────────────────

    async def _record_outputs(self, handle: _DeploymentHandle, result: ApplyResult) -> dict:
        outputs = dict(result.outputs)
        resource_id = outputs.get('provider_resource_id')
        if resource_id:
            await self._machines.update(
                handle.machine_id, provider_resource_id=str(resource_id),
            )
        return outputs

    async def _finish_completed(self, handle: _DeploymentHandle, result: ApplyResult) -> None:
        outputs = await self._record_outputs(handle, result)
        await self._reconcile_quietly(handle.machine_id)
        await self._advance(handle, sm.complete, outputs=outputs)

    async def _finish_cancelled(
        self,
        handle: _DeploymentHandle,
        context: ApplyContext,
        result: ApplyResult | None = None,
    ) -> None:
        if not context.mutated:
            await self._advance(handle, sm.cancel)
            return
        if result is not None and result.success:
            # The call finished; keep the provider id so reconcile can find it.
            await self._record_outputs(handle, result)
        await self._fail(
            handle,
            Diagnostic(
                code=ErrorCode.cancelled_after_partial_apply,
                message=PARTIAL_APPLY_MESSAGE,
            ),
            mutated=True,
        )

    async def _fail(
        self,
        handle: _DeploymentHandle,
        diagnostic: Diagnostic,
        *,
        mutated: bool = False,
    ) -> None:
        current = await self._load(handle.deployment_id)
        applied = current.state is S.in_progress
        if mutated:
            await self._reconcile_quietly(handle.machine_id)
        await self._advance(
            handle,
            sm.fail,
            error_code=diagnostic.code,
            error=diagnostic.message,
        )
        if applied:
            await self._reconciler.flag_drift(
                handle.machine_id,
                f'{current.type.value} deployment failed: {diagnostic.message}',
                deployment_id=handle.deployment_id,
            )

    async def _crash(self, handle: _DeploymentHandle, exc: Exception) -> None:
        message = f'executor crash: {type(exc).__name__}: {exc}'
        try:
            current = await self._load(handle.deployment_id)
            if current.is_terminal:
                return
            if S.failed in sm.ALLOWED_TRANSITIONS[current.state]:
                await self._fail(
                    handle,
                    Diagnostic(code=ErrorCode.executor_crash, message=message),
                )
            else:
                await self._advance(handle, sm.cancel, reason=message)
        except Exception:
            logger.exception(
                'deployment_crash_handling_failed',
                deployment_id=handle.deployment_id,
            )

    async def _reconcile_quietly(self, machine_id: str) -> None:
        try:
            await self._reconciler.reconcile(machine_id)
        except Exception:
            logger.exception('post_apply_reconcile_failed', machine_id=machine_id)

    # ── Preconditions ────────────────────────────────────────────

    async def _check_preconditions(self, deployment: Deployment) -> ExecutionTarget:
        if self._locks.holder(deployment.machine_id) != deployment.deployment_id:
            raise PreconditionFailed('machine lock is not held by this deployment')

        machine = await self._machines.get(deployment.machine_id)
        if machine is None or machine.tenant_id != deployment.tenant_id:
            raise PreconditionFailed(f'machine {deployment.machine_id!r} not found')
        if (
            deployment.type is not DeploymentType.create
            and machine.actual_status is MachineStatus.terminated
        ):
            raise PreconditionFailed(f'machine {machine.machine_id!r} is terminated')

        if deployment.type is DeploymentType.reboot:
            if machine.actual_status is not MachineStatus.running:
                raise PreconditionFailed(
                    f'reboot requires a running machine '
                    f'(actual status is {machine.actual_status.value!r})'
                )
            if not machine.provider_resource_id:
                raise PreconditionFailed('machine has no provider resource id')
        if deployment.type is DeploymentType.service_restart:
            if not deployment.payload.get('service_name'):
                raise PreconditionFailed('service_restart requires a service_name')
            if not await self._agent_connected(machine):
                raise PreconditionFailed('machine agent is not connected')

        account = await self._accounts.get(machine.provider_account_id)
        if account is None or account.tenant_id != deployment.tenant_id:
            raise PreconditionFailed(
                f'provider account {machine.provider_account_id!r} not found'
            )
        if account.provider_type is not machine.provider:
            raise PreconditionFailed(
                f'provider account is {account.provider_type.value!r} but the '
                f'machine runs on {machine.provider.value!r}'
            )
        if account.credential_status is not CredentialStatus.valid:
            raise PreconditionFailed(
                f'provider account credentials are '
                f'{account.credential_status.value!r}'
            )
        try:
            credentials = await self._credentials.resolve(account.provider_account_id)
        except Exception as exc:
            raise PreconditionFailed(f'credentials could not be resolved: {exc}') from exc

        return ExecutionTarget(
            deployment=deployment,
            machine=machine,
            account=account,
            credentials=credentials,
        )

    async def _agent_connected(self, machine: Machine) -> bool:
        if self._heartbeats is None:
            return machine.agent_status is AgentStatus.connected
        last = await self._heartbeats.last_heartbeat(machine.machine_id)
        if last is None:
            return False
        limit = timedelta(seconds=self._settings.agent_heartbeat_timeout_seconds)
        return utcnow() - last <= limit

    # ── Persistence helpers ──────────────────────────────────────

    async def _handle(self, deployment_id: str) -> _DeploymentHandle:
        handle = self._handles.get(deployment_id)
        if handle is not None:
            return handle
        # Finished deployments drop their handle. Operator calls on them only
        # validate against the stored snapshot, so a detached handle serves.
        deployment = await self._load(deployment_id)
        return _DeploymentHandle(
            deployment_id=deployment_id,
            machine_id=deployment.machine_id,
            plan_timeout=self._settings.plan_timeout_seconds,
            apply_timeout=self._settings.apply_timeout_seconds,
        )

    async def _load(self, deployment_id: str) -> Deployment:
        deployment = await self._deployments.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFound(deployment_id)
        return deployment

    async def _update(
        self,
        handle: _DeploymentHandle,
        change: Callable[[Deployment], Deployment | None],
    ) -> tuple[Deployment, Deployment | None]:
        """Apply ``change`` to the stored snapshot under the handle lock."""
        async with handle.lock:
            current = await self._load(handle.deployment_id)
            updated = change(current)
            if updated is None or updated is current:
                return current, None
            updated = replace(
                updated,
                log_cursor=self._logs.last_cursor(handle.deployment_id),
            )
            await self._deployments.save(updated)
        if updated.state is not current.state:
            await self._after_transition(current, updated)
        handle.notify()
        return current, updated

    async def _advance(
        self,
        handle: _DeploymentHandle,
        transition: Callable[..., Deployment],
        **kwargs,
    ) -> Deployment | None:
        """Run a state-machine transition. None if already terminal."""

        def change(current: Deployment) -> Deployment | None:
            if current.is_terminal:
                return None
            return transition(current, now=utcnow(), **kwargs)

        _, updated = await self._update(handle, change)
        return updated

    async def _after_transition(
        self, before: Deployment | None, after: Deployment,
    ) -> None:
        from_state = before.state.value if before else None
        to_state = after.state.value
        if after.state is S.completed:
            outcome = OUTCOME_SUCCESS
        elif after.state in (S.failed, S.cancelled):
            outcome = OUTCOME_FAILURE
        else:
            outcome = OUTCOME_PENDING

        DEPLOYMENT_TRANSITIONS_TOTAL.labels(
            type=after.type.value,
            state=to_state,
            error_code=after.error_code or '',
        ).inc()
        if after.is_terminal and after.started_at and after.finished_at:
            DEPLOYMENT_DURATION_SECONDS.labels(
                type=after.type.value, state=to_state,
            ).observe((after.finished_at - after.started_at).total_seconds())

        logger.info(
            'deployment_transition',
            deployment_id=after.deployment_id,
            machine_id=after.machine_id,
            deployment_type=after.type.value,
            from_state=from_state,
            to_state=to_state,
            error_code=after.error_code,
        )
        if before is not None:
            suffix = f': {after.error}' if after.state is S.failed else ''
            self._log(
                after.deployment_id,
                f'state {from_state} -> {to_state}{suffix}',
                level='error' if after.state is S.failed else 'info',
            )

        details: dict = {
            'from_state': from_state,
            'type': after.type.value,
        }
        if after.error_code:
            details['error_code'] = after.error_code
        if after.error:
            details['error'] = after.error
        if after.state is S.awaiting_approval and after.plan is not None:
            details['plan'] = {
                'resources_to_add': after.plan.resources_to_add,
                'resources_to_change': after.plan.resources_to_change,
                'resources_to_destroy': after.plan.resources_to_destroy,
            }
        if after.approved_by and after.state is S.in_progress:
            details['approved_by'] = after.approved_by

        await record_safely(
            self._audit,
            AuditEvent(
                action=f'deployment.{to_state}',
                outcome=outcome,
                tenant_id=after.tenant_id,
                deployment_id=after.deployment_id,
                machine_id=after.machine_id,
                actor=after.approved_by if after.state is S.in_progress and after.approved_by else after.initiated_by,
                details=details,
            ),
        )

    def _log(
        self,
        deployment_id: str,
        message: str,
        *,
        level: str = 'info',
        source: str = 'system',
    ) -> None:
        if self._logs.is_closed(deployment_id):
            return
        self._logs.append(deployment_id, message, level=level, source=source)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            DEPLOYMENTS_IN_FLIGHT.inc()
            try:
                yield
            finally:
                DEPLOYMENTS_IN_FLIGHT.dec()


async def _sleep_or_cancel(cancel_event: asyncio.Event, seconds: float) -> bool:
    """Back off for ``seconds``; True if cancellation interrupted it."""
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True


def _timeout_diagnostic(step: str, seconds: float) -> Diagnostic:
    return Diagnostic(
        code=ErrorCode.transient_provider_error,
        message=f'{step} timed out after {seconds:g}s',
    )
