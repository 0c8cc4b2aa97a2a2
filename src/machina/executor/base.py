"""Provisioning executor contract.

The executor turns a deployment into provider work. It exposes two steps,
``plan`` (dry run, no side effects) and ``apply``, and never raises across
the deployment boundary: failures come back as classified ``Diagnostic``
values on the result objects.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable

from ..errors import Diagnostic
from ..models import Deployment, Machine, PlanSummary, ProviderAccount


class LogCallback(Protocol):
    """Receives one log line. Must not block."""

    def __call__(
        self, message: str, *, level: str = ..., source: str = ...,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class ExecutionTarget:
    """Everything an executor needs for one deployment."""

    deployment: Deployment
    machine: Machine
    account: ProviderAccount
    credentials: Mapping[str, str]

    def __repr__(self) -> str:
        # Credentials never appear in reprs or logs.
        return (
            f'ExecutionTarget(deployment_id={self.deployment.deployment_id!r}, '
            f'machine_id={self.machine.machine_id!r}, '
            f'provider={self.account.provider_type.value!r})'
        )


@dataclass(frozen=True, slots=True)
class PlanResult:
    summary: PlanSummary | None = None
    error: Diagnostic | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class ApplyResult:
    success: bool
    error: Diagnostic | None = None
    cancelled: bool = False
    outputs: Mapping[str, Any] = field(default_factory=dict)


class ApplyContext:
    """Per-deployment state shared between the runner and the executor.

    ``mutated`` latches to True once any mutating provider call has been
    sent; it is never reset across retries of the same deployment.

    ``deadline_event`` is set when the current attempt runs past its
    timeout. The runner then waits for the executor to return instead of
    abandoning the call, so executors stop at their next checkpoint and
    hand long-running tools the event as an interrupt signal.
    """

    def __init__(
        self,
        *,
        on_log: LogCallback,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.on_log = on_log
        self.cancel_event = cancel_event or asyncio.Event()
        self.deadline_event = asyncio.Event()
        self.mutated = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def timed_out(self) -> bool:
        return self.deadline_event.is_set()

    @property
    def stopping(self) -> bool:
        return self.cancelled or self.timed_out

    def mark_mutated(self) -> None:
        self.mutated = True

    def begin_attempt(self) -> None:
        self.deadline_event = asyncio.Event()

    def expire(self) -> None:
        self.deadline_event.set()

    async def pause(self, seconds: float) -> bool:
        """Sleep for ``seconds``. True if cancellation or the deadline cut it short."""
        if self.stopping:
            return True
        waiters = [
            asyncio.ensure_future(self.cancel_event.wait()),
            asyncio.ensure_future(self.deadline_event.wait()),
        ]
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        return bool(done)

    def log(
        self, message: str, *, level: str = 'info', source: str = 'system',
    ) -> None:
        self.on_log(message, level=level, source=source)


@runtime_checkable
class Executor(Protocol):
    async def plan(self, target: ExecutionTarget, on_log: LogCallback) -> PlanResult: ...
    async def apply(self, target: ExecutionTarget, context: ApplyContext) -> ApplyResult: ...
