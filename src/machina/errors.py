"""Error taxonomy for the deployment orchestrator.

Two families live here:

* ``ProviderError`` and subclasses are raised by provider adapters and the
  machine agent client. Each carries a transient/permanent classification.
* ``Diagnostic`` is the value the executor hands back to the deployment
  runner. Executors never raise across the deployment boundary; they convert
  exceptions into diagnostics with ``diagnostic_from_exception``.

Messages are safe to surface to operators. They never contain credentials.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    precondition_failed = 'precondition_failed'
    transient_provider_error = 'transient_provider_error'
    permanent_provider_error = 'permanent_provider_error'
    executor_crash = 'executor_crash'
    cancelled_after_partial_apply = 'cancelled_after_partial_apply'


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Classified failure returned by the executor."""

    code: ErrorCode
    message: str
    detail: str = ''

    @property
    def transient(self) -> bool:
        return self.code is ErrorCode.transient_provider_error

    def __str__(self) -> str:
        return self.message


# ── Provider errors ──────────────────────────────────────────────────


class ProviderError(Exception):
    """Base error for provider adapter and machine agent calls."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)

    def __repr__(self) -> str:
        parts = [f'{type(self).__name__}({self.args[0]!r}']
        if self.provider:
            parts.append(f'provider={self.provider!r}')
        if self.operation:
            parts.append(f'operation={self.operation!r}')
        if self.status_code is not None:
            parts.append(f'status_code={self.status_code!r}')
        return ', '.join(parts) + ')'


class TransientProviderError(ProviderError):
    """Timeout, rate limit, or 5xx. Expected to succeed on retry."""

    transient = True


class PermanentProviderError(ProviderError):
    """4xx (except rate limit) or malformed request. Never retried."""


class ProviderNotFoundError(PermanentProviderError):
    """The provider has no such machine (404)."""


def classify_status_code(status_code: int) -> type[ProviderError]:
    """Map an HTTP status code onto the provider error taxonomy."""
    if status_code == 404:
        return ProviderNotFoundError
    if status_code in (408, 425, 429) or status_code >= 500:
        return TransientProviderError
    return PermanentProviderError


def diagnostic_from_exception(exc: BaseException) -> Diagnostic:
    """Convert any exception raised below the executor into a diagnostic."""
    if isinstance(exc, PreconditionFailed):
        return Diagnostic(code=ErrorCode.precondition_failed, message=str(exc))
    if isinstance(exc, ProviderError):
        code = (
            ErrorCode.transient_provider_error
            if exc.transient
            else ErrorCode.permanent_provider_error
        )
        return Diagnostic(code=code, message=str(exc), detail=repr(exc))
    if isinstance(exc, TimeoutError):
        return Diagnostic(
            code=ErrorCode.transient_provider_error,
            message=str(exc) or 'operation timed out',
        )
    return Diagnostic(
        code=ErrorCode.executor_crash,
        message=f'{type(exc).__name__}: {exc}',
        detail=repr(exc),
    )


# ── Orchestrator errors ──────────────────────────────────────────────


class OrchestratorError(Exception):
    """Base error raised by the orchestrator facade."""


class PreconditionFailed(OrchestratorError):
    """A deployment precondition does not hold. Never retried."""


class DeploymentNotFound(OrchestratorError, LookupError):
    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        super().__init__(f'deployment {deployment_id!r} not found')


class MachineNotFound(OrchestratorError, LookupError):
    def __init__(self, machine_id: str) -> None:
        self.machine_id = machine_id
        super().__init__(f'machine {machine_id!r} not found')


class InvalidDeploymentState(OrchestratorError):
    """The requested operation is not valid in the deployment's state."""

    def __init__(self, deployment_id: str, state: str, operation: str) -> None:
        self.deployment_id = deployment_id
        self.state = state
        self.operation = operation
        super().__init__(
            f'cannot {operation} deployment {deployment_id!r} '
            f'in state {state!r}'
        )
