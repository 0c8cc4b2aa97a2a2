"""Provisioning executors (terraform and direct provider calls)."""

from .base import (
    ApplyContext,
    ApplyResult,
    ExecutionTarget,
    Executor,
    LogCallback,
    PlanResult,
)
from .provisioning import ProvisioningExecutor
from .terraform import TerraformError, TerraformRunner, classify_terraform_failure

__all__ = [
    'ApplyContext',
    'ApplyResult',
    'ExecutionTarget',
    'Executor',
    'LogCallback',
    'PlanResult',
    'ProvisioningExecutor',
    'TerraformError',
    'TerraformRunner',
    'classify_terraform_failure',
]
