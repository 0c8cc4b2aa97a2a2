"""Deployment state machine, machine locks, log streams and the runner."""

from .locks import LockOutcome, MachineLockManager
from .logstream import DeploymentLogStore, LogGap, LogLine
from .orchestrator import Orchestrator
from .runner import DeploymentRunner
from .state_machine import (
    ACTIVE_STATES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    InvalidStateTransition,
    begin_validation,
    cancel,
    complete,
    create_deployment,
    fail,
    mark_cancel_requested,
    record_attempt,
    request_approval,
    start_apply,
)

__all__ = [
    'ACTIVE_STATES',
    'ALLOWED_TRANSITIONS',
    'TERMINAL_STATES',
    'DeploymentLogStore',
    'DeploymentRunner',
    'InvalidStateTransition',
    'LockOutcome',
    'LogGap',
    'LogLine',
    'MachineLockManager',
    'Orchestrator',
    'begin_validation',
    'cancel',
    'complete',
    'create_deployment',
    'fail',
    'mark_cancel_requested',
    'record_attempt',
    'request_approval',
    'start_apply',
]
