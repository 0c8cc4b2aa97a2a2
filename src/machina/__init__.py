"""Machina deployment orchestrator."""

from .deployments.orchestrator import Orchestrator
from .main import create_app
from .settings import ApprovalPolicy, OrchestratorSettings, RetryPolicy

__all__ = [
    "ApprovalPolicy",
    "Orchestrator",
    "OrchestratorSettings",
    "RetryPolicy",
    "create_app",
]
