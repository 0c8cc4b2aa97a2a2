"""Logging, metrics and HTTP correlation for the orchestrator."""

from .logging import (
    configure_logging,
    deployment_id_ctx,
    get_logger,
    request_id_ctx,
    tenant_id_ctx,
)
from .metrics import metrics_text

__all__ = [
    "configure_logging",
    "deployment_id_ctx",
    "get_logger",
    "metrics_text",
    "request_id_ctx",
    "tenant_id_ctx",
]
