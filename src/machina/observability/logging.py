"""structlog setup for the orchestrator.

Every log entry carries whichever correlation IDs are bound in the current
context: ``request_id`` and ``tenant_id`` from the HTTP layer and
``deployment_id`` inside a deployment task. Deployment tasks are spawned
from request handlers, so they inherit the request's IDs as well.

Usage::

    from machina.observability.logging import configure_logging, get_logger

    configure_logging(level='DEBUG', json_output=False)
    logger = get_logger(__name__)
    logger.info('deployment_transition', state='in_progress')
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog

request_id_ctx: ContextVar[str | None] = ContextVar('request_id', default=None)
tenant_id_ctx: ContextVar[str | None] = ContextVar('tenant_id', default=None)
deployment_id_ctx: ContextVar[str | None] = ContextVar('deployment_id', default=None)

_CORRELATION_VARS = (
    ('request_id', request_id_ctx),
    ('tenant_id', tenant_id_ctx),
    ('deployment_id', deployment_id_ctx),
)

# Libraries that log every HTTP call at INFO.
_NOISY_LOGGERS = ('httpx', 'httpcore', 'botocore', 'boto3', 'urllib3', 'uvicorn.access')

_configured = False


def _add_correlation_ids(logger, method_name: str, event_dict: dict) -> dict:
    for key, var in _CORRELATION_VARS:
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def configure_logging(*, level: str = 'INFO', json_output: bool = True) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Only the first call takes effect. Later calls (one per ``create_app``)
    are ignored so tests that build several apps keep a single handler.
    """
    global _configured
    if _configured:
        return
    _configured = True

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_ids,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer()
                if json_output
                else structlog.dev.ConsoleRenderer(colors=False),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
