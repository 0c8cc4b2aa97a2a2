"""Deployment orchestrator FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires observability middleware, the deployment and machine
routes, and the orchestrator with its collaborators.

Usage:
    # Local development (in-memory collaborators)
    from machina import create_app, OrchestratorSettings
    app = create_app(OrchestratorSettings())

    # Non-local (persistent collaborators injected)
    settings = OrchestratorSettings.from_env()
    orchestrator = Orchestrator(settings=settings, machines=..., ...)
    app = create_app(settings, orchestrator=orchestrator)

    # Testing (full DI control)
    app = create_app(settings, orchestrator=orchestrator)
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response

from .audit import LoggingAuditSink
from .deployments.orchestrator import Orchestrator
from .inmemory import (
    InMemoryCredentialProvider,
    InMemoryDeploymentRepository,
    InMemoryHeartbeatSource,
    InMemoryMachineRepository,
    InMemoryProviderAccountRepository,
)
from .observability.logging import configure_logging, get_logger
from .observability.metrics import metrics_text
from .observability.middleware import MetricsMiddleware, RequestIdMiddleware
from .operations.drift_detector import DriftDetector
from .routes.deployments import create_deployments_router
from .routes.machines import create_machines_router
from .settings import OrchestratorSettings

logger = get_logger(__name__)


def _build_inmemory_orchestrator(settings: OrchestratorSettings) -> Orchestrator:
    """Construct an orchestrator over in-memory collaborators."""
    return Orchestrator(
        settings=settings,
        machines=InMemoryMachineRepository(),
        deployments=InMemoryDeploymentRepository(),
        accounts=InMemoryProviderAccountRepository(),
        credentials=InMemoryCredentialProvider(),
        heartbeats=InMemoryHeartbeatSource(),
        audit=LoggingAuditSink(),
    )


async def _list_all_machines(orchestrator: Orchestrator, tenants: set[str]):
    machines = []
    for tenant_id in sorted(tenants):
        machines.extend(await orchestrator.list_machines(tenant_id))
    return machines


def create_app(
    settings: OrchestratorSettings | None = None,
    *,
    orchestrator: Orchestrator | None = None,
    drift_tenants: set[str] | None = None,
) -> FastAPI:
    """Create a configured orchestrator FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        orchestrator: Orchestrator override. When None, local mode builds
            one over in-memory collaborators; non-local mode raises.
        drift_tenants: Tenants whose machines the background drift sweep
            covers. No sweep runs when empty.

    Raises:
        ValueError: If settings validation fails, or a non-local
            environment has no orchestrator.
    """
    if settings is None:
        settings = OrchestratorSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            'Orchestrator settings validation failed:\n'
            + '\n'.join(f'  - {e}' for e in errors)
        )

    if orchestrator is None:
        if not settings.is_local:
            raise ValueError(
                f'Non-local environment ({settings.environment}) requires an '
                f'explicitly provided orchestrator'
            )
        orchestrator = _build_inmemory_orchestrator(settings)

    configure_logging(
        level=settings.log_level,
        json_output=settings.log_format == 'json',
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info('orchestrator_startup', environment=settings.environment)
        stop = asyncio.Event()
        drift_task = None
        if drift_tenants and settings.drift_check_interval_seconds > 0:
            detector = DriftDetector(
                reconciler=orchestrator.reconciler, locks=orchestrator.locks,
            )
            drift_task = asyncio.create_task(
                detector.run_periodic(
                    lambda: _list_all_machines(orchestrator, drift_tenants),
                    interval_seconds=settings.drift_check_interval_seconds,
                    stop_event=stop,
                )
            )
        try:
            yield
        finally:
            stop.set()
            if drift_task is not None:
                drift_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await drift_task
            await orchestrator.close()
            logger.info('orchestrator_shutdown')

    app = FastAPI(
        title='Machina Deployment Orchestrator',
        description='Plan, approve and apply machine deployments across cloud providers',
        version='0.1.0',
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    # Order of execution: RequestId -> Metrics -> route handler
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.get('/health')
    async def health():
        return {
            'status': 'ok',
            'environment': settings.environment,
        }

    @app.get('/metrics')
    async def metrics():
        body, content_type = metrics_text()
        return Response(content=body, media_type=content_type)

    app.include_router(create_deployments_router(orchestrator))
    app.include_router(create_machines_router(orchestrator))
    return app


# For uvicorn, use --factory flag:
#   uvicorn machina.main:create_app --factory
# This avoids executing create_app() at import time.
