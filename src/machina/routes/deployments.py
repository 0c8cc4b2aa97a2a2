"""Deployment API.

Exposes the orchestrator to operators:
  POST /api/v1/deployments                      → enqueue a deployment
  GET  /api/v1/deployments                      → list (newest first)
  GET  /api/v1/deployments/{deployment_id}      → snapshot (optional long poll)
  POST /api/v1/deployments/{deployment_id}/approve
  POST /api/v1/deployments/{deployment_id}/cancel
  GET  /api/v1/deployments/{deployment_id}/logs → JSON page or SSE stream

Every request is scoped to the tenant named in the ``X-Tenant-ID`` header.
The SSE stream uses the log cursor as the event ``id`` so clients can
resume with ``Last-Event-ID``; dropped lines arrive as one ``gap`` event and
the stream ends with a ``complete`` event carrying the final state.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Header, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..deployments.logstream import LogGap
from ..deployments.orchestrator import Orchestrator
from ..errors import DeploymentNotFound, InvalidDeploymentState, MachineNotFound
from ..models import DeploymentState, DeploymentType, MachineSpec, ProviderType

# ── Request schemas ───────────────────────────────────────────────────


class MachineSpecBody(BaseModel):
    name: str = Field(min_length=1)
    provider_account_id: str = Field(min_length=1)
    region: str = Field(min_length=1)
    size: str = Field(min_length=1)
    image: str = Field(min_length=1)
    provider: ProviderType | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    bootstrap_config: str = ''

    def to_spec(self) -> MachineSpec:
        return MachineSpec(
            name=self.name,
            provider_account_id=self.provider_account_id,
            region=self.region,
            size=self.size,
            image=self.image,
            provider=self.provider,
            tags=dict(self.tags),
            bootstrap_config=self.bootstrap_config,
        )


class CreateDeploymentRequest(BaseModel):
    type: DeploymentType
    machine_id: str | None = None
    spec: MachineSpecBody | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    initiated_by: str = 'api'
    plan_timeout_seconds: float | None = Field(default=None, gt=0)
    apply_timeout_seconds: float | None = Field(default=None, gt=0)


class ApproveRequest(BaseModel):
    approved_by: str = Field(min_length=1)


# ── Response helpers ──────────────────────────────────────────────────


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'error': error, 'detail': detail},
    )


def _not_found(exc: LookupError) -> JSONResponse:
    return _error(404, 'not_found', str(exc))


def _sse(event: str, data: dict, *, event_id: int | None = None) -> str:
    prefix = f'id: {event_id}\n' if event_id is not None else ''
    return f'{prefix}event: {event}\ndata: {json.dumps(data)}\n\n'


# ── Route factory ─────────────────────────────────────────────────────


def create_deployments_router(orchestrator: Orchestrator) -> APIRouter:
    """Create the deployment router bound to one orchestrator."""
    router = APIRouter(prefix='/api/v1/deployments', tags=['deployments'])

    @router.post('')
    async def create_deployment(
        body: CreateDeploymentRequest,
        x_tenant_id: str = Header(min_length=1),
    ):
        try:
            deployment_id = await orchestrator.enqueue_deployment(
                x_tenant_id,
                body.type,
                machine_id=body.machine_id,
                spec=body.spec.to_spec() if body.spec else None,
                payload=body.payload,
                initiated_by=body.initiated_by,
                plan_timeout=body.plan_timeout_seconds,
                apply_timeout=body.apply_timeout_seconds,
            )
        except MachineNotFound as exc:
            return _not_found(exc)
        except ValueError as exc:
            return _error(400, 'invalid_request', str(exc))

        deployment = await orchestrator.get_deployment(x_tenant_id, deployment_id)
        return JSONResponse(status_code=202, content=deployment.to_dict())

    @router.get('')
    async def list_deployments(
        x_tenant_id: str = Header(min_length=1),
        machine_id: str | None = None,
        type: DeploymentType | None = None,
        state: DeploymentState | None = None,
    ):
        deployments = await orchestrator.list_deployments(
            x_tenant_id, machine_id=machine_id, type=type, state=state,
        )
        return {'deployments': [d.to_dict() for d in deployments]}

    @router.get('/{deployment_id}')
    async def get_deployment(
        deployment_id: str,
        x_tenant_id: str = Header(min_length=1),
        wait_seconds: float = Query(default=0, ge=0, le=60),
    ):
        """Return the deployment; with ``wait_seconds``, wait for a terminal state."""
        try:
            deployment = await orchestrator.get_deployment(x_tenant_id, deployment_id)
            if wait_seconds and not deployment.is_terminal:
                try:
                    deployment = await orchestrator.wait_until_finished(
                        x_tenant_id, deployment_id, timeout=wait_seconds,
                    )
                except TimeoutError:
                    deployment = await orchestrator.get_deployment(
                        x_tenant_id, deployment_id,
                    )
        except DeploymentNotFound as exc:
            return _not_found(exc)
        return deployment.to_dict()

    @router.post('/{deployment_id}/approve')
    async def approve_deployment(
        deployment_id: str,
        body: ApproveRequest,
        x_tenant_id: str = Header(min_length=1),
    ):
        try:
            deployment = await orchestrator.approve(
                x_tenant_id, deployment_id, body.approved_by,
            )
        except DeploymentNotFound as exc:
            return _not_found(exc)
        except InvalidDeploymentState as exc:
            return _error(409, 'invalid_state', str(exc))
        return deployment.to_dict()

    @router.post('/{deployment_id}/cancel')
    async def cancel_deployment(
        deployment_id: str,
        x_tenant_id: str = Header(min_length=1),
    ):
        try:
            deployment = await orchestrator.cancel(x_tenant_id, deployment_id)
        except DeploymentNotFound as exc:
            return _not_found(exc)
        except InvalidDeploymentState as exc:
            return _error(409, 'invalid_state', str(exc))
        return deployment.to_dict()

    @router.get('/{deployment_id}/logs')
    async def get_deployment_logs(
        deployment_id: str,
        x_tenant_id: str = Header(min_length=1),
        after: int = Query(default=0, ge=0),
        limit: int | None = Query(default=None, ge=1, le=5000),
        stream: bool = False,
        last_event_id: str | None = Header(default=None),
    ):
        try:
            deployment = await orchestrator.get_deployment(x_tenant_id, deployment_id)
        except DeploymentNotFound as exc:
            return _not_found(exc)

        if not stream:
            lines = await orchestrator.get_logs(
                x_tenant_id, deployment_id, after=after, limit=limit,
            )
            return {
                'deployment_id': deployment_id,
                'state': deployment.state.value,
                'lines': [line.to_dict() for line in lines],
                'next_cursor': lines[-1].cursor if lines else after,
            }

        if last_event_id and last_event_id.isdigit():
            after = max(after, int(last_event_id))

        async def generate():
            async for item in orchestrator.stream_logs(
                x_tenant_id, deployment_id, after_cursor=after,
            ):
                if isinstance(item, LogGap):
                    yield _sse('gap', item.to_dict())
                else:
                    yield _sse('log', item.to_dict(), event_id=item.cursor)
            final = await orchestrator.get_deployment(x_tenant_id, deployment_id)
            yield _sse(
                'complete',
                {
                    'state': final.state.value,
                    'error_code': final.error_code,
                    'error': final.error,
                },
            )

        return StreamingResponse(
            generate(),
            media_type='text/event-stream',
            headers={
                'Cache-Control': 'no-cache',
                'Connection': 'keep-alive',
            },
        )

    return router
