"""Machine API.

  GET  /api/v1/machines                         → tenant's machines
  GET  /api/v1/machines/{machine_id}            → one machine
  POST /api/v1/machines/{machine_id}/reconcile  → provider read + drift check
"""

from __future__ import annotations

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse

from ..deployments.orchestrator import Orchestrator
from ..errors import MachineNotFound
from ..models import machine_to_dict


def create_machines_router(orchestrator: Orchestrator) -> APIRouter:
    router = APIRouter(prefix='/api/v1/machines', tags=['machines'])

    @router.get('')
    async def list_machines(x_tenant_id: str = Header(min_length=1)):
        machines = await orchestrator.list_machines(x_tenant_id)
        return {'machines': [machine_to_dict(m) for m in machines]}

    @router.get('/{machine_id}')
    async def get_machine(machine_id: str, x_tenant_id: str = Header(min_length=1)):
        try:
            machine = await orchestrator.get_machine(x_tenant_id, machine_id)
        except MachineNotFound as exc:
            return JSONResponse(
                status_code=404,
                content={'error': 'not_found', 'detail': str(exc)},
            )
        return machine_to_dict(machine)

    @router.post('/{machine_id}/reconcile')
    async def reconcile_machine(
        machine_id: str, x_tenant_id: str = Header(min_length=1),
    ):
        """Read the provider now and flag drift if the machine disagrees."""
        try:
            machine = await orchestrator.reconcile_machine(x_tenant_id, machine_id)
        except MachineNotFound as exc:
            return JSONResponse(
                status_code=404,
                content={'error': 'not_found', 'detail': str(exc)},
            )
        return machine_to_dict(machine)

    return router
