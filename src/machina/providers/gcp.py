"""Google Compute Engine instance adapter.

Authenticates with an OAuth access token taken from the resolved
credentials. The provider machine id is ``<zone>/<instance name>`` because
every Compute Engine instance URL is zone-scoped.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import httpx

from ..errors import PermanentProviderError, ProviderNotFoundError
from ..models import MachineSpec, MachineStatus, ProviderType
from .base import IDEMPOTENCY_LABEL, CreatedMachine, ObservedMachine, ProviderAdapter
from .http import HttpProviderClient

logger = logging.getLogger(__name__)

GCP_COMPUTE_URL = "https://compute.googleapis.com/compute/v1"

_STATUS_MAP = {
    "PROVISIONING": MachineStatus.provisioning,
    "STAGING": MachineStatus.provisioning,
    "RUNNING": MachineStatus.running,
    "STOPPING": MachineStatus.stopping,
    "SUSPENDING": MachineStatus.stopping,
    "SUSPENDED": MachineStatus.stopped,
    # Compute Engine reports a stopped instance as TERMINATED.
    "TERMINATED": MachineStatus.stopped,
    "STOPPED": MachineStatus.stopped,
    "REPAIRING": MachineStatus.error,
}


class GCPAdapter(HttpProviderClient, ProviderAdapter):
    """Instance lifecycle through the Compute Engine v1 REST API."""

    provider_name = "gcp"
    provider_type = ProviderType.gcp

    def __init__(
        self,
        *,
        access_token: str,
        project_id: str,
        base_url: str = GCP_COMPUTE_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not project_id:
            raise ValueError("project_id is required")
        super().__init__(
            token=access_token,
            base_url=base_url,
            http_client=http_client,
            timeout_seconds=timeout_seconds,
        )
        self._project_id = project_id

    def _instances_path(self, zone: str) -> str:
        return f"/projects/{self._project_id}/zones/{zone}/instances"

    def _split_id(self, provider_machine_id: str) -> tuple[str, str]:
        zone, sep, name = provider_machine_id.partition("/")
        if not sep or not zone or not name:
            raise PermanentProviderError(
                f"malformed gcp machine id {provider_machine_id!r}",
                provider=self.provider_name,
            )
        return zone, name

    async def create_machine(self, spec: MachineSpec) -> CreatedMachine:
        zone = spec.region
        labels = dict(spec.tags)
        params = None
        if spec.idempotency_key:
            labels[IDEMPOTENCY_LABEL] = spec.idempotency_key
            # Compute Engine drops a repeated insert carrying the same requestId.
            params = {"requestId": _request_id(spec.idempotency_key)}
        body: dict[str, Any] = {
            "name": spec.name,
            "machineType": f"zones/{zone}/machineTypes/{spec.size}",
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {"sourceImage": spec.image},
                }
            ],
            "networkInterfaces": [
                {
                    "network": "global/networks/default",
                    "accessConfigs": [
                        {"type": "ONE_TO_ONE_NAT", "name": "External NAT"}
                    ],
                }
            ],
            "labels": labels,
        }
        if spec.bootstrap_config:
            body["metadata"] = {
                "items": [{"key": "user-data", "value": spec.bootstrap_config}]
            }

        try:
            await self._request(
                "POST",
                self._instances_path(zone),
                operation="create_machine",
                json=body,
                params=params,
            )
        except PermanentProviderError as exc:
            if exc.status_code != 409 or not await self._owns_instance(zone, spec):
                raise
            logger.info(
                "Instance %s/%s already exists for %s",
                zone,
                spec.name,
                spec.idempotency_key,
                extra={"provider": self.provider_name},
            )
            return CreatedMachine(provider_machine_id=f"{zone}/{spec.name}")

        # The insert call returns a zone operation; addresses are assigned
        # later and picked up by fetch_status.
        logger.info(
            "Instance insert accepted: zone=%s name=%s",
            zone,
            spec.name,
            extra={"provider": self.provider_name},
        )
        return CreatedMachine(provider_machine_id=f"{zone}/{spec.name}")

    async def _owns_instance(self, zone: str, spec: MachineSpec) -> bool:
        """True when the existing instance named ``spec.name`` is ours."""
        if not spec.idempotency_key:
            return False
        resp = await self._request(
            "GET",
            f"{self._instances_path(zone)}/{spec.name}",
            operation="create_machine",
        )
        labels = resp.json().get("labels") or {}
        return labels.get(IDEMPOTENCY_LABEL) == spec.idempotency_key

    async def reboot(self, provider_machine_id: str) -> None:
        zone, name = self._split_id(provider_machine_id)
        await self._request(
            "POST",
            f"{self._instances_path(zone)}/{name}/reset",
            operation="reboot",
        )

    async def destroy(self, provider_machine_id: str) -> None:
        zone, name = self._split_id(provider_machine_id)
        try:
            await self._request(
                "DELETE",
                f"{self._instances_path(zone)}/{name}",
                operation="destroy",
            )
        except ProviderNotFoundError:
            logger.info(
                "Instance %s already gone", provider_machine_id,
                extra={"provider": self.provider_name},
            )

    async def fetch_status(self, provider_machine_id: str) -> ObservedMachine:
        zone, name = self._split_id(provider_machine_id)
        try:
            resp = await self._request(
                "GET",
                f"{self._instances_path(zone)}/{name}",
                operation="fetch_status",
            )
        except ProviderNotFoundError:
            return ObservedMachine(status=MachineStatus.terminated)

        instance = resp.json()
        public_ip = private_ip = None
        interfaces = instance.get("networkInterfaces") or []
        if interfaces:
            private_ip = interfaces[0].get("networkIP")
            access = interfaces[0].get("accessConfigs") or []
            if access:
                public_ip = access[0].get("natIP")
        return ObservedMachine(
            status=_STATUS_MAP.get(instance.get("status"), MachineStatus.error),
            public_ip=public_ip,
            private_ip=private_ip,
        )


def _request_id(key: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"machina:{key}"))
