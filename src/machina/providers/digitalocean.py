"""DigitalOcean droplet adapter (API v2)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import ProviderNotFoundError
from ..models import MachineSpec, MachineStatus, ProviderType
from .base import CreatedMachine, ObservedMachine, ProviderAdapter
from .http import HttpProviderClient

logger = logging.getLogger(__name__)

DIGITALOCEAN_API_URL = "https://api.digitalocean.com"

# Droplet tag carrying the orchestrator machine id.
IDEMPOTENCY_TAG_PREFIX = "machina:"

_STATUS_MAP = {
    "new": MachineStatus.provisioning,
    "active": MachineStatus.running,
    "off": MachineStatus.stopped,
    "archive": MachineStatus.terminated,
}


class DigitalOceanAdapter(HttpProviderClient, ProviderAdapter):
    """Droplet lifecycle through ``/v2/droplets``."""

    provider_name = "digitalocean"
    provider_type = ProviderType.digitalocean

    def __init__(
        self,
        *,
        api_token: str,
        base_url: str = DIGITALOCEAN_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(
            token=api_token,
            base_url=base_url,
            http_client=http_client,
            timeout_seconds=timeout_seconds,
        )

    async def create_machine(self, spec: MachineSpec) -> CreatedMachine:
        tags = [f"{k}:{v}" if v else k for k, v in spec.tags.items()]
        if spec.idempotency_key:
            existing = await self._find_by_tag(_idempotency_tag(spec.idempotency_key))
            if existing is not None:
                logger.info(
                    "Droplet for %s already exists: id=%s",
                    spec.idempotency_key,
                    existing.get("id"),
                    extra={"provider": self.provider_name},
                )
                return _created(existing)
            tags.append(_idempotency_tag(spec.idempotency_key))

        payload: dict[str, Any] = {
            "name": spec.name,
            "region": spec.region,
            "size": spec.size,
            "image": spec.image,
            "tags": tags,
        }
        if spec.bootstrap_config:
            payload["user_data"] = spec.bootstrap_config

        resp = await self._request(
            "POST", "/v2/droplets", operation="create_machine", json=payload,
        )
        droplet = resp.json().get("droplet", {})
        logger.info(
            "Droplet created: id=%s name=%s",
            droplet.get("id"),
            spec.name,
            extra={"provider": self.provider_name},
        )
        return _created(droplet)

    async def _find_by_tag(self, tag: str) -> dict[str, Any] | None:
        resp = await self._request(
            "GET",
            "/v2/droplets",
            operation="create_machine",
            params={"tag_name": tag},
        )
        droplets = resp.json().get("droplets") or []
        return droplets[0] if droplets else None

    async def reboot(self, provider_machine_id: str) -> None:
        await self._request(
            "POST",
            f"/v2/droplets/{provider_machine_id}/actions",
            operation="reboot",
            json={"type": "reboot"},
        )

    async def destroy(self, provider_machine_id: str) -> None:
        try:
            await self._request(
                "DELETE",
                f"/v2/droplets/{provider_machine_id}",
                operation="destroy",
            )
        except ProviderNotFoundError:
            logger.info(
                "Droplet %s already gone", provider_machine_id,
                extra={"provider": self.provider_name},
            )

    async def fetch_status(self, provider_machine_id: str) -> ObservedMachine:
        try:
            resp = await self._request(
                "GET",
                f"/v2/droplets/{provider_machine_id}",
                operation="fetch_status",
            )
        except ProviderNotFoundError:
            return ObservedMachine(status=MachineStatus.terminated)

        droplet = resp.json().get("droplet", {})
        public_ip, private_ip = _droplet_ips(droplet)
        return ObservedMachine(
            status=_STATUS_MAP.get(droplet.get("status"), MachineStatus.error),
            public_ip=public_ip,
            private_ip=private_ip,
        )


def _droplet_ips(droplet: dict[str, Any]) -> tuple[str | None, str | None]:
    public_ip = private_ip = None
    for net in droplet.get("networks", {}).get("v4", []):
        if net.get("type") == "public" and public_ip is None:
            public_ip = net.get("ip_address")
        elif net.get("type") == "private" and private_ip is None:
            private_ip = net.get("ip_address")
    return public_ip, private_ip


def _idempotency_tag(key: str) -> str:
    return f"{IDEMPOTENCY_TAG_PREFIX}{key}"


def _created(droplet: dict[str, Any]) -> CreatedMachine:
    public_ip, private_ip = _droplet_ips(droplet)
    return CreatedMachine(
        provider_machine_id=str(droplet["id"]),
        public_ip=public_ip,
        private_ip=private_ip,
    )
