"""Hetzner Cloud server adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import PermanentProviderError, ProviderNotFoundError
from ..models import MachineSpec, MachineStatus, ProviderType
from .base import IDEMPOTENCY_LABEL, CreatedMachine, ObservedMachine, ProviderAdapter
from .http import HttpProviderClient

logger = logging.getLogger(__name__)

HETZNER_API_URL = "https://api.hetzner.cloud"

_STATUS_MAP = {
    "initializing": MachineStatus.provisioning,
    "starting": MachineStatus.provisioning,
    "rebuilding": MachineStatus.provisioning,
    "migrating": MachineStatus.provisioning,
    "running": MachineStatus.running,
    "stopping": MachineStatus.stopping,
    "off": MachineStatus.stopped,
    "deleting": MachineStatus.terminating,
}


class HetznerAdapter(HttpProviderClient, ProviderAdapter):
    """Server lifecycle through ``/v1/servers``."""

    provider_name = "hetzner"
    provider_type = ProviderType.hetzner

    def __init__(
        self,
        *,
        api_token: str,
        base_url: str = HETZNER_API_URL,
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
        labels = dict(spec.tags)
        if spec.idempotency_key:
            labels[IDEMPOTENCY_LABEL] = spec.idempotency_key
        payload: dict[str, Any] = {
            "name": spec.name,
            "server_type": spec.size,
            "image": spec.image,
            "location": spec.region,
            "labels": labels,
        }
        if spec.bootstrap_config:
            payload["user_data"] = spec.bootstrap_config

        try:
            resp = await self._request(
                "POST", "/v1/servers", operation="create_machine", json=payload,
            )
        except PermanentProviderError as exc:
            # Server names are unique per project: a 409 on retry means an
            # earlier attempt already created it.
            if exc.status_code != 409 or not spec.idempotency_key:
                raise
            existing = await self._find_by_label(spec.idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Server for %s already exists: id=%s",
                spec.idempotency_key,
                existing.get("id"),
                extra={"provider": self.provider_name},
            )
            return _created(existing)

        server = resp.json().get("server", {})
        logger.info(
            "Server created: id=%s name=%s",
            server.get("id"),
            spec.name,
            extra={"provider": self.provider_name},
        )
        return _created(server)

    async def _find_by_label(self, key: str) -> dict[str, Any] | None:
        resp = await self._request(
            "GET",
            "/v1/servers",
            operation="create_machine",
            params={"label_selector": f"{IDEMPOTENCY_LABEL}={key}"},
        )
        servers = resp.json().get("servers") or []
        return servers[0] if servers else None

    async def reboot(self, provider_machine_id: str) -> None:
        await self._request(
            "POST",
            f"/v1/servers/{provider_machine_id}/actions/reboot",
            operation="reboot",
        )

    async def destroy(self, provider_machine_id: str) -> None:
        try:
            await self._request(
                "DELETE",
                f"/v1/servers/{provider_machine_id}",
                operation="destroy",
            )
        except ProviderNotFoundError:
            logger.info(
                "Server %s already gone", provider_machine_id,
                extra={"provider": self.provider_name},
            )

    async def fetch_status(self, provider_machine_id: str) -> ObservedMachine:
        try:
            resp = await self._request(
                "GET",
                f"/v1/servers/{provider_machine_id}",
                operation="fetch_status",
            )
        except ProviderNotFoundError:
            return ObservedMachine(status=MachineStatus.terminated)

        server = resp.json().get("server", {})
        public_ip, private_ip = _server_ips(server)
        return ObservedMachine(
            status=_STATUS_MAP.get(server.get("status"), MachineStatus.error),
            public_ip=public_ip,
            private_ip=private_ip,
        )


def _server_ips(server: dict[str, Any]) -> tuple[str | None, str | None]:
    public_net = server.get("public_net") or {}
    public_ip = (public_net.get("ipv4") or {}).get("ip")
    private_nets = server.get("private_net") or []
    private_ip = private_nets[0].get("ip") if private_nets else None
    return public_ip, private_ip


def _created(server: dict[str, Any]) -> CreatedMachine:
    public_ip, private_ip = _server_ips(server)
    return CreatedMachine(
        provider_machine_id=str(server["id"]),
        public_ip=public_ip,
        private_ip=private_ip,
    )
