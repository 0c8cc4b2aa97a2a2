"""Async HTTP client for the agent running on managed machines.

The agent listens on ``agent_port`` on the machine's public address and
exposes service control endpoints. Errors are classified the same way as
provider API errors so the deployment runner can retry transient ones.
"""

from __future__ import annotations

import logging

import httpx

from .errors import PermanentProviderError, TransientProviderError, classify_status_code
from .models import Machine
from .providers.http import _get_shared_async_client

logger = logging.getLogger(__name__)


class HttpAgentClient:
    """Talks to ``http://<public_ip>:<port>/v1/services/...``."""

    def __init__(
        self,
        *,
        port: int = 9090,
        agent_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._port = port
        self._agent_token = agent_token
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    def _headers(self) -> dict[str, str]:
        if not self._agent_token:
            return {}
        return {"Authorization": f"Bearer {self._agent_token}"}

    async def restart_service(self, machine: Machine, service_name: str) -> None:
        """Ask the agent to restart ``service_name``.

        Raises:
            PermanentProviderError: The machine has no reachable address or
                the agent rejected the request.
            TransientProviderError: Timeout, connection error, or 5xx.
        """
        host = machine.public_ip or machine.private_ip
        if not host:
            raise PermanentProviderError(
                f"machine {machine.machine_id!r} has no address for the agent",
                provider="agent",
                operation="restart_service",
            )

        url = f"http://{host}:{self._port}/v1/services/{service_name}/restart"
        try:
            resp = await self._client.post(
                url, headers=self._headers(), timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                "agent restart_service timed out",
                provider="agent",
                operation="restart_service",
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"agent unreachable: {e}",
                provider="agent",
                operation="restart_service",
            ) from e

        if resp.status_code >= 400:
            error_cls = classify_status_code(resp.status_code)
            raise error_cls(
                f"agent restart_service failed ({resp.status_code}): "
                f"{resp.text[:200]}",
                provider="agent",
                operation="restart_service",
                status_code=resp.status_code,
            )

        logger.info(
            "Service restarted: machine=%s service=%s",
            machine.machine_id,
            service_name,
            extra={"machine_id": machine.machine_id},
        )
