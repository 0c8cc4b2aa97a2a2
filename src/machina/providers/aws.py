"""AWS EC2 instance adapter.

boto3 is synchronous, so every call runs in a worker thread via
``asyncio.to_thread``. The provider machine id is
``<region>/<instance id>`` so later calls can target the right regional
endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import (
    PermanentProviderError,
    ProviderError,
    ProviderNotFoundError,
    TransientProviderError,
)
from ..models import MachineSpec, MachineStatus, ProviderType
from .base import IDEMPOTENCY_LABEL, CreatedMachine, ObservedMachine, ProviderAdapter

logger = logging.getLogger(__name__)

_RETRYABLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "InsufficientInstanceCapacity",
    "ServiceUnavailable",
    "Unavailable",
    "InternalError",
}

_NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
}

_STATUS_MAP = {
    "pending": MachineStatus.provisioning,
    "running": MachineStatus.running,
    "stopping": MachineStatus.stopping,
    "stopped": MachineStatus.stopped,
    "shutting-down": MachineStatus.terminating,
    "terminated": MachineStatus.terminated,
}

ClientFactory = Callable[[str], Any]


class AWSAdapter(ProviderAdapter):
    """EC2 instance lifecycle via boto3."""

    provider_name = "aws"
    provider_type = ProviderType.aws

    def __init__(
        self,
        *,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        client_factory: ClientFactory | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if client_factory is None:
            if not access_key_id or not secret_access_key:
                raise ValueError(
                    "access_key_id and secret_access_key are required"
                )
            client_factory = _session_client_factory(
                access_key_id,
                secret_access_key,
                session_token,
                timeout_seconds,
            )
        self._client_factory = client_factory
        self._clients: dict[str, Any] = {}

    def _client(self, region: str) -> Any:
        client = self._clients.get(region)
        if client is None:
            client = self._client_factory(region)
            self._clients[region] = client
        return client

    def _split_id(self, provider_machine_id: str) -> tuple[str, str]:
        region, sep, instance_id = provider_machine_id.partition("/")
        if not sep or not region or not instance_id:
            raise PermanentProviderError(
                f"malformed aws machine id {provider_machine_id!r}",
                provider=self.provider_name,
            )
        return region, instance_id

    async def _call(self, operation: str, region: str, method: str, **kwargs: Any) -> dict[str, Any]:
        client = self._client(region)
        func = getattr(client, method)
        try:
            return await asyncio.to_thread(func, **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise _map_boto_error(exc, operation) from exc

    async def create_machine(self, spec: MachineSpec) -> CreatedMachine:
        tags = [{"Key": "Name", "Value": spec.name}]
        tags.extend({"Key": k, "Value": v} for k, v in spec.tags.items())
        params: dict[str, Any] = {
            "ImageId": spec.image,
            "InstanceType": spec.size,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if spec.bootstrap_config:
            params["UserData"] = spec.bootstrap_config
        if spec.idempotency_key:
            # EC2 returns the original reservation for a repeated ClientToken.
            params["ClientToken"] = spec.idempotency_key
            tags.append({"Key": IDEMPOTENCY_LABEL, "Value": spec.idempotency_key})

        response = await self._call(
            "create_machine", spec.region, "run_instances", **params,
        )
        instance = response["Instances"][0]
        logger.info(
            "EC2 instance launched: id=%s region=%s",
            instance["InstanceId"],
            spec.region,
            extra={"provider": self.provider_name},
        )
        return CreatedMachine(
            provider_machine_id=f"{spec.region}/{instance['InstanceId']}",
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
        )

    async def reboot(self, provider_machine_id: str) -> None:
        region, instance_id = self._split_id(provider_machine_id)
        await self._call(
            "reboot", region, "reboot_instances", InstanceIds=[instance_id],
        )

    async def destroy(self, provider_machine_id: str) -> None:
        region, instance_id = self._split_id(provider_machine_id)
        try:
            await self._call(
                "destroy", region, "terminate_instances",
                InstanceIds=[instance_id],
            )
        except ProviderNotFoundError:
            logger.info(
                "EC2 instance %s already gone", provider_machine_id,
                extra={"provider": self.provider_name},
            )

    async def fetch_status(self, provider_machine_id: str) -> ObservedMachine:
        region, instance_id = self._split_id(provider_machine_id)
        try:
            response = await self._call(
                "fetch_status", region, "describe_instances",
                InstanceIds=[instance_id],
            )
        except ProviderNotFoundError:
            return ObservedMachine(status=MachineStatus.terminated)

        reservations = response.get("Reservations") or []
        instances = reservations[0].get("Instances", []) if reservations else []
        if not instances:
            return ObservedMachine(status=MachineStatus.terminated)

        instance = instances[0]
        state = (instance.get("State") or {}).get("Name")
        return ObservedMachine(
            status=_STATUS_MAP.get(state, MachineStatus.error),
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
        )


def _session_client_factory(
    access_key_id: str,
    secret_access_key: str,
    session_token: str | None,
    timeout_seconds: float,
) -> ClientFactory:
    config = Config(
        read_timeout=timeout_seconds,
        connect_timeout=timeout_seconds,
        # Retries belong to the deployment runner.
        retries={"max_attempts": 1, "mode": "standard"},
    )

    def factory(region: str) -> Any:
        session = boto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            aws_session_token=session_token,
            region_name=region,
        )
        return session.client("ec2", config=config)

    return factory


def _map_boto_error(exc: Exception, operation: str) -> ProviderError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message") or str(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _NOT_FOUND_CODES:
            cls: type[ProviderError] = ProviderNotFoundError
        elif code in _RETRYABLE_CODES or (status is not None and status >= 500):
            cls = TransientProviderError
        else:
            cls = PermanentProviderError
        return cls(
            f"aws {operation} failed ({code}): {message}",
            provider="aws",
            operation=operation,
            status_code=status,
        )
    # Connection resets, endpoint timeouts and similar SDK-level failures.
    return TransientProviderError(
        f"aws {operation} failed: {exc}",
        provider="aws",
        operation=operation,
    )
