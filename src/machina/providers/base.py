"""Abstract interface for cloud provider adapters.

Adapters translate the four machine operations into one provider's API:
- DigitalOceanAdapter: droplets via the v2 REST API
- HetznerAdapter: servers via the Hetzner Cloud API
- GCPAdapter: Compute Engine instances
- AWSAdapter: EC2 instances via boto3

Adapters never retry internally. Every failure is raised as a
``TransientProviderError`` or ``PermanentProviderError`` and the deployment
runner decides whether to retry.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..models import MachineSpec, MachineStatus, ProviderType

# Label carrying the orchestrator machine id on providers with key/value labels.
IDEMPOTENCY_LABEL = "machina-id"


@dataclass(frozen=True, slots=True)
class CreatedMachine:
    """Provider's answer to a create call."""

    provider_machine_id: str
    public_ip: str | None = None
    private_ip: str | None = None


@dataclass(frozen=True, slots=True)
class ObservedMachine:
    """Authoritative provider read of one machine."""

    status: MachineStatus
    public_ip: str | None = None
    private_ip: str | None = None


class ProviderAdapter(ABC):
    """Abstract interface for one cloud provider."""

    provider_type: ProviderType

    @abstractmethod
    async def create_machine(self, spec: MachineSpec) -> CreatedMachine:
        """Create a machine and return its provider id.

        The returned machine may still be booting. Callers read the
        real status through ``fetch_status``.
        """
        ...

    @abstractmethod
    async def reboot(self, provider_machine_id: str) -> None:
        """Request a reboot. Returns once the provider accepted it."""
        ...

    @abstractmethod
    async def destroy(self, provider_machine_id: str) -> None:
        """Destroy a machine. Destroying a missing machine succeeds."""
        ...

    @abstractmethod
    async def fetch_status(self, provider_machine_id: str) -> ObservedMachine:
        """Read the machine. A missing machine reports ``terminated``."""
        ...

    async def aclose(self) -> None:
        """Release adapter resources. Default is a no-op."""
        return None
