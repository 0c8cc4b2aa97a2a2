"""Cloud provider adapters.

``build_provider_adapter`` selects the adapter class for an account's
provider type and feeds it the resolved credentials.
"""

from __future__ import annotations

from typing import Mapping

from ..errors import PreconditionFailed
from ..models import ProviderAccount, ProviderType
from .aws import AWSAdapter
from .base import CreatedMachine, ObservedMachine, ProviderAdapter
from .digitalocean import DigitalOceanAdapter
from .gcp import GCPAdapter
from .hetzner import HetznerAdapter

__all__ = [
    "AWSAdapter",
    "CreatedMachine",
    "DigitalOceanAdapter",
    "GCPAdapter",
    "HetznerAdapter",
    "ObservedMachine",
    "ProviderAdapter",
    "build_provider_adapter",
]

# Credential keys each provider needs, mapped to constructor arguments.
_REQUIRED_CREDENTIALS: dict[ProviderType, dict[str, str]] = {
    ProviderType.digitalocean: {"api_token": "api_token"},
    ProviderType.hetzner: {"api_token": "api_token"},
    ProviderType.gcp: {
        "access_token": "access_token",
        "project_id": "project_id",
    },
    ProviderType.aws: {
        "access_key_id": "access_key_id",
        "secret_access_key": "secret_access_key",
    },
}

_ADAPTERS: dict[ProviderType, type[ProviderAdapter]] = {
    ProviderType.digitalocean: DigitalOceanAdapter,
    ProviderType.hetzner: HetznerAdapter,
    ProviderType.gcp: GCPAdapter,
    ProviderType.aws: AWSAdapter,
}


def build_provider_adapter(
    account: ProviderAccount,
    credentials: Mapping[str, str],
) -> ProviderAdapter:
    """Construct the adapter for ``account`` using resolved ``credentials``.

    Raises:
        PreconditionFailed: A credential the provider needs is missing.
    """
    provider_type = ProviderType(account.provider_type)
    required = _REQUIRED_CREDENTIALS[provider_type]
    missing = sorted(key for key in required if not credentials.get(key))
    if missing:
        raise PreconditionFailed(
            f"credentials for account {account.provider_account_id!r} "
            f"are missing: {', '.join(missing)}"
        )

    kwargs = {arg: credentials[key] for key, arg in required.items()}
    if provider_type is ProviderType.aws and credentials.get("session_token"):
        kwargs["session_token"] = credentials["session_token"]
    return _ADAPTERS[provider_type](**kwargs)
