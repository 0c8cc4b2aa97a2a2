"""Unit tests for the cloud provider adapters.

REST adapters run against a mocked ``httpx.AsyncClient.request``; the AWS
adapter gets a fake boto3 client through ``client_factory``.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from machina.errors import (
    PermanentProviderError,
    PreconditionFailed,
    ProviderNotFoundError,
    TransientProviderError,
)
from machina.models import (
    CredentialStatus,
    MachineSpec,
    MachineStatus,
    ProviderAccount,
    ProviderType,
)
from machina.providers import (
    AWSAdapter,
    DigitalOceanAdapter,
    GCPAdapter,
    HetznerAdapter,
    build_provider_adapter,
)


def _spec(**overrides) -> MachineSpec:
    values = {
        "name": "web-1",
        "provider_account_id": "acct_1",
        "region": "nyc3",
        "size": "s-1vcpu-1gb",
        "image": "ubuntu-24-04-x64",
    }
    values.update(overrides)
    return MachineSpec(**values)


def _mock_http(*responses: httpx.Response) -> AsyncMock:
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(side_effect=list(responses))
    return mock_http


def _account(provider: ProviderType) -> ProviderAccount:
    return ProviderAccount(
        provider_account_id="acct_1",
        tenant_id="tenant_a",
        provider_type=provider,
        credential_status=CredentialStatus.valid,
    )


# ── DigitalOcean ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_digitalocean_create_sends_droplet_request():
    mock_http = _mock_http(
        httpx.Response(
            202,
            json={
                "droplet": {
                    "id": 3164444,
                    "networks": {
                        "v4": [
                            {"type": "private", "ip_address": "10.128.0.2"},
                            {"type": "public", "ip_address": "104.131.186.241"},
                        ]
                    },
                }
            },
        )
    )
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    created = await adapter.create_machine(
        _spec(tags={"env": "prod", "web": ""}, bootstrap_config="#cloud-config\n")
    )

    assert created.provider_machine_id == "3164444"
    assert created.public_ip == "104.131.186.241"
    assert created.private_ip == "10.128.0.2"

    call = mock_http.request.call_args
    assert call.args[0] == "POST"
    assert call.args[1] == "https://api.digitalocean.com/v2/droplets"
    assert call.kwargs["headers"]["Authorization"] == "Bearer do-token"
    body = call.kwargs["json"]
    assert body["region"] == "nyc3"
    assert body["size"] == "s-1vcpu-1gb"
    assert body["tags"] == ["env:prod", "web"]
    assert body["user_data"] == "#cloud-config\n"


@pytest.mark.asyncio
async def test_digitalocean_reboot_posts_action():
    mock_http = _mock_http(httpx.Response(201, json={"action": {"id": 1}}))
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    await adapter.reboot("42")

    call = mock_http.request.call_args
    assert call.args[1].endswith("/v2/droplets/42/actions")
    assert call.kwargs["json"] == {"type": "reboot"}


@pytest.mark.asyncio
async def test_digitalocean_status_mapping():
    mock_http = _mock_http(
        httpx.Response(200, json={"droplet": {"status": "off", "networks": {}}}),
        httpx.Response(200, json={"droplet": {"status": "active", "networks": {}}}),
        httpx.Response(200, json={"droplet": {"status": "weird", "networks": {}}}),
    )
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    assert (await adapter.fetch_status("1")).status is MachineStatus.stopped
    assert (await adapter.fetch_status("1")).status is MachineStatus.running
    assert (await adapter.fetch_status("1")).status is MachineStatus.error


@pytest.mark.asyncio
async def test_digitalocean_missing_droplet_reads_as_terminated():
    mock_http = _mock_http(
        httpx.Response(404, json={"id": "not_found", "message": "not found"}),
    )
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    observed = await adapter.fetch_status("42")
    assert observed.status is MachineStatus.terminated


@pytest.mark.asyncio
async def test_digitalocean_destroy_of_missing_droplet_succeeds():
    mock_http = _mock_http(httpx.Response(404, json={"message": "not found"}))
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    await adapter.destroy("42")
    assert mock_http.request.call_args.args[0] == "DELETE"


# ── Error classification ─────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_retryable_statuses_raise_transient(status):
    mock_http = _mock_http(httpx.Response(status, json={"message": "slow down"}))
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    with pytest.raises(TransientProviderError) as exc_info:
        await adapter.reboot("42")

    assert exc_info.value.status_code == status
    assert exc_info.value.operation == "reboot"
    assert "slow down" in str(exc_info.value)


@pytest.mark.asyncio
async def test_client_errors_raise_permanent():
    mock_http = _mock_http(
        httpx.Response(422, json={"id": "unprocessable", "message": "bad size"}),
    )
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    with pytest.raises(PermanentProviderError) as exc_info:
        await adapter.create_machine(_spec())
    assert not exc_info.value.transient
    assert str(exc_info.value) == "digitalocean create_machine failed (422): bad size"


@pytest.mark.asyncio
async def test_timeout_raises_transient():
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    with pytest.raises(TransientProviderError, match="timed out"):
        await adapter.fetch_status("42")


@pytest.mark.asyncio
async def test_transport_error_raises_transient():
    mock_http = AsyncMock()
    mock_http.request = AsyncMock(side_effect=httpx.ConnectError("refused"))
    adapter = HetznerAdapter(api_token="hz-token", http_client=mock_http)

    with pytest.raises(TransientProviderError, match="transport error"):
        await adapter.reboot("7")


def test_token_is_required():
    with pytest.raises(ValueError, match="token"):
        DigitalOceanAdapter(api_token="")


# ── Hetzner ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_hetzner_create_and_status():
    mock_http = _mock_http(
        httpx.Response(
            201,
            json={
                "server": {
                    "id": 42,
                    "public_net": {"ipv4": {"ip": "1.2.3.4"}},
                    "private_net": [],
                }
            },
        ),
        httpx.Response(
            200,
            json={
                "server": {
                    "status": "initializing",
                    "public_net": {"ipv4": {"ip": "1.2.3.4"}},
                    "private_net": [{"ip": "10.0.0.2"}],
                }
            },
        ),
    )
    adapter = HetznerAdapter(api_token="hz-token", http_client=mock_http)

    created = await adapter.create_machine(
        _spec(region="fsn1", size="cx22", image="ubuntu-24.04", tags={"env": "prod"})
    )
    assert created.provider_machine_id == "42"
    assert created.public_ip == "1.2.3.4"
    body = mock_http.request.call_args.kwargs["json"]
    assert body["server_type"] == "cx22"
    assert body["location"] == "fsn1"
    assert body["labels"] == {"env": "prod"}

    observed = await adapter.fetch_status("42")
    assert observed.status is MachineStatus.provisioning
    assert observed.private_ip == "10.0.0.2"


@pytest.mark.asyncio
async def test_hetzner_reboot_path():
    mock_http = _mock_http(httpx.Response(201, json={"action": {"id": 1}}))
    adapter = HetznerAdapter(api_token="hz-token", http_client=mock_http)

    await adapter.reboot("42")
    assert mock_http.request.call_args.args[1] == (
        "https://api.hetzner.cloud/v1/servers/42/actions/reboot"
    )


@pytest.mark.asyncio
async def test_hetzner_error_message_from_error_object():
    mock_http = _mock_http(
        httpx.Response(
            403,
            json={"error": {"code": "forbidden", "message": "insufficient permissions"}},
        )
    )
    adapter = HetznerAdapter(api_token="hz-token", http_client=mock_http)

    with pytest.raises(PermanentProviderError, match="insufficient permissions"):
        await adapter.destroy("42")


# ── GCP ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_gcp_create_returns_zone_scoped_id():
    mock_http = _mock_http(httpx.Response(200, json={"kind": "compute#operation"}))
    adapter = GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=mock_http,
    )

    created = await adapter.create_machine(
        _spec(region="us-central1-a", size="e2-small", image="projects/debian-cloud/global/images/family/debian-12")
    )

    assert created.provider_machine_id == "us-central1-a/web-1"
    assert created.public_ip is None
    call = mock_http.request.call_args
    assert call.args[1].endswith("/projects/proj-1/zones/us-central1-a/instances")
    assert call.kwargs["json"]["machineType"] == "zones/us-central1-a/machineTypes/e2-small"


@pytest.mark.asyncio
async def test_gcp_status_reads_addresses():
    mock_http = _mock_http(
        httpx.Response(
            200,
            json={
                "status": "RUNNING",
                "networkInterfaces": [
                    {"networkIP": "10.1.0.3", "accessConfigs": [{"natIP": "35.1.2.3"}]}
                ],
            },
        ),
        httpx.Response(200, json={"status": "TERMINATED"}),
    )
    adapter = GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=mock_http,
    )

    observed = await adapter.fetch_status("us-central1-a/web-1")
    assert observed.status is MachineStatus.running
    assert observed.public_ip == "35.1.2.3"
    assert observed.private_ip == "10.1.0.3"

    # Compute Engine's TERMINATED is a stopped instance, not a deleted one.
    stopped = await adapter.fetch_status("us-central1-a/web-1")
    assert stopped.status is MachineStatus.stopped


@pytest.mark.asyncio
async def test_gcp_reboot_uses_reset():
    mock_http = _mock_http(httpx.Response(200, json={}))
    adapter = GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=mock_http,
    )

    await adapter.reboot("europe-west1-b/db-1")
    assert mock_http.request.call_args.args[1].endswith(
        "/zones/europe-west1-b/instances/db-1/reset"
    )


@pytest.mark.asyncio
async def test_gcp_malformed_id_is_permanent():
    adapter = GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=AsyncMock(),
    )
    with pytest.raises(PermanentProviderError, match="malformed"):
        await adapter.reboot("no-zone")


# ── AWS ──────────────────────────────────────────────────────────


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "RebootInstances",
    )


def _aws(ec2: MagicMock) -> tuple[AWSAdapter, list[str]]:
    regions: list[str] = []

    def factory(region):
        regions.append(region)
        return ec2

    return AWSAdapter(client_factory=factory), regions


@pytest.mark.asyncio
async def test_aws_create_runs_instance_in_spec_region():
    ec2 = MagicMock()
    ec2.run_instances.return_value = {
        "Instances": [{"InstanceId": "i-0abc", "PrivateIpAddress": "172.31.0.5"}]
    }
    adapter, regions = _aws(ec2)

    created = await adapter.create_machine(
        _spec(region="eu-west-1", size="t3.micro", image="ami-123", tags={"env": "prod"})
    )

    assert created.provider_machine_id == "eu-west-1/i-0abc"
    assert created.private_ip == "172.31.0.5"
    assert regions == ["eu-west-1"]
    kwargs = ec2.run_instances.call_args.kwargs
    assert kwargs["ImageId"] == "ami-123"
    assert kwargs["InstanceType"] == "t3.micro"
    tags = kwargs["TagSpecifications"][0]["Tags"]
    assert {"Key": "Name", "Value": "web-1"} in tags
    assert {"Key": "env", "Value": "prod"} in tags


@pytest.mark.asyncio
async def test_aws_clients_are_cached_per_region():
    ec2 = MagicMock()
    ec2.describe_instances.return_value = {
        "Reservations": [{"Instances": [{"State": {"Name": "running"}}]}]
    }
    adapter, regions = _aws(ec2)

    await adapter.fetch_status("us-east-1/i-1")
    await adapter.fetch_status("us-east-1/i-2")
    assert regions == ["us-east-1"]


@pytest.mark.asyncio
async def test_aws_status_mapping_and_missing_instance():
    ec2 = MagicMock()
    ec2.describe_instances.side_effect = [
        {"Reservations": [{"Instances": [{
            "State": {"Name": "stopping"},
            "PublicIpAddress": "54.1.1.1",
        }]}]},
        {"Reservations": []},
        _client_error("InvalidInstanceID.NotFound", 400),
    ]
    adapter, _ = _aws(ec2)

    observed = await adapter.fetch_status("us-east-1/i-1")
    assert observed.status is MachineStatus.stopping
    assert observed.public_ip == "54.1.1.1"
    assert (await adapter.fetch_status("us-east-1/i-1")).status is MachineStatus.terminated
    assert (await adapter.fetch_status("us-east-1/i-1")).status is MachineStatus.terminated


@pytest.mark.asyncio
async def test_aws_error_classification():
    ec2 = MagicMock()
    ec2.reboot_instances.side_effect = [
        _client_error("RequestLimitExceeded", 400),
        _client_error("InternalError", 500),
        _client_error("UnauthorizedOperation", 403),
        EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"),
    ]
    adapter, _ = _aws(ec2)

    with pytest.raises(TransientProviderError):
        await adapter.reboot("us-east-1/i-1")
    with pytest.raises(TransientProviderError):
        await adapter.reboot("us-east-1/i-1")
    with pytest.raises(PermanentProviderError) as exc_info:
        await adapter.reboot("us-east-1/i-1")
    assert exc_info.value.status_code == 403
    assert "UnauthorizedOperation" in str(exc_info.value)
    with pytest.raises(TransientProviderError):
        await adapter.reboot("us-east-1/i-1")


@pytest.mark.asyncio
async def test_aws_destroy_of_missing_instance_succeeds():
    ec2 = MagicMock()
    ec2.terminate_instances.side_effect = _client_error("InvalidInstanceID.NotFound", 400)
    adapter, _ = _aws(ec2)

    await adapter.destroy("us-east-1/i-gone")
    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-gone"])


def test_aws_requires_keys_without_factory():
    with pytest.raises(ValueError, match="access_key_id"):
        AWSAdapter()


# ── Idempotent create ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_digitalocean_create_tags_droplet_with_machine_id():
    mock_http = _mock_http(
        httpx.Response(200, json={"droplets": []}),
        httpx.Response(202, json={"droplet": {"id": 7, "networks": {"v4": []}}}),
    )
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    created = await adapter.create_machine(_spec(tags={"env": "prod"}, idempotency_key="mach_1a2b"))

    assert created.provider_machine_id == "7"
    lookup, post = mock_http.request.call_args_list
    assert lookup.args[:2] == ("GET", "https://api.digitalocean.com/v2/droplets")
    assert lookup.kwargs["params"] == {"tag_name": "machina:mach_1a2b"}
    assert post.args[0] == "POST"
    assert post.kwargs["json"]["tags"] == ["env:prod", "machina:mach_1a2b"]


@pytest.mark.asyncio
async def test_digitalocean_retried_create_returns_existing_droplet():
    existing = {
        "id": 7,
        "networks": {"v4": [{"type": "public", "ip_address": "104.131.186.241"}]},
    }
    mock_http = _mock_http(httpx.Response(200, json={"droplets": [existing]}))
    adapter = DigitalOceanAdapter(api_token="do-token", http_client=mock_http)

    created = await adapter.create_machine(_spec(idempotency_key="mach_1a2b"))

    assert created.provider_machine_id == "7"
    assert created.public_ip == "104.131.186.241"
    assert mock_http.request.call_count == 1
    assert mock_http.request.call_args.args[0] == "GET"


@pytest.mark.asyncio
async def test_hetzner_conflict_on_retry_returns_labelled_server():
    mock_http = _mock_http(
        httpx.Response(
            409,
            json={"error": {"code": "uniqueness_error", "message": "server name is already used"}},
        ),
        httpx.Response(
            200,
            json={"servers": [{"id": 42, "public_net": {"ipv4": {"ip": "1.2.3.4"}}}]},
        ),
    )
    adapter = HetznerAdapter(api_token="hz-token", http_client=mock_http)

    created = await adapter.create_machine(_spec(idempotency_key="mach_1a2b"))

    assert created.provider_machine_id == "42"
    assert created.public_ip == "1.2.3.4"
    post, lookup = mock_http.request.call_args_list
    assert post.kwargs["json"]["labels"] == {"machina-id": "mach_1a2b"}
    assert lookup.kwargs["params"] == {"label_selector": "machina-id=mach_1a2b"}


@pytest.mark.asyncio
async def test_hetzner_conflict_for_someone_elses_server_is_raised():
    mock_http = _mock_http(
        httpx.Response(409, json={"error": {"code": "uniqueness_error", "message": "name taken"}}),
        httpx.Response(200, json={"servers": []}),
    )
    adapter = HetznerAdapter(api_token="hz-token", http_client=mock_http)

    with pytest.raises(PermanentProviderError) as exc_info:
        await adapter.create_machine(_spec(idempotency_key="mach_1a2b"))
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_gcp_create_sends_request_id_and_recovers_own_instance():
    mock_http = _mock_http(
        httpx.Response(409, json={"error": {"code": 409, "message": "already exists"}}),
        httpx.Response(200, json={"name": "web-1", "labels": {"machina-id": "mach_1a2b"}}),
    )
    adapter = GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=mock_http,
    )

    created = await adapter.create_machine(
        _spec(region="us-central1-a", idempotency_key="mach_1a2b")
    )

    assert created.provider_machine_id == "us-central1-a/web-1"
    insert, lookup = mock_http.request.call_args_list
    assert insert.kwargs["json"]["labels"] == {"machina-id": "mach_1a2b"}
    request_id = insert.kwargs["params"]["requestId"]
    assert len(request_id) == 36
    assert lookup.args[0] == "GET"
    assert lookup.args[1].endswith("/zones/us-central1-a/instances/web-1")

    # The same machine always maps to the same requestId.
    again = _mock_http(httpx.Response(200, json={"kind": "compute#operation"}))
    await GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=again,
    ).create_machine(_spec(region="us-central1-a", idempotency_key="mach_1a2b"))
    assert again.request.call_args.kwargs["params"]["requestId"] == request_id


@pytest.mark.asyncio
async def test_gcp_conflict_with_unlabelled_instance_is_raised():
    mock_http = _mock_http(
        httpx.Response(409, json={"error": {"code": 409, "message": "already exists"}}),
        httpx.Response(200, json={"name": "web-1", "labels": {"team": "data"}}),
    )
    adapter = GCPAdapter(
        access_token="ya29.token", project_id="proj-1", http_client=mock_http,
    )

    with pytest.raises(PermanentProviderError, match="already exists"):
        await adapter.create_machine(
            _spec(region="us-central1-a", idempotency_key="mach_1a2b")
        )


@pytest.mark.asyncio
async def test_aws_create_passes_client_token():
    ec2 = MagicMock()
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-0abc"}]}
    adapter, _ = _aws(ec2)

    await adapter.create_machine(
        _spec(region="eu-west-1", size="t3.micro", image="ami-123", idempotency_key="mach_1a2b")
    )

    kwargs = ec2.run_instances.call_args.kwargs
    assert kwargs["ClientToken"] == "mach_1a2b"
    tags = kwargs["TagSpecifications"][0]["Tags"]
    assert {"Key": "machina-id", "Value": "mach_1a2b"} in tags


@pytest.mark.asyncio
async def test_create_without_key_skips_idempotency_plumbing():
    ec2 = MagicMock()
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-0abc"}]}
    adapter, _ = _aws(ec2)

    await adapter.create_machine(_spec(region="eu-west-1"))

    assert "ClientToken" not in ec2.run_instances.call_args.kwargs


# ── Factory ──────────────────────────────────────────────────────


def test_build_adapter_per_provider_type():
    do = build_provider_adapter(_account(ProviderType.digitalocean), {"api_token": "t"})
    hz = build_provider_adapter(_account(ProviderType.hetzner), {"api_token": "t"})
    gcp = build_provider_adapter(
        _account(ProviderType.gcp), {"access_token": "t", "project_id": "p"},
    )
    aws = build_provider_adapter(
        _account(ProviderType.aws),
        {"access_key_id": "AKIA", "secret_access_key": "s"},
    )
    assert isinstance(do, DigitalOceanAdapter)
    assert isinstance(hz, HetznerAdapter)
    assert isinstance(gcp, GCPAdapter)
    assert isinstance(aws, AWSAdapter)


def test_build_adapter_reports_missing_credentials():
    with pytest.raises(PreconditionFailed, match="project_id"):
        build_provider_adapter(_account(ProviderType.gcp), {"access_token": "t"})


def test_not_found_is_permanent():
    assert issubclass(ProviderNotFoundError, PermanentProviderError)
