"""Test harness for the orchestrator: in-memory wiring and helpers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from machina.audit import InMemoryAuditSink
from machina.deployments.orchestrator import Orchestrator
from machina.deployments.state_machine import TERMINAL_STATES
from machina.inmemory import (
    InMemoryAgentClient,
    InMemoryCredentialProvider,
    InMemoryDeploymentRepository,
    InMemoryHeartbeatSource,
    InMemoryMachineRepository,
    InMemoryProviderAccountRepository,
    InMemoryProviderAdapter,
)
from machina.models import (
    CredentialStatus,
    Deployment,
    DeploymentType,
    Machine,
    MachineSpec,
    MachineStatus,
    ProviderAccount,
    ProviderType,
    SyncStatus,
)
from machina.settings import OrchestratorSettings, RetryPolicy

TENANT = 'tenant_a'
ACCOUNT = 'acct_do'


def fast_settings(**overrides) -> OrchestratorSettings:
    """Settings with no retry or polling delay and a short stop grace."""
    values = {
        'retry': RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0),
        'reboot_poll_interval_seconds': 0.0,
        'reboot_poll_attempts': 3,
        'apply_grace_seconds': 0.05,
    }
    values.update(overrides)
    return OrchestratorSettings(**values)


def make_spec(name: str = 'web-1', **overrides) -> MachineSpec:
    values = {
        'name': name,
        'provider_account_id': ACCOUNT,
        'region': 'nyc3',
        'size': 's-1vcpu-1gb',
        'image': 'ubuntu-24-04-x64',
    }
    values.update(overrides)
    return MachineSpec(**values)


@dataclass
class Harness:
    orchestrator: Orchestrator
    machines: InMemoryMachineRepository
    deployments: InMemoryDeploymentRepository
    accounts: InMemoryProviderAccountRepository
    credentials: InMemoryCredentialProvider
    heartbeats: InMemoryHeartbeatSource
    audit: InMemoryAuditSink
    adapter: InMemoryProviderAdapter
    agent: InMemoryAgentClient
    tenant_id: str = TENANT
    factory_calls: list = field(default_factory=list)

    async def finish(self, deployment_id: str, timeout: float = 5.0) -> Deployment:
        return await self.orchestrator.wait_for_state(
            self.tenant_id, deployment_id, TERMINAL_STATES, timeout=timeout,
        )

    async def create_machine(self, name: str = 'web-1') -> str:
        """Run a create deployment to completion and return the machine id."""
        deployment_id = await self.orchestrator.enqueue_deployment(
            self.tenant_id, DeploymentType.create, spec=make_spec(name),
        )
        deployment = await self.finish(deployment_id)
        assert deployment.state.value == 'completed', deployment.error
        return deployment.machine_id

    def log_messages(self, deployment_id: str) -> list[str]:
        return [line.message for line in self.orchestrator.logs.lines(deployment_id)]


async def seed_running_machine(h: Harness, name: str = 'web-1') -> str:
    """Store a running machine directly, bypassing a create deployment."""
    created = await h.adapter.create_machine(make_spec(name))
    h.adapter.calls.clear()
    machine = Machine(
        machine_id=f'mach_{name}',
        tenant_id=h.tenant_id,
        name=name,
        provider=ProviderType.digitalocean,
        provider_account_id=ACCOUNT,
        region='nyc3',
        size='s-1vcpu-1gb',
        image='ubuntu-24-04-x64',
        actual_status=MachineStatus.running,
        sync_status=SyncStatus.in_sync,
        provider_resource_id=created.provider_machine_id,
        public_ip=created.public_ip,
    )
    await h.machines.create(machine)
    return machine.machine_id


_FAKE_TERRAFORM = '''#!/bin/sh
# Stand-in terraform: behaviour is steered by FAKE_TF_* variables.
if [ "$1" = "$FAKE_TF_FAIL" ]; then
  echo "Error: ${FAKE_TF_ERROR:-something broke}" >&2
  exit 1
fi
case "$1" in
  init)
    echo "Terraform has been successfully initialized!"
    ;;
  plan)
    echo "Plan: 1 to add, 0 to change, 0 to destroy."
    : > tfplan
    exit 2
    ;;
  show)
    cat "$FAKE_TF_SHOW"
    ;;
  apply)
    if [ -n "$FAKE_TF_HANG" ]; then
      if [ "$FAKE_TF_HANG" = "ignore-int" ]; then
        trap '' INT
      else
        trap 'echo "Interrupt received."; : > interrupted; exit 1' INT
      fi
      echo "digitalocean_droplet.web: Creating..."
      while true; do sleep 0.05; done
    fi
    echo "digitalocean_droplet.web: Creating..."
    echo "digitalocean_droplet.web: Creation complete after 31s [id=3164444]"
    : > terraform.tfstate
    echo "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."
    ;;
  output)
    echo '{"droplet_id": {"value": "3164444", "type": "string"}, "public_ip": {"value": "104.131.186.241"}}'
    ;;
esac
exit 0
'''

_PLAN_JSON = '''{"resource_changes": [
  {"address": "digitalocean_droplet.web", "type": "digitalocean_droplet",
   "name": "web", "change": {"actions": ["create"]}}
]}'''


def write_fake_terraform(root: Path) -> tuple[Path, Path]:
    """Write a fake terraform binary and a module tree under ``root``.

    Returns ``(binary, modules_dir)``. Callers point ``FAKE_TF_SHOW`` at
    ``root / 'plan.json'``.
    """
    binary = root / 'terraform'
    binary.write_text(_FAKE_TERRAFORM)
    binary.chmod(0o755)
    (root / 'plan.json').write_text(_PLAN_JSON)
    modules_dir = root / 'modules'
    for provider in ('digitalocean', 'hetzner'):
        module = modules_dir / provider
        module.mkdir(parents=True)
        (module / 'main.tf').write_text(f'# {provider} machine module\n')
        (module / 'README.md').write_text('not copied\n')
    return binary, modules_dir


async def eventually(predicate, *, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError('condition never became true')


def build_harness(
    settings: OrchestratorSettings | None = None,
    *,
    executor=None,
) -> Harness:
    machines = InMemoryMachineRepository()
    deployments = InMemoryDeploymentRepository()
    accounts = InMemoryProviderAccountRepository([
        ProviderAccount(
            provider_account_id=ACCOUNT,
            tenant_id=TENANT,
            provider_type=ProviderType.digitalocean,
            credential_status=CredentialStatus.valid,
        ),
    ])
    credentials = InMemoryCredentialProvider({ACCOUNT: {'api_token': 'do-token'}})
    heartbeats = InMemoryHeartbeatSource()
    audit = InMemoryAuditSink()
    adapter = InMemoryProviderAdapter(ProviderType.digitalocean)
    agent = InMemoryAgentClient()
    factory_calls: list = []

    def adapter_factory(account, creds):
        factory_calls.append((account.provider_account_id, dict(creds)))
        return adapter

    orchestrator = Orchestrator(
        settings=settings or fast_settings(),
        machines=machines,
        deployments=deployments,
        accounts=accounts,
        credentials=credentials,
        audit=audit,
        heartbeats=heartbeats,
        agent_client=agent,
        executor=executor,
        adapter_factory=adapter_factory,
    )
    return Harness(
        orchestrator=orchestrator,
        machines=machines,
        deployments=deployments,
        accounts=accounts,
        credentials=credentials,
        heartbeats=heartbeats,
        audit=audit,
        adapter=adapter,
        agent=agent,
        factory_calls=factory_calls,
    )
