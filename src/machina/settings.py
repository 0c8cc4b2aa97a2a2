"""Orchestrator configuration settings.

OrchestratorSettings is the single configuration object accepted by the
orchestrator and by create_app(). It is a plain dataclass (not env-coupled)
so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .models import DeploymentType, PlanSummary


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for transient provider errors."""

    max_retries: int = 3
    base_delay: float = 1.0
    """Delay before the first retry. Doubles for every later retry."""

    max_delay: float = 30.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based): 1s, 2s, 4s, ..."""
        if retry_number < 1:
            raise ValueError('retry_number must be >= 1')
        return min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)


@dataclass(frozen=True, slots=True)
class ApprovalPolicy:
    """Which deployments stop in ``awaiting_approval`` after planning."""

    always_require: frozenset[DeploymentType] = frozenset(
        {DeploymentType.destroy}
    )
    require_for_destructive_plan: bool = True

    def requires_approval(
        self,
        deployment_type: DeploymentType,
        plan: PlanSummary | None,
    ) -> bool:
        if deployment_type in self.always_require:
            return True
        return bool(
            self.require_for_destructive_plan
            and plan is not None
            and plan.destructive
        )


@dataclass(frozen=True, slots=True)
class OrchestratorSettings:
    """Configuration for the deployment orchestrator.

    All fields have sensible defaults for local development.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = 'local'
    """One of: local, dev, staging, production."""

    # ── Scheduling ─────────────────────────────────────────────────
    max_concurrent_deployments: int = 8
    """Worker slots shared by plan and apply steps across all machines."""

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    approval: ApprovalPolicy = field(default_factory=ApprovalPolicy)

    plan_timeout_seconds: float = 300.0
    apply_timeout_seconds: float = 1800.0
    """Per-attempt deadline. Exceeding it counts as a transient error."""

    apply_grace_seconds: float = 120.0
    """How long an attempt past its deadline may take to stop before the
    in-flight call is cancelled."""

    log_subscriber_buffer: int = 1000
    """Lines buffered per log subscriber before the oldest are dropped."""

    retained_logs: int = 1000
    """Finished deployment logs kept in memory. The oldest are evicted first."""

    # ── Terraform ──────────────────────────────────────────────────
    use_terraform: bool = False
    """Run create/destroy through terraform instead of direct provider calls."""

    terraform_binary: str = 'terraform'
    terraform_workspaces_dir: Path = Path('.terraform-workspaces')
    terraform_modules_dir: Path = Path('terraform/modules')
    terraform_interrupt_grace_seconds: float = 60.0
    """Time terraform gets after SIGINT before it is killed."""

    # ── Provider calls ─────────────────────────────────────────────
    reboot_poll_interval_seconds: float = 5.0
    reboot_poll_attempts: int = 30

    # ── Agent / drift ──────────────────────────────────────────────
    agent_port: int = 9090
    agent_heartbeat_timeout_seconds: float = 90.0
    drift_check_interval_seconds: float = 300.0

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = 'INFO'
    log_format: str = 'json'

    @property
    def is_local(self) -> bool:
        return self.environment == 'local'

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.max_concurrent_deployments < 1:
            errors.append('max_concurrent_deployments must be >= 1')
        if self.retry.max_retries < 0:
            errors.append('retry.max_retries must be >= 0')
        if self.retry.base_delay < 0 or self.retry.max_delay < 0:
            errors.append('retry delays must be >= 0')
        if self.plan_timeout_seconds <= 0 or self.apply_timeout_seconds <= 0:
            errors.append('plan/apply timeouts must be > 0')
        if self.apply_grace_seconds < 0 or self.terraform_interrupt_grace_seconds < 0:
            errors.append('grace periods must be >= 0')
        if self.log_subscriber_buffer < 1:
            errors.append('log_subscriber_buffer must be >= 1')
        if self.retained_logs < 1:
            errors.append('retained_logs must be >= 1')
        if self.reboot_poll_attempts < 1:
            errors.append('reboot_poll_attempts must be >= 1')
        if self.log_format not in ('json', 'console'):
            errors.append("log_format must be 'json' or 'console'")
        if not self.is_local and self.use_terraform:
            if not self.terraform_modules_dir.is_absolute():
                errors.append(
                    f'{self.environment}: terraform_modules_dir must be absolute'
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> OrchestratorSettings:
        """Build settings from ``MACHINA_*`` environment variables.

        This is a convenience factory for production use. Tests should
        construct OrchestratorSettings directly.
        """
        if env is None:
            env = dict(os.environ)
        defaults = cls()

        def _get(name: str, fallback):
            raw = env.get(f'MACHINA_{name}')
            if raw is None or raw == '':
                return fallback
            if isinstance(fallback, bool):
                return raw.strip().lower() in ('1', 'true', 'yes', 'on')
            if isinstance(fallback, int):
                return int(raw)
            if isinstance(fallback, float):
                return float(raw)
            if isinstance(fallback, Path):
                return Path(raw)
            return raw

        approval_raw = env.get('MACHINA_APPROVAL_REQUIRED_TYPES')
        if approval_raw is None:
            always_require = defaults.approval.always_require
        else:
            always_require = frozenset(
                DeploymentType(t.strip())
                for t in approval_raw.split(',')
                if t.strip()
            )

        return cls(
            environment=_get('ENVIRONMENT', defaults.environment),
            max_concurrent_deployments=_get(
                'MAX_CONCURRENT_DEPLOYMENTS',
                defaults.max_concurrent_deployments,
            ),
            retry=RetryPolicy(
                max_retries=_get('RETRY_MAX_RETRIES', defaults.retry.max_retries),
                base_delay=_get('RETRY_BASE_DELAY', defaults.retry.base_delay),
                max_delay=_get('RETRY_MAX_DELAY', defaults.retry.max_delay),
            ),
            approval=ApprovalPolicy(
                always_require=always_require,
                require_for_destructive_plan=_get(
                    'APPROVE_DESTRUCTIVE_PLANS',
                    defaults.approval.require_for_destructive_plan,
                ),
            ),
            plan_timeout_seconds=_get(
                'PLAN_TIMEOUT_SECONDS', defaults.plan_timeout_seconds,
            ),
            apply_timeout_seconds=_get(
                'APPLY_TIMEOUT_SECONDS', defaults.apply_timeout_seconds,
            ),
            apply_grace_seconds=_get(
                'APPLY_GRACE_SECONDS', defaults.apply_grace_seconds,
            ),
            log_subscriber_buffer=_get(
                'LOG_SUBSCRIBER_BUFFER', defaults.log_subscriber_buffer,
            ),
            retained_logs=_get('RETAINED_LOGS', defaults.retained_logs),
            use_terraform=_get('USE_TERRAFORM', defaults.use_terraform),
            terraform_binary=_get('TERRAFORM_BINARY', defaults.terraform_binary),
            terraform_workspaces_dir=_get(
                'TERRAFORM_WORKSPACES_DIR', defaults.terraform_workspaces_dir,
            ),
            terraform_modules_dir=_get(
                'TERRAFORM_MODULES_DIR', defaults.terraform_modules_dir,
            ),
            terraform_interrupt_grace_seconds=_get(
                'TERRAFORM_INTERRUPT_GRACE_SECONDS',
                defaults.terraform_interrupt_grace_seconds,
            ),
            reboot_poll_interval_seconds=_get(
                'REBOOT_POLL_INTERVAL_SECONDS',
                defaults.reboot_poll_interval_seconds,
            ),
            reboot_poll_attempts=_get(
                'REBOOT_POLL_ATTEMPTS', defaults.reboot_poll_attempts,
            ),
            agent_port=_get('AGENT_PORT', defaults.agent_port),
            agent_heartbeat_timeout_seconds=_get(
                'AGENT_HEARTBEAT_TIMEOUT_SECONDS',
                defaults.agent_heartbeat_timeout_seconds,
            ),
            drift_check_interval_seconds=_get(
                'DRIFT_CHECK_INTERVAL_SECONDS',
                defaults.drift_check_interval_seconds,
            ),
            log_level=_get('LOG_LEVEL', defaults.log_level),
            log_format=_get('LOG_FORMAT', defaults.log_format),
        )
