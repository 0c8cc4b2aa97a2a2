"""Terraform subprocess runner.

One workspace directory per machine. ``init`` copies the provider module's
``*.tf`` files into the workspace; variables (credentials included) are
written to ``terraform.tfvars.json`` with mode 0600.

Output is streamed line by line to the log callback. When the cancel event
or the attempt deadline fires while a command runs, terraform receives a
single SIGINT (its graceful stop) and the runner keeps reading until the
process exits. A command whose caller is cancelled gets the same SIGINT and
is only killed after ``interrupt_grace_seconds``.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from ..errors import Diagnostic, ErrorCode
from ..models import PlanSummary, ResourceChange
from ..observability.logging import get_logger
from .base import LogCallback

logger = get_logger(__name__)

VARS_FILE = 'terraform.tfvars.json'
PLAN_FILE = 'tfplan'
STATE_FILE = 'terraform.tfstate'

# Apply progress lines that prove a mutating call reached the provider.
_MUTATION_LINE = re.compile(r': (Creating|Destroying|Modifying)\.\.\.')

_TRANSIENT_PATTERNS = re.compile(
    r'timeout|timed out|deadline exceeded|rate limit|too many requests|'
    r'\b429\b|\b50[0234]\b|service unavailable|temporarily unavailable|'
    r'connection reset|connection refused|tls handshake|throttl',
    re.IGNORECASE,
)
_PERMANENT_PATTERNS = re.compile(
    r'\b40[0-9]\b|\b422\b|unauthori[sz]ed|forbidden|authentication|'
    r'invalid|not found|unsupported|quota|unprocessable|permission denied|'
    r'already exists',
    re.IGNORECASE,
)

_ACTIONS = {
    ('create',): 'create',
    ('update',): 'update',
    ('delete',): 'delete',
    ('read',): 'read',
    ('no-op',): 'no-op',
    ('delete', 'create'): 'replace',
    ('create', 'delete'): 'replace',
}


@dataclass(frozen=True, slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TerraformError(Exception):
    """A terraform command failed. Carries the exit status and stderr."""

    def __init__(self, command: str, result: CommandResult) -> None:
        self.command = command
        self.result = result
        super().__init__(
            f'terraform {command} exited with status {result.returncode}'
        )

    def to_diagnostic(self) -> Diagnostic:
        return classify_terraform_failure(self.result.returncode, self.result.stderr)


def classify_terraform_failure(returncode: int, stderr: str) -> Diagnostic:
    """Map terraform's exit status and stderr onto the error taxonomy."""
    text = stderr.strip()
    summary = _first_error_line(text) or f'terraform exited with status {returncode}'
    if _TRANSIENT_PATTERNS.search(text):
        return Diagnostic(
            code=ErrorCode.transient_provider_error,
            message=summary,
            detail=text,
        )
    if _PERMANENT_PATTERNS.search(text):
        return Diagnostic(
            code=ErrorCode.permanent_provider_error,
            message=summary,
            detail=text,
        )
    return Diagnostic(
        code=ErrorCode.executor_crash,
        message=text or f'terraform exited with status {returncode}',
        detail=text,
    )


def _first_error_line(text: str) -> str | None:
    for line in text.splitlines():
        stripped = line.strip().lstrip('│').strip()
        if stripped.startswith('Error:'):
            return stripped
    return None


def parse_plan_json(document: Mapping[str, Any], raw_output: str = '') -> PlanSummary:
    """Build a PlanSummary from ``terraform show -json tfplan`` output."""
    changes: list[ResourceChange] = []
    for rc in document.get('resource_changes') or []:
        actions = tuple((rc.get('change') or {}).get('actions') or ())
        action = _ACTIONS.get(actions, '-'.join(actions) or 'no-op')
        changes.append(
            ResourceChange(
                address=rc.get('address', ''),
                action=action,
                resource_type=rc.get('type', ''),
                resource_name=rc.get('name', ''),
            )
        )
    return PlanSummary(changes=tuple(changes), raw_output=raw_output)


class TerraformRunner:
    """Runs terraform commands inside one machine's workspace."""

    def __init__(
        self,
        *,
        workspace_dir: Path,
        modules_dir: Path,
        binary: str = 'terraform',
        env: Mapping[str, str] | None = None,
        interrupt_grace_seconds: float = 60.0,
    ) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.modules_dir = Path(modules_dir)
        self.binary = binary
        self.interrupt_grace_seconds = interrupt_grace_seconds
        self._env = {**os.environ, 'TF_IN_AUTOMATION': '1', **(env or {})}

    # ── Workspace ────────────────────────────────────────────────

    @property
    def plan_path(self) -> Path:
        return self.workspace_dir / PLAN_FILE

    def has_state(self) -> bool:
        return (self.workspace_dir / STATE_FILE).exists()

    def has_plan(self) -> bool:
        return self.plan_path.exists()

    def discard_plan(self) -> None:
        self.plan_path.unlink(missing_ok=True)

    def prepare(self, module: str) -> None:
        """Create the workspace and copy the module's ``*.tf`` files in."""
        module_dir = self.modules_dir / module
        if not module_dir.is_dir():
            raise FileNotFoundError(f'terraform module not found: {module}')
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        for tf_file in sorted(module_dir.glob('*.tf')):
            shutil.copyfile(tf_file, self.workspace_dir / tf_file.name)

    def write_vars(self, variables: Mapping[str, Any]) -> Path:
        """Write the tfvars file readable by the owner only."""
        path = self.workspace_dir / VARS_FILE
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as fh:
            json.dump(dict(variables), fh, indent=2, sort_keys=True)
        os.chmod(path, 0o600)
        return path

    # ── Commands ─────────────────────────────────────────────────

    async def init(self, on_log: LogCallback) -> None:
        result = await self._run('init', '-no-color', '-input=false', on_log=on_log)
        if not result.ok:
            raise TerraformError('init', result)

    async def plan(
        self,
        on_log: LogCallback,
        *,
        destroy: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> PlanSummary:
        args = [
            'plan',
            '-no-color',
            '-input=false',
            '-detailed-exitcode',
            f'-var-file={VARS_FILE}',
            f'-out={PLAN_FILE}',
        ]
        if destroy:
            args.append('-destroy')
        result = await self._run(*args, on_log=on_log, cancel_event=cancel_event)
        # -detailed-exitcode: 0 = no changes, 2 = changes present.
        if result.returncode not in (0, 2):
            raise TerraformError('plan', result)

        shown = await self._run(
            'show', '-no-color', '-json', PLAN_FILE, on_log=None,
        )
        if not shown.ok:
            raise TerraformError('show', shown)
        try:
            document = json.loads(shown.stdout or '{}')
        except ValueError as exc:
            raise TerraformError('show', shown) from exc
        return parse_plan_json(document, raw_output=result.stdout)

    async def apply(
        self,
        on_log: LogCallback,
        *,
        cancel_event: asyncio.Event | None = None,
        deadline_event: asyncio.Event | None = None,
        on_mutation: Callable[[], None] | None = None,
    ) -> CommandResult:
        def watch(line: str) -> None:
            if on_mutation is not None and _MUTATION_LINE.search(line):
                on_mutation()

        try:
            result = await self._run(
                'apply',
                '-no-color',
                '-input=false',
                '-auto-approve',
                PLAN_FILE,
                on_log=on_log,
                cancel_event=cancel_event,
                deadline_event=deadline_event,
                on_line=watch,
            )
        finally:
            # A saved plan is single-use once apply has started.
            self.discard_plan()
        if not result.ok and not result.interrupted:
            raise TerraformError('apply', result)
        return result

    async def outputs(self) -> dict[str, Any]:
        result = await self._run('output', '-no-color', '-json', on_log=None)
        if not result.ok or not result.stdout.strip():
            return {}
        try:
            raw = json.loads(result.stdout)
        except ValueError:
            logger.warning('terraform_output_unparseable', workspace=str(self.workspace_dir))
            return {}
        return {
            key: value.get('value') if isinstance(value, dict) else value
            for key, value in raw.items()
        }

    async def _run(
        self,
        *args: str,
        on_log: LogCallback | None,
        cancel_event: asyncio.Event | None = None,
        deadline_event: asyncio.Event | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> CommandResult:
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            cwd=str(self.workspace_dir),
            env=self._env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        if proc.stdout is None or proc.stderr is None:
            proc.kill()
            await proc.wait()
            raise RuntimeError(f'terraform {args[0]} started without output pipes')
        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        interrupted = False

        def interrupt(reason: str) -> None:
            nonlocal interrupted
            if proc.returncode is not None or interrupted:
                return
            interrupted = True
            if on_log is not None:
                on_log(f'{reason}, stopping terraform gracefully', level='warn', source='system')
            proc.send_signal(signal.SIGINT)

        async def interrupt_on(event: asyncio.Event, reason: str) -> None:
            await event.wait()
            interrupt(reason)

        async def pump(stream: asyncio.StreamReader, sink: list[str], is_err: bool) -> None:
            while True:
                raw = await stream.readline()
                if not raw:
                    return
                line = raw.decode('utf-8', errors='replace').rstrip('\n')
                sink.append(line)
                if not line.strip():
                    continue
                if on_line is not None:
                    on_line(line)
                if on_log is not None:
                    on_log(line, level=_line_level(line, is_err), source='terraform')

        watchers = [
            asyncio.create_task(interrupt_on(event, reason))
            for event, reason in (
                (cancel_event, 'cancellation requested'),
                (deadline_event, 'attempt deadline reached'),
            )
            if event is not None
        ]
        try:
            await asyncio.gather(
                pump(proc.stdout, stdout_lines, False),
                pump(proc.stderr, stderr_lines, True),
            )
            returncode = await proc.wait()
        finally:
            for watcher in watchers:
                watcher.cancel()
            if proc.returncode is None:
                await self._stop(proc, interrupt)

        return CommandResult(
            returncode=returncode,
            stdout='\n'.join(stdout_lines),
            stderr='\n'.join(stderr_lines),
            interrupted=interrupted,
        )

    async def _stop(
        self,
        proc: asyncio.subprocess.Process,
        interrupt: Callable[[str], None],
    ) -> None:
        """Stop a command whose caller went away.

        Terraform gets SIGINT and ``interrupt_grace_seconds`` to write its
        state before it is killed; a killed apply can leave resources the
        state file does not know about.
        """
        interrupt('command cancelled')
        try:
            await asyncio.wait_for(
                asyncio.shield(proc.wait()), timeout=self.interrupt_grace_seconds,
            )
        except TimeoutError:
            logger.warning(
                'terraform_killed_after_grace',
                workspace=str(self.workspace_dir),
                grace_seconds=self.interrupt_grace_seconds,
            )
            proc.kill()
            await proc.wait()


def _line_level(line: str, is_err: bool) -> str:
    if is_err or 'Error' in line:
        return 'error'
    if 'Warning' in line:
        return 'warn'
    return 'info'
