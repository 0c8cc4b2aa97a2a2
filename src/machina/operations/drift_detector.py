"""Periodic drift detection across machines.

Reconciles every machine that no deployment is currently working on and
flags the ones whose actual status disagrees with their desired status.
Machines with a lock holder are left alone: the holding deployment will
reconcile them when it finishes.

Usage::

    detector = DriftDetector(reconciler=orchestrator.reconciler,
                             locks=orchestrator.locks)
    report = await detector.sweep(machines)
    # report.drifted contains machines flagged drifted
    # report.in_sync contains machines matching their desired status
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from ..deployments.locks import MachineLockManager
from ..models import Machine, MachineStatus, SyncStatus, utcnow
from ..observability.logging import get_logger
from ..reconciler import Reconciler

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DriftSweepReport:
    """Result of one drift sweep.

    Attributes:
        in_sync: Machines whose actual status matches the desired one.
        drifted: Machines flagged drifted.
        unknown: Machines whose provider read failed.
        skipped: Locked or already terminated machines.
        sweep_ts: Timestamp of the sweep.
    """

    in_sync: tuple[Machine, ...]
    drifted: tuple[Machine, ...]
    unknown: tuple[Machine, ...]
    skipped: tuple[Machine, ...]
    sweep_ts: datetime

    @property
    def total_scanned(self) -> int:
        return (
            len(self.in_sync) + len(self.drifted)
            + len(self.unknown) + len(self.skipped)
        )


class DriftDetector:
    """Runs ``Reconciler.on_tick`` for idle machines."""

    def __init__(self, *, reconciler: Reconciler, locks: MachineLockManager) -> None:
        self._reconciler = reconciler
        self._locks = locks

    async def sweep(self, machines: Sequence[Machine]) -> DriftSweepReport:
        in_sync: list[Machine] = []
        drifted: list[Machine] = []
        unknown: list[Machine] = []
        skipped: list[Machine] = []

        for machine in machines:
            if self._locks.is_locked(machine.machine_id):
                skipped.append(machine)
                continue
            if (
                machine.actual_status is MachineStatus.terminated
                and machine.desired_status is MachineStatus.terminated
            ):
                skipped.append(machine)
                continue

            result = await self._reconciler.on_tick(machine.machine_id)
            if result.sync_status is SyncStatus.drifted:
                drifted.append(result)
            elif result.sync_status is SyncStatus.in_sync:
                in_sync.append(result)
            else:
                unknown.append(result)

        report = DriftSweepReport(
            in_sync=tuple(in_sync),
            drifted=tuple(drifted),
            unknown=tuple(unknown),
            skipped=tuple(skipped),
            sweep_ts=utcnow(),
        )
        logger.info(
            'drift_sweep_finished',
            scanned=report.total_scanned,
            drifted=len(report.drifted),
            unknown=len(report.unknown),
            skipped=len(report.skipped),
        )
        return report

    async def run_periodic(
        self,
        list_machines: Callable[[], Awaitable[Sequence[Machine]]],
        *,
        interval_seconds: float,
        stop_event: asyncio.Event,
    ) -> None:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await self.sweep(await list_machines())
            except Exception:
                logger.exception('drift_sweep_failed')
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue
