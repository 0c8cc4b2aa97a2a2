"""Per-machine exclusive locks with FIFO waiters.

At most one deployment holds a machine's lock at any time. ``acquire``
never blocks: it reports ``granted`` or ``queued`` and the caller awaits
``wait_until_granted`` when queued. Releasing hands the lock to the oldest
waiter directly, so no other deployment can slip in between.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from enum import Enum

from ..observability.logging import get_logger
from ..observability.metrics import MACHINE_LOCK_QUEUE_DEPTH

logger = get_logger(__name__)


class LockOutcome(str, Enum):
    granted = 'granted'
    queued = 'queued'


class MachineLockManager:
    """In-process lock table keyed by machine id.

    All methods must be called from the event loop thread.
    """

    def __init__(self) -> None:
        self._holders: dict[str, str] = {}
        self._waiters: dict[str, OrderedDict[str, asyncio.Future[bool]]] = {}

    def acquire(self, machine_id: str, deployment_id: str) -> LockOutcome:
        holder = self._holders.get(machine_id)
        if holder == deployment_id:
            return LockOutcome.granted
        if holder is None:
            self._holders[machine_id] = deployment_id
            logger.debug('machine_lock_granted', machine_id=machine_id, deployment_id=deployment_id)
            return LockOutcome.granted

        queue = self._waiters.setdefault(machine_id, OrderedDict())
        if deployment_id not in queue:
            queue[deployment_id] = asyncio.get_running_loop().create_future()
            self._update_gauge()
        logger.debug(
            'machine_lock_queued',
            machine_id=machine_id,
            deployment_id=deployment_id,
            holder=holder,
            position=list(queue).index(deployment_id) + 1,
        )
        return LockOutcome.queued

    async def wait_until_granted(self, machine_id: str, deployment_id: str) -> bool:
        """Wait for the lock. Returns False if the wait was withdrawn."""
        if self._holders.get(machine_id) == deployment_id:
            return True
        future = self._waiters.get(machine_id, {}).get(deployment_id)
        if future is None:
            return False
        return await asyncio.shield(future)

    def release(self, machine_id: str, deployment_id: str | None = None) -> None:
        """Release the lock and grant it to the next waiter.

        A no-op when the lock is not held, or when ``deployment_id`` is
        given and another deployment holds it.
        """
        holder = self._holders.get(machine_id)
        if holder is None:
            return
        if deployment_id is not None and holder != deployment_id:
            logger.warning(
                'machine_lock_release_ignored',
                machine_id=machine_id,
                deployment_id=deployment_id,
                holder=holder,
            )
            return

        del self._holders[machine_id]
        queue = self._waiters.get(machine_id)
        while queue:
            next_id, future = queue.popitem(last=False)
            if future.done():
                continue
            self._holders[machine_id] = next_id
            future.set_result(True)
            logger.debug('machine_lock_handed_over', machine_id=machine_id, deployment_id=next_id)
            break
        if queue is not None and not queue:
            self._waiters.pop(machine_id, None)
        self._update_gauge()

    def withdraw(self, machine_id: str, deployment_id: str) -> bool:
        """Remove a queued deployment. Returns True if it was waiting."""
        queue = self._waiters.get(machine_id)
        if not queue or deployment_id not in queue:
            return False
        future = queue.pop(deployment_id)
        if not future.done():
            future.set_result(False)
        if not queue:
            self._waiters.pop(machine_id, None)
        self._update_gauge()
        return True

    def holder(self, machine_id: str) -> str | None:
        return self._holders.get(machine_id)

    def queued(self, machine_id: str) -> list[str]:
        return list(self._waiters.get(machine_id, ()))

    def is_locked(self, machine_id: str) -> bool:
        return machine_id in self._holders

    def _update_gauge(self) -> None:
        MACHINE_LOCK_QUEUE_DEPTH.set(sum(len(q) for q in self._waiters.values()))
