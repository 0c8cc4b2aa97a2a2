"""Per-deployment log storage and live subscriptions.

Every line gets a monotonically increasing cursor (1, 2, 3, ... per
deployment). Producers never block: ``append`` is synchronous and pushes
into each subscriber's bounded buffer. When a buffer overflows, the oldest
buffered lines are dropped and the subscriber receives one ``LogGap``
describing the missed cursor range before the lines that follow it.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator

from ..models import utcnow

DEFAULT_SUBSCRIBER_BUFFER = 1000
DEFAULT_RETAINED_LOGS = 1000


@dataclass(frozen=True, slots=True)
class LogLine:
    deployment_id: str
    cursor: int
    message: str
    level: str = 'info'
    source: str = 'system'
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            'cursor': self.cursor,
            'message': self.message,
            'level': self.level,
            'source': self.source,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class LogGap:
    """Lines ``first_missed..last_missed`` (inclusive) were dropped."""

    deployment_id: str
    first_missed: int
    last_missed: int

    @property
    def missed(self) -> int:
        return self.last_missed - self.first_missed + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            'first_missed': self.first_missed,
            'last_missed': self.last_missed,
            'missed': self.missed,
        }


class _Subscription:
    __slots__ = ('buffer', 'maxlen', 'gap_first', 'gap_last', 'wakeup')

    def __init__(self, maxlen: int) -> None:
        self.buffer: deque[LogLine] = deque()
        self.maxlen = maxlen
        self.gap_first: int | None = None
        self.gap_last: int | None = None
        self.wakeup = asyncio.Event()

    def push(self, line: LogLine) -> None:
        if len(self.buffer) >= self.maxlen:
            dropped = self.buffer.popleft()
            if self.gap_first is None:
                self.gap_first = dropped.cursor
            self.gap_last = dropped.cursor
        self.buffer.append(line)
        self.wakeup.set()

    def take_gap(self, deployment_id: str) -> LogGap | None:
        if self.gap_first is None or self.gap_last is None:
            return None
        gap = LogGap(deployment_id, self.gap_first, self.gap_last)
        self.gap_first = self.gap_last = None
        return gap


class _DeploymentLog:
    __slots__ = ('lines', 'closed', 'subscribers')

    def __init__(self) -> None:
        self.lines: list[LogLine] = []
        self.closed = False
        self.subscribers: set[_Subscription] = set()


class DeploymentLogStore:
    """In-memory log store shared by the runner and API consumers.

    Closed logs are kept for replay until more than ``retained`` logs have
    closed; the oldest closed log is then evicted. Open logs are never
    evicted.
    """

    def __init__(
        self,
        *,
        subscriber_buffer: int = DEFAULT_SUBSCRIBER_BUFFER,
        retained: int = DEFAULT_RETAINED_LOGS,
    ) -> None:
        if subscriber_buffer < 1:
            raise ValueError('subscriber_buffer must be >= 1')
        if retained < 1:
            raise ValueError('retained must be >= 1')
        self._subscriber_buffer = subscriber_buffer
        self._retained = retained
        self._logs: dict[str, _DeploymentLog] = {}
        self._closed_order: deque[str] = deque()

    def _log(self, deployment_id: str) -> _DeploymentLog:
        log = self._logs.get(deployment_id)
        if log is None:
            log = self._logs[deployment_id] = _DeploymentLog()
        return log

    def append(
        self,
        deployment_id: str,
        message: str,
        *,
        level: str = 'info',
        source: str = 'system',
    ) -> LogLine:
        """Record one line and fan it out. Never blocks."""
        log = self._log(deployment_id)
        if log.closed:
            raise ValueError(f'log for deployment {deployment_id!r} is closed')
        line = LogLine(
            deployment_id=deployment_id,
            cursor=len(log.lines) + 1,
            message=message,
            level=level,
            source=source,
        )
        log.lines.append(line)
        for sub in log.subscribers:
            sub.push(line)
        return line

    def close(self, deployment_id: str) -> None:
        """Mark the log complete. Subscribers finish after draining."""
        log = self._log(deployment_id)
        if not log.closed:
            log.closed = True
            self._closed_order.append(deployment_id)
        for sub in log.subscribers:
            sub.wakeup.set()
        while len(self._closed_order) > self._retained:
            # Attached subscribers keep their own reference and still drain.
            self._logs.pop(self._closed_order.popleft(), None)

    def known(self, deployment_id: str) -> bool:
        """False for deployments that never logged or whose log was evicted."""
        return deployment_id in self._logs

    def is_closed(self, deployment_id: str) -> bool:
        log = self._logs.get(deployment_id)
        return bool(log and log.closed)

    def last_cursor(self, deployment_id: str) -> int:
        log = self._logs.get(deployment_id)
        return len(log.lines) if log else 0

    def lines(
        self,
        deployment_id: str,
        *,
        after: int = 0,
        limit: int | None = None,
    ) -> list[LogLine]:
        log = self._logs.get(deployment_id)
        if log is None:
            return []
        selected = log.lines[max(after, 0):]
        return selected[:limit] if limit is not None else selected

    async def subscribe(
        self,
        deployment_id: str,
        *,
        after_cursor: int = 0,
    ) -> AsyncIterator[LogLine | LogGap]:
        """Yield stored lines after ``after_cursor``, then live lines.

        The iterator ends once the log is closed and everything buffered
        has been delivered.
        """
        log = self._log(deployment_id)
        sub = _Subscription(self._subscriber_buffer)
        replay_end = len(log.lines)
        log.subscribers.add(sub)
        try:
            for line in log.lines[max(after_cursor, 0):replay_end]:
                yield line
            while True:
                gap = sub.take_gap(deployment_id)
                if gap is not None:
                    yield gap
                    continue
                if sub.buffer:
                    line = sub.buffer.popleft()
                    if line.cursor > after_cursor:
                        yield line
                    continue
                if log.closed:
                    return
                sub.wakeup.clear()
                await sub.wakeup.wait()
        finally:
            log.subscribers.discard(sub)

    def subscriber_count(self, deployment_id: str) -> int:
        log = self._logs.get(deployment_id)
        return len(log.subscribers) if log else 0
