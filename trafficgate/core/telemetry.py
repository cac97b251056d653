"""
Fire-and-forget telemetry.

The request path only ever calls `emit()`, which never awaits and never
raises. Events sit in a bounded in-memory queue until the background
writer hands them to the store.

Delivery is at-most-once. When the queue is full the OLDEST event is
dropped to make room: fresh seen-IP state supersedes stale state, and a
backed-up store should shed its backlog rather than new traffic.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, Union

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class SeenIpEvent:
    destination_id: str
    ip: str
    first_seen: datetime
    last_seen: datetime
    attempts: int
    blocked_at: datetime | None = None
    user_agent: str = ""

    @property
    def key(self) -> str:
        return f"{self.destination_id}:{self.ip}"


@dataclass(frozen=True)
class AccessLogEvent:
    destination_id: str | None
    ip: str
    user_agent: str
    referer: str
    blocked: bool
    reason: str
    redirect_to: str = ""
    country: str = ""
    country_code: str = ""
    region: str = ""
    region_name: str = ""
    city: str = ""
    isp: str = ""
    is_vpn: bool = False
    device: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class CounterEvent:
    destination_id: str
    clicks: int = 0
    blocked: int = 0


TelemetryEvent = Union[SeenIpEvent, AccessLogEvent, CounterEvent]


class TelemetryStore(Protocol):
    async def apply(self, event: TelemetryEvent) -> None:
        ...


class TelemetrySink:
    """Bounded outbound queue + its background writer."""

    def __init__(self, store: TelemetryStore | None = None, maxsize: int = 1000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._store = store
        self._task: asyncio.Task | None = None
        self.dropped = 0

    def emit(self, event: TelemetryEvent) -> None:
        """Enqueue without waiting. Drops the oldest event when full."""
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self._queue.task_done()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                logger.warning("telemetry_dropped", dropped_total=self.dropped)

    def pending(self) -> int:
        return self._queue.qsize()

    async def drain_once(self) -> bool:
        """Write one queued event if there is one. Returns False when empty."""
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return False
        await self._write(event)
        return True

    async def _write(self, event: TelemetryEvent) -> None:
        try:
            if self._store is not None:
                await self._store.apply(event)
        except Exception as e:
            # Best effort: a failed write is logged and forgotten
            logger.error("telemetry_write_failed", event_type=type(event).__name__, error=str(e))
        finally:
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            await self._write(event)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="telemetry-writer")

    async def stop(self) -> None:
        # Flush what's already queued, then stop the writer
        while await self.drain_once():
            pass
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
