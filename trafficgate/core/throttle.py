"""
Admission throttle — consecutive-failure counter + temporary block.

Keyed by (destination_id, ip):
  - every failed admission bumps `attempts`
  - any successful admission resets `attempts` to 0
  - reaching `max_attempts` sets `blocked_at`; the key is then denied for
    `block_seconds` no matter what else the request gets right

State is read before the policy chain and written after it without one lock
spanning both, so two near-simultaneous requests for the same key can race
on the counter. That imprecision is accepted for a soft limiter.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from trafficgate.core.policy import AccessDecision
from trafficgate.core.rwlock import AsyncReadWriteLock
from trafficgate.core.telemetry import SeenIpEvent, TelemetrySink

import structlog

logger = structlog.get_logger()


@dataclass
class SeenIpState:
    destination_id: str
    ip: str
    first_seen: float
    last_seen: float
    attempts: int = 0
    blocked_at: float | None = None
    user_agent: str = ""


def _ts(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class AdmissionThrottle:
    def __init__(
        self,
        max_attempts: int = 10,
        block_seconds: int = 60,
        retention_seconds: int = 86400,
        sink: TelemetrySink | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.max_attempts = max_attempts
        self.block_seconds = block_seconds
        self._retention_seconds = retention_seconds
        self._sink = sink
        self._clock = clock
        self._entries: dict[tuple[str, str], SeenIpState] = {}
        self._lock = AsyncReadWriteLock()

    def _block_active(self, entry: SeenIpState, now: float) -> bool:
        return entry.blocked_at is not None and (now - entry.blocked_at) < self.block_seconds

    def blocked_reason(self) -> str:
        return (
            f"IP blocked after {self.max_attempts} attempts. "
            f"Retry in {self.block_seconds}s"
        )

    async def check_block(self, destination_id: str, ip: str) -> str | None:
        """Deny reason if the key is inside a block window, else None."""
        key = (destination_id, ip)
        now = self._clock()

        async with self._lock.read():
            entry = self._entries.get(key)
            blocked_at = entry.blocked_at if entry is not None else None

        if blocked_at is None:
            return None

        elapsed = now - blocked_at
        if elapsed < self.block_seconds:
            remaining = max(1, math.ceil(self.block_seconds - elapsed))
            return f"IP temporarily blocked for too many attempts. Retry in {remaining}s"

        # Block ran out: start the key over
        async with self._lock.write():
            entry = self._entries.get(key)
            if entry is not None and entry.blocked_at is not None \
                    and now - entry.blocked_at >= self.block_seconds:
                entry.blocked_at = None
                entry.attempts = 0
        return None

    async def record(
        self,
        destination_id: str,
        ip: str,
        user_agent: str,
        allowed: bool,
        reason: str,
    ) -> AccessDecision:
        """Fold one evaluation outcome into the key's state."""
        key = (destination_id, ip)
        now = self._clock()

        async with self._lock.write():
            entry = self._entries.get(key)
            if entry is None:
                entry = SeenIpState(destination_id=destination_id, ip=ip, first_seen=now, last_seen=now)
                self._entries[key] = entry

            entry.last_seen = now
            entry.user_agent = user_agent

            if self._block_active(entry, now):
                # Requests during a block don't extend it
                decision = AccessDecision(allowed=allowed, reason=reason)
            else:
                if entry.blocked_at is not None:
                    entry.blocked_at = None
                    entry.attempts = 0

                if allowed:
                    entry.attempts = 0
                    decision = AccessDecision(allowed=True, reason=reason)
                else:
                    entry.attempts += 1
                    if entry.attempts >= self.max_attempts:
                        entry.blocked_at = now
                        logger.warning("ip_blocked", destination_id=destination_id, ip=ip,
                                       attempts=entry.attempts, block_seconds=self.block_seconds)
                        decision = AccessDecision(allowed=False, reason=self.blocked_reason())
                    else:
                        decision = AccessDecision(allowed=False, reason=reason)

            snapshot = SeenIpEvent(
                destination_id=destination_id,
                ip=ip,
                first_seen=_ts(entry.first_seen),
                last_seen=_ts(entry.last_seen),
                attempts=entry.attempts,
                blocked_at=_ts(entry.blocked_at),
                user_agent=entry.user_agent,
            )

        if self._sink is not None:
            self._sink.emit(snapshot)

        return decision

    async def get(self, destination_id: str, ip: str) -> SeenIpState | None:
        async with self._lock.read():
            entry = self._entries.get((destination_id, ip))
            if entry is None:
                return None
            return SeenIpState(**vars(entry))

    async def put(self, state: SeenIpState) -> None:
        """Seed or replace a key's state (warm start, tests)."""
        async with self._lock.write():
            self._entries[(state.destination_id, state.ip)] = SeenIpState(**vars(state))

    async def evict(self, destination_id: str, ip: str) -> None:
        async with self._lock.write():
            self._entries.pop((destination_id, ip), None)

    async def sweep(self) -> int:
        """
        Forget keys idle past the retention window, unless a block set in the
        last two block windows still needs to be honoured.
        """
        now = self._clock()
        seen_cutoff = now - self._retention_seconds
        async with self._lock.write():
            stale = [
                key for key, entry in self._entries.items()
                if entry.last_seen <= seen_cutoff
                and not (entry.blocked_at is not None
                         and now - entry.blocked_at <= 2 * self.block_seconds)
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)
