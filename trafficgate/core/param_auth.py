"""
Secret-token authentication with an optional validity window.

Every destination is guarded by a secret token passed as a query parameter.
Tokens are stored hashed (SHA-256 hex); a plaintext code is only used when
no hash was ever set.

TTL tracking keeps exactly one usage slot per destination. The slot's clock
starts the first time a token is seen and restarts whenever the submitted
token differs from the tracked one, so rotating the token re-opens the
window.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Callable

from trafficgate.core.policy import DestinationPolicy
from trafficgate.core.rwlock import AsyncReadWriteLock

import structlog

logger = structlog.get_logger()


def hash_param(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_param(policy: DestinationPolicy, token: str | None) -> bool:
    """Check a submitted token against the policy's hash or plaintext code."""
    if not token:
        return False
    if policy.param_hash:
        expected = policy.param_hash.lower().encode("utf-8")
        return hmac.compare_digest(hash_param(token).encode("utf-8"), expected)
    if policy.param_code:
        return hmac.compare_digest(token.encode("utf-8"), policy.param_code.encode("utf-8"))
    return False


@dataclass
class ParamUsage:
    token: str
    created_at: float
    uses: int = 0


class ParamAuthenticator:
    """Token verification + per-destination TTL slots."""

    def __init__(
        self,
        retention_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self._slots: dict[str, ParamUsage] = {}
        self._lock = AsyncReadWriteLock()
        self._retention_seconds = retention_seconds
        self._clock = clock

    def verify(self, policy: DestinationPolicy, token: str | None) -> bool:
        return verify_param(policy, token)

    async def is_expired(self, destination_id: str, policy: DestinationPolicy, token: str) -> bool:
        if policy.param_ttl_minutes <= 0 or not token:
            return False

        now = self._clock()
        async with self._lock.write():
            slot = self._slots.get(destination_id)
            if slot is None or slot.token != token:
                if slot is not None:
                    logger.info("param_slot_reset", destination_id=destination_id)
                slot = ParamUsage(token=token, created_at=now)
                self._slots[destination_id] = slot

            elapsed_minutes = int((now - slot.created_at) // 60)
            expired = elapsed_minutes > policy.param_ttl_minutes
            if not expired:
                slot.uses += 1

        return expired

    async def get(self, destination_id: str) -> ParamUsage | None:
        async with self._lock.read():
            slot = self._slots.get(destination_id)
            if slot is None:
                return None
            return ParamUsage(token=slot.token, created_at=slot.created_at, uses=slot.uses)

    async def put(self, destination_id: str, usage: ParamUsage) -> None:
        async with self._lock.write():
            self._slots[destination_id] = ParamUsage(
                token=usage.token, created_at=usage.created_at, uses=usage.uses,
            )

    async def evict(self, destination_id: str) -> None:
        async with self._lock.write():
            self._slots.pop(destination_id, None)

    async def sweep(self) -> int:
        """Drop slots older than the retention window. Returns how many went."""
        cutoff = self._clock() - self._retention_seconds
        async with self._lock.write():
            stale = [k for k, v in self._slots.items() if v.created_at <= cutoff]
            for key in stale:
                del self._slots[key]
        return len(stale)
