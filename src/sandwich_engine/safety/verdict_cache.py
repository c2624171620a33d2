"""Per-token verdict caching, in memory and optionally mirrored to Redis."""
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from .models import SafetyVerdict, VerdictOutcome

logger = logging.getLogger(__name__)


class VerdictCache:
    """In-memory token verdict cache with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[SafetyVerdict, float]] = {}

    def get(self, token: str) -> Optional[SafetyVerdict]:
        entry = self._entries.get(token.lower())
        if entry is None:
            return None

        verdict, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[token.lower()]
            return None
        return verdict

    def put(self, verdict: SafetyVerdict, ttl: float):
        self._entries[verdict.token] = (verdict, self._clock() + ttl)

    def invalidate(self, token: str):
        self._entries.pop(token.lower(), None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisVerdictStore:
    """
    Mirrors Rejected verdicts to Redis so they survive restarts.

    Only rejections are stored; an approval is always re-earned after a
    restart. Redis errors are logged and treated as a cache miss.
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "sandwich:verdict:"):
        self.client = client
        self.key_prefix = key_prefix

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{token.lower()}"

    async def get_rejection(self, token: str) -> Optional[SafetyVerdict]:
        try:
            reason = await self.client.get(self._key(token))
        except RedisError as e:
            logger.warning(f"Redis verdict lookup failed for {token}: {e}")
            return None

        if reason is None:
            return None
        if isinstance(reason, bytes):
            reason = reason.decode()
        return SafetyVerdict.reject(token, reason, stage="cache", evidence={"source": "redis"})

    async def put_rejection(self, verdict: SafetyVerdict, ttl: int):
        if verdict.outcome != VerdictOutcome.REJECTED:
            return
        try:
            await self.client.setex(self._key(verdict.token), ttl, verdict.reason)
        except RedisError as e:
            logger.warning(f"Redis verdict write failed for {verdict.token}: {e}")
