"""
Redis-backed keys with an in-process fallback.

Two uses:
  • ``seen(msg_id)``  inbound provider ids, 24h TTL (webhook retries)
  • ``claim(key)`` / ``release(key)``  per follow-up claim during a delivery run
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional

import redis

from crm.config import Settings
from crm.runtime import get_logger

logger = get_logger("locks")

SEEN_TTL_SEC = 24 * 60 * 60
MAX_MEM_KEYS = 10000


def redis_client(s: Settings) -> Optional[redis.Redis]:
    if not s.REDIS_URL:
        return None
    url = s.REDIS_URL
    if s.REDIS_TLS and url.startswith("redis://"):
        url = "rediss://" + url[len("redis://"):]
    return redis.Redis.from_url(url, decode_responses=True, socket_timeout=5)


class KeyStore:
    """SET NX EX on Redis when available, bounded in-memory keys otherwise."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        prefix: str = "crm",
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.r = client
        self.prefix = prefix
        self.monotonic = monotonic
        self._mem: "OrderedDict[str, float]" = OrderedDict()

    @classmethod
    def from_settings(cls, s: Settings, *, prefix: str = "crm") -> "KeyStore":
        return cls(redis_client(s), prefix=prefix)

    def _key(self, kind: str, value: str) -> str:
        return f"{self.prefix}:{kind}:{value}"

    def _set_nx(self, key: str, ttl: int) -> bool:
        """True when the key was newly set."""
        if self.r is not None:
            try:
                return bool(self.r.set(key, "1", nx=True, ex=ttl))
            except redis.RedisError as exc:
                logger.warning("Redis SET NX failed for %s, using local keys: %s", key, exc)

        now = self.monotonic()
        expires = self._mem.get(key)
        if expires is not None and expires > now:
            return False
        self._mem.pop(key, None)
        self._mem[key] = now + ttl
        while len(self._mem) > MAX_MEM_KEYS:
            self._mem.popitem(last=False)
        return True

    def _delete(self, key: str) -> None:
        if self.r is not None:
            try:
                self.r.delete(key)
            except redis.RedisError as exc:
                logger.warning("Redis DEL failed for %s: %s", key, exc)
        self._mem.pop(key, None)

    # ---- inbound idempotency
    def seen(self, msg_id: Optional[str]) -> bool:
        """Check if a provider message id was already handled; marks it when not."""
        if not msg_id:
            return False
        return not self._set_nx(self._key("inbound", msg_id), SEEN_TTL_SEC)

    # ---- delivery claims
    def claim(self, follow_up_id: str, ttl: int) -> bool:
        return self._set_nx(self._key("followup", follow_up_id), ttl)

    def release(self, follow_up_id: str) -> None:
        self._delete(self._key("followup", follow_up_id))
