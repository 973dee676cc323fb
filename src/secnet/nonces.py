"""
Replay protection for single-use nonces.

A nonce may be consumed once; it is remembered for a fixed window and then
evicted. Two backends:
- MemoryNonceStore: thread-safe dict, single instance only
- RedisNonceStore: SET NX EX on a shared Redis, safe across instances

Usage:
    store = MemoryNonceStore()
    if not store.consume(proof.nonce, window_seconds=86400):
        raise ProofInvalid("Proof has already been used")
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class NonceStore(ABC):
    """Concurrent-safe store of consumed nonces with windowed eviction."""

    @abstractmethod
    def consume(self, nonce: str, window_seconds: float) -> bool:
        """
        Mark a nonce as used.

        Returns:
            True if this is the first use inside the window, False on replay
        """

    @abstractmethod
    def seen(self, nonce: str) -> bool:
        """Check whether a nonce is currently remembered."""


class MemoryNonceStore(NonceStore):
    """In-memory nonce store (single instance only)."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _evict(self, now: float) -> None:
        expired = [n for n, expires_at in self._expiry.items() if expires_at <= now]
        for n in expired:
            del self._expiry[n]

    def consume(self, nonce: str, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            self._evict(now)
            if nonce in self._expiry:
                return False
            self._expiry[nonce] = now + window_seconds
            return True

    def seen(self, nonce: str) -> bool:
        now = self._clock()
        with self._lock:
            self._evict(now)
            return nonce in self._expiry

    def __len__(self) -> int:
        with self._lock:
            return len(self._expiry)


class RedisNonceStore(NonceStore):
    """
    Redis-backed nonce store for multi-instance deployments.

    Args:
        redis_client: A redis-py compatible client
        prefix: Key prefix for nonce entries
    """

    KEY_PREFIX = "secnet:nonce"

    def __init__(self, redis_client, prefix: str = KEY_PREFIX):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, nonce: str) -> str:
        return f"{self.prefix}:{nonce}"

    def consume(self, nonce: str, window_seconds: float) -> bool:
        ttl = max(1, int(window_seconds))
        return bool(self.redis.set(self._key(nonce), "1", nx=True, ex=ttl))

    def seen(self, nonce: str) -> bool:
        return bool(self.redis.exists(self._key(nonce)))
