"""
Ephemeral key-value storage with expiry.

Used for single-use protocol values (OIDC state/nonce, SAML RelayState),
the back-channel logout replay guard and SSO sessions. Every operation
that must be check-then-act (consume a state value, claim a logout token)
is a single atomic primitive here:

- ``pop`` is an atomic get-and-delete (Redis ``GETDEL``)
- ``set_if_absent`` is an atomic insert (Redis ``SET NX EX``)

The Redis backend is used when ``REDIS_URL`` is configured so that state
survives restarts and is shared across instances. The in-memory backend
serves single-instance deployments and tests.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# Backend Interface
# =============================================================================


class TTLStore(ABC):
    """Abstract base class for expiring key-value storage."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value, replacing any existing one."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """
        Store a value only if the key does not exist.

        Returns:
            True if stored, False if the key was already present.
        """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a value without consuming it."""

    @abstractmethod
    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete a value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a value if present."""

    @abstractmethod
    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        """Add a member to a set, extending the set's expiry."""

    @abstractmethod
    async def get_set(self, key: str) -> Set[str]:
        """Members of a set (empty if absent)."""

    @abstractmethod
    async def remove_from_set(self, key: str, member: str) -> None:
        """Remove a member from a set if present."""


# =============================================================================
# In-Memory Backend
# =============================================================================


class InMemoryTTLStore(TTLStore):
    """
    Thread-safe in-memory TTL store.

    Expired entries are dropped on access, and every write sweeps the
    whole store at most once per ``sweep_interval`` seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0):
        self._values: Dict[str, Tuple[str, float]] = {}
        self._sets: Dict[str, Tuple[Set[str], float]] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def entry_count(self) -> int:
        """Stored keys and sets, including expired ones not yet swept."""
        with self._lock:
            return len(self._values) + len(self._sets)

    def _sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [k for k, (_, expires_at) in self._values.items() if expires_at <= now]
        for key in expired:
            del self._values[key]
        expired_sets = [k for k, (_, expires_at) in self._sets.items() if expires_at <= now]
        for key in expired_sets:
            del self._sets[key]
        if expired or expired_sets:
            logger.debug(f"Swept {len(expired) + len(expired_sets)} expired entries")

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _live_set(self, key: str) -> Optional[Set[str]]:
        entry = self._sets.get(key)
        if entry is None:
            return None
        members, expires_at = entry
        if expires_at <= self._clock():
            del self._sets[key]
            return None
        return members

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._sweep()
            self._values[key] = (value, self._clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            self._sweep()
            if self._live_value(key) is not None:
                return False
            self._values[key] = (value, self._clock() + ttl_seconds)
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key)
            if value is not None:
                del self._values[key]
            return value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            self._sweep()
            members = self._live_set(key) or set()
            members.add(member)
            current = self._sets.get(key)
            expires_at = self._clock() + ttl_seconds
            if current is not None:
                expires_at = max(expires_at, current[1])
            self._sets[key] = (members, expires_at)

    async def get_set(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._live_set(key) or set())

    async def remove_from_set(self, key: str, member: str) -> None:
        with self._lock:
            members = self._live_set(key)
            if members is None:
                return
            members.discard(member)
            if not members:
                del self._sets[key]


# =============================================================================
# Redis Backend
# =============================================================================


class RedisTTLStore(TTLStore):
    """
    Redis-backed TTL store for distributed deployments.

    Keys are namespaced with a prefix. Connection errors propagate so that
    protocol checks fail closed.
    """

    def __init__(self, client, key_prefix: str = "identity:"):
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(self._key(key), value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._client.set(self._key(key), value, ex=ttl_seconds, nx=True)
        return bool(result)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._key(key))

    async def pop(self, key: str) -> Optional[str]:
        return await self._client.getdel(self._key(key))

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        redis_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.sadd(redis_key, member)
            pipe.expire(redis_key, ttl_seconds, nx=True)
            pipe.expire(redis_key, ttl_seconds, gt=True)
            await pipe.execute()

    async def get_set(self, key: str) -> Set[str]:
        members = await self._client.smembers(self._key(key))
        return set(members or ())

    async def remove_from_set(self, key: str, member: str) -> None:
        await self._client.srem(self._key(key), member)


# =============================================================================
# Singleton
# =============================================================================

_ttl_store: Optional[TTLStore] = None


def get_ttl_store() -> TTLStore:
    """
    Get the process-wide TTL store.

    Redis is used when configured, otherwise an in-memory store.
    """
    global _ttl_store
    if _ttl_store is None:
        from src.config import get_settings

        settings = get_settings()
        if settings.redis.is_configured:
            from src.storage.redis_client import redis_client

            _ttl_store = RedisTTLStore(
                redis_client.connection(), key_prefix=settings.redis.redis_key_prefix
            )
            logger.info("Using Redis TTL store")
        else:
            _ttl_store = InMemoryTTLStore()
            logger.info("Using in-memory TTL store (REDIS_URL not set)")
    return _ttl_store


def set_ttl_store(store: Optional[TTLStore]) -> None:
    """Replace the process-wide TTL store (tests, app startup)."""
    global _ttl_store
    _ttl_store = store
