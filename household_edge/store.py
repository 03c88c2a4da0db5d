"""Durable key-value stores used for cross-request coordination.

Two backends share one interface and are chosen once, at process start:

  RedisStore   eventually-consistent remote store (deployment)
  MemoryStore  in-process map (local/dev, tests)
"""

from __future__ import annotations

import logging
import random
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable

import redis

logger = logging.getLogger(__name__)

# Characters with meaning in a redis SCAN MATCH pattern.
_GLOB_SPECIAL = re.compile(r"[*?\[\]\\]")


class StoreUnavailable(Exception):
    """The durable store could not be reached or answered with an error."""


class DurableStore(ABC):
    @abstractmethod
    def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    def put(self, key: str, value: str, expiration_ttl: int | None = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with `prefix`; returns how many went."""

    @abstractmethod
    def ping(self) -> bool:
        ...


class RedisStore(DurableStore):
    """Redis-backed store. Every call is bounded by a short socket timeout."""

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_s: float = 0.25) -> "RedisStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout_s,
            socket_timeout=timeout_s,
        )
        return cls(client)

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            raise StoreUnavailable(f"get failed: {e}") from e

    def put(self, key: str, value: str, expiration_ttl: int | None = None) -> None:
        try:
            if expiration_ttl:
                self._client.setex(key, expiration_ttl, value)
            else:
                self._client.set(key, value)
        except redis.RedisError as e:
            raise StoreUnavailable(f"put failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as e:
            raise StoreUnavailable(f"delete failed: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        pattern = _GLOB_SPECIAL.sub(r"\\\g<0>", prefix) + "*"
        removed = 0
        try:
            batch = []
            for key in self._client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += self._client.delete(*batch)
                    batch = []
            if batch:
                removed += self._client.delete(*batch)
        except redis.RedisError as e:
            raise StoreUnavailable(f"delete_prefix failed: {e}") from e
        return removed

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning("store ping failed: %s", e)
            return False


@dataclass(slots=True)
class MemoryStore(DurableStore):
    """In-process fallback with per-key expiry.

    Expired keys are hidden on read and removed by an opportunistic sweep
    that runs on roughly `sweep_probability` of writes.
    """

    sweep_probability: float = 0.01
    clock: Callable[[], float] = time.time
    rng: Callable[[], float] = random.random
    _items: dict[str, tuple[str, float | None]] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def get(self, key: str) -> str | None:
        now = self.clock()
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= now:
                del self._items[key]
                return None
            return value

    def put(self, key: str, value: str, expiration_ttl: int | None = None) -> None:
        now = self.clock()
        expires_at = now + expiration_ttl if expiration_ttl else None
        with self._lock:
            self._items[key] = (value, expires_at)
            if self.sweep_probability > 0 and self.rng() < self.sweep_probability:
                self._sweep(now)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._items if k.startswith(prefix)]
            for k in keys:
                del self._items[k]
            return len(keys)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _sweep(self, now: float) -> None:
        # Must hold _lock.
        for k in [k for k, (_, exp) in self._items.items() if exp is not None and exp <= now]:
            del self._items[k]


def build_store(redis_url: str, timeout_ms: int = 250) -> DurableStore:
    if redis_url:
        logger.info("using redis store: timeout_ms=%s", timeout_ms)
        return RedisStore.from_url(redis_url, timeout_s=timeout_ms / 1000.0)
    logger.info("REDIS_URL not set, using in-process store")
    return MemoryStore()
