"""Cache-aside storage with lazy expiry.

A TTLCache keeps JSON payloads in a CacheTable. Entries are replaced whole,
never patched; an expired entry is deleted the next time it is read, and
`sweep_expired` removes the rest in bulk.
"""

from __future__ import annotations

import json
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable

from household_edge.store import DurableStore, StoreUnavailable

logger = logging.getLogger(__name__)


class CacheStorageError(Exception):
    """The table behind a cache failed; distinct from a plain miss."""


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheTable(ABC):
    @abstractmethod
    def fetch(self, key: str) -> CacheEntry | None:
        ...

    @abstractmethod
    def replace(self, entry: CacheEntry) -> None:
        """Delete any entry for entry.key, then insert `entry`."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        ...

    @abstractmethod
    def delete_expired(self, now: float) -> int:
        ...


class MemoryCacheTable(CacheTable):
    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = Lock()

    def fetch(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def replace(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries.pop(entry.key, None)
            self._entries[entry.key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def delete_expired(self, now: float) -> int:
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.expired(now)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileCacheTable(CacheTable):
    """Cache table persisted as one JSON document: {key: {"data", "expiresAt"}}."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = Lock()

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("cache table unreadable, starting empty: %s", self.path)
            return {}
        except OSError as e:
            raise CacheStorageError(f"read {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise CacheStorageError(f"write {self.path}: {e}") from e

    def fetch(self, key: str) -> CacheEntry | None:
        with self._lock:
            row = self._load().get(key)
        if not isinstance(row, dict):
            return None
        try:
            return CacheEntry(key, str(row["data"]), float(row["expiresAt"]))
        except (KeyError, TypeError, ValueError):
            # Unusable row; an empty payload is reported as corrupt by the cache.
            return CacheEntry(key, "", float("inf"))

    def replace(self, entry: CacheEntry) -> None:
        with self._lock:
            data = self._load()
            data.pop(entry.key, None)
            data[entry.key] = {"data": entry.value, "expiresAt": entry.expires_at}
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            data = self._load()
            keys = [k for k in data if k.startswith(prefix)]
            for k in keys:
                del data[k]
            if keys:
                self._save(data)
            return len(keys)

    def delete_expired(self, now: float) -> int:
        with self._lock:
            data = self._load()
            keys = []
            for k, row in data.items():
                try:
                    if float(row["expiresAt"]) <= now:
                        keys.append(k)
                except (KeyError, TypeError, ValueError):
                    keys.append(k)
            for k in keys:
                del data[k]
            if keys:
                self._save(data)
            return len(keys)


class StoreCacheTable(CacheTable):
    """Cache table kept in the DurableStore, shared by every worker.

    Each entry is its own key under "cache:<namespace>:" with a store TTL, so
    the store drops expired entries by itself and `delete_expired` has
    nothing left to do.
    """

    def __init__(self, store: DurableStore, namespace: str, clock: Callable[[], float] = time.time):
        self.store = store
        self.namespace = namespace
        self.clock = clock

    def _key(self, key: str) -> str:
        return f"cache:{self.namespace}:{key}"

    def fetch(self, key: str) -> CacheEntry | None:
        try:
            raw = self.store.get(self._key(key))
        except StoreUnavailable as e:
            raise CacheStorageError(f"fetch {key}: {e}") from e
        if raw is None:
            return None
        try:
            row = json.loads(raw)
            return CacheEntry(key, str(row["data"]), float(row["expiresAt"]))
        except (ValueError, KeyError, TypeError):
            return CacheEntry(key, "", float("inf"))

    def replace(self, entry: CacheEntry) -> None:
        raw = json.dumps({"data": entry.value, "expiresAt": entry.expires_at}, ensure_ascii=False)
        ttl = max(1, math.ceil(entry.expires_at - self.clock()))
        try:
            self.store.put(self._key(entry.key), raw, expiration_ttl=ttl)
        except StoreUnavailable as e:
            raise CacheStorageError(f"replace {entry.key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.store.delete(self._key(key))
        except StoreUnavailable as e:
            raise CacheStorageError(f"delete {key}: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        try:
            return self.store.delete_prefix(self._key(prefix))
        except StoreUnavailable as e:
            raise CacheStorageError(f"delete_prefix {prefix}: {e}") from e

    def delete_expired(self, now: float) -> int:
        return 0


class LookupStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    CORRUPT = "corrupt"


@dataclass(frozen=True, slots=True)
class CacheLookup:
    status: LookupStatus
    value: Any = None

    @property
    def hit(self) -> bool:
        return self.status is LookupStatus.HIT


@dataclass(slots=True)
class TTLCache:
    """Generic cache-aside store over a CacheTable.

    Values must be JSON serializable; None is not storable and always means
    "absent". CacheStorageError from the table is propagated unchanged.
    """

    table: CacheTable = field(default_factory=MemoryCacheTable)
    clock: Callable[[], float] = time.time

    def lookup(self, key: str) -> CacheLookup:
        entry = self.table.fetch(key)
        if entry is None:
            return CacheLookup(LookupStatus.MISS)
        if entry.expired(self.clock()):
            self.table.delete(key)
            return CacheLookup(LookupStatus.MISS)
        try:
            value = json.loads(entry.value)
        except (json.JSONDecodeError, TypeError):
            logger.warning("dropping corrupt cache entry: key=%s", key)
            self.table.delete(key)
            return CacheLookup(LookupStatus.CORRUPT)
        if value is None:
            return CacheLookup(LookupStatus.MISS)
        return CacheLookup(LookupStatus.HIT, value)

    def get(self, key: str) -> Any:
        return self.lookup(key).value

    def put(self, key: str, value: Any, ttl_seconds: float) -> None:
        if value is None:
            raise ValueError("cannot cache None")
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        self.table.replace(CacheEntry(key, payload, self.clock() + ttl_seconds))

    def invalidate(self, key: str) -> None:
        self.table.delete(key)

    def invalidate_prefix(self, prefix: str) -> int:
        removed = self.table.delete_prefix(prefix)
        if removed:
            logger.info("cache invalidated: prefix=%s removed=%s", prefix, removed)
        return removed

    def sweep_expired(self) -> int:
        return self.table.delete_expired(self.clock())
