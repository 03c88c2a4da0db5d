import json

import pytest

from household_edge.cache import (
    CacheEntry,
    CacheStorageError,
    JsonFileCacheTable,
    LookupStatus,
    MemoryCacheTable,
    StoreCacheTable,
    TTLCache,
)
from household_edge.store import DurableStore, MemoryStore, StoreUnavailable


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_value_expires_after_ttl():
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.put("k", "v", ttl_seconds=1)
    assert cache.get("k") == "v"

    clock.now += 1.1
    assert cache.get("k") is None
    assert cache.lookup("k").status is LookupStatus.MISS


def test_expired_entry_is_deleted_on_read():
    clock = FakeClock()
    table = MemoryCacheTable()
    cache = TTLCache(table, clock)
    cache.put("k", {"a": 1}, ttl_seconds=5)
    clock.now += 5
    assert cache.get("k") is None
    assert len(table) == 0


def test_put_replaces_whole_entry():
    cache = TTLCache(clock=FakeClock())
    cache.put("k", {"a": 1, "b": 2}, ttl_seconds=60)
    cache.put("k", {"a": 3}, ttl_seconds=60)
    assert cache.get("k") == {"a": 3}


def test_none_is_not_storable():
    with pytest.raises(ValueError):
        TTLCache().put("k", None, ttl_seconds=60)


def test_corrupt_payload_is_reported_and_dropped():
    clock = FakeClock()
    table = MemoryCacheTable()
    table.replace(CacheEntry("k", "{broken", clock.now + 60))
    cache = TTLCache(table, clock)

    found = cache.lookup("k")
    assert found.status is LookupStatus.CORRUPT
    assert found.hit is False
    assert table.fetch("k") is None


def test_invalidate_prefix_only_touches_matching_keys():
    cache = TTLCache(clock=FakeClock())
    cache.put("hh1:field:1", [1], 60)
    cache.put("hh1:general:1", [2], 60)
    cache.put("hh10:field:1", [3], 60)

    assert cache.invalidate_prefix("hh1:") == 2
    assert cache.get("hh1:field:1") is None
    assert cache.get("hh10:field:1") == [3]


def test_sweep_removes_only_expired():
    clock = FakeClock()
    cache = TTLCache(clock=clock)
    cache.put("short", 1, 10)
    cache.put("long", 2, 100)
    clock.now += 50
    assert cache.sweep_expired() == 1
    assert cache.get("long") == 2


def test_json_file_table_persists_between_instances(tmp_path):
    clock = FakeClock()
    path = tmp_path / "cache" / "suggestions.json"
    TTLCache(JsonFileCacheTable(path), clock).put("hh1:k", {"x": [1, 2]}, 60)

    doc = json.loads(path.read_text(encoding="utf-8"))
    assert doc["hh1:k"]["expiresAt"] == 1060.0
    assert TTLCache(JsonFileCacheTable(path), clock).get("hh1:k") == {"x": [1, 2]}


def test_json_file_table_bad_row_is_corrupt(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text(json.dumps({"k": {"data": "1"}}), encoding="utf-8")
    cache = TTLCache(JsonFileCacheTable(path), FakeClock())
    assert cache.lookup("k").status is LookupStatus.CORRUPT
    assert "k" not in json.loads(path.read_text(encoding="utf-8"))


def test_json_file_table_unreadable_document_is_empty(tmp_path):
    path = tmp_path / "cache.json"
    path.write_text("not json at all", encoding="utf-8")
    cache = TTLCache(JsonFileCacheTable(path), FakeClock())
    assert cache.get("k") is None
    cache.put("k", 1, 60)
    assert cache.get("k") == 1


def test_json_file_table_sweep_and_prefix(tmp_path):
    clock = FakeClock()
    cache = TTLCache(JsonFileCacheTable(tmp_path / "c.json"), clock)
    cache.put("a:1", 1, 10)
    cache.put("a:2", 2, 100)
    cache.put("b:1", 3, 100)
    clock.now += 20
    assert cache.sweep_expired() == 1
    assert cache.invalidate_prefix("a:") == 1
    assert cache.get("b:1") == 3


def test_json_file_table_write_failure_raises_storage_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    cache = TTLCache(JsonFileCacheTable(blocker / "cache.json"), FakeClock())
    with pytest.raises(CacheStorageError):
        cache.put("k", 1, 60)


def test_json_file_table_invalid_utf8_is_empty(tmp_path):
    path = tmp_path / "cache.json"
    path.write_bytes(b'{"k": "\xff\xfe"}')
    cache = TTLCache(JsonFileCacheTable(path), FakeClock())
    assert cache.lookup("k").status is LookupStatus.MISS
    cache.put("k", 1, 60)
    assert cache.get("k") == 1


def test_store_table_entries_carry_a_store_ttl():
    clock = FakeClock()
    store = MemoryStore(sweep_probability=0, clock=clock)
    cache = TTLCache(StoreCacheTable(store, "suggestions", clock), clock)
    cache.put("hh1:field:1", {"a": 1}, 60)
    assert cache.get("hh1:field:1") == {"a": 1}

    clock.now += 61
    assert store.get("cache:suggestions:hh1:field:1") is None
    assert cache.get("hh1:field:1") is None


def test_store_table_invalidation_is_seen_by_every_worker():
    clock = FakeClock()
    store = MemoryStore(sweep_probability=0, clock=clock)
    worker_a = TTLCache(StoreCacheTable(store, "suggestions", clock), clock)
    worker_b = TTLCache(StoreCacheTable(store, "suggestions", clock), clock)
    insights = TTLCache(StoreCacheTable(store, "insights", clock), clock)

    worker_a.put("hh1:field:1", [1], 300)
    worker_a.put("hh10:field:1", [2], 300)
    insights.put("hh1:insights:summary:30", {"t": 1}, 300)
    assert worker_b.get("hh1:field:1") == [1]

    assert worker_b.invalidate_prefix("hh1:") == 1
    assert worker_a.get("hh1:field:1") is None
    assert worker_a.get("hh10:field:1") == [2]
    assert insights.get("hh1:insights:summary:30") == {"t": 1}


def test_store_table_corrupt_row_is_reported():
    store = MemoryStore(sweep_probability=0)
    store.put("cache:insights:k", "not json")
    cache = TTLCache(StoreCacheTable(store, "insights"))
    assert cache.lookup("k").status is LookupStatus.CORRUPT
    assert store.get("cache:insights:k") is None


def test_store_table_failure_raises_storage_error():
    class DownStore(DurableStore):
        def get(self, key):
            raise StoreUnavailable("down")

        def put(self, key, value, expiration_ttl=None):
            raise StoreUnavailable("down")

        def delete(self, key):
            raise StoreUnavailable("down")

        def delete_prefix(self, prefix):
            raise StoreUnavailable("down")

        def ping(self):
            return False

    cache = TTLCache(StoreCacheTable(DownStore(), "suggestions"))
    with pytest.raises(CacheStorageError):
        cache.get("k")
    with pytest.raises(CacheStorageError):
        cache.put("k", 1, 60)
    with pytest.raises(CacheStorageError):
        cache.invalidate_prefix("hh1:")
