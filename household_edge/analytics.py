"""Cached household activity summaries.

The summary itself is an opaque artifact as far as the cache is concerned:
a corrupt stored payload is a miss and gets regenerated, while a failing
cache table raises CacheStorageError so callers can tell the two apart.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from household_edge.cache import CacheLookup, LookupStatus, TTLCache
from household_edge.storage import RecordHistory
from household_edge.suggestions import split_tags, time_of_day

logger = logging.getLogger(__name__)

SUMMARY_HISTORY_LIMIT = 5000


@dataclass(slots=True)
class InsightsCache:
    cache: TTLCache
    ttl_seconds: float = 3600

    @staticmethod
    def key(household_id: str, cache_key: str) -> str:
        return f"{household_id}:insights:{cache_key}"

    def lookup(self, household_id: str, cache_key: str) -> CacheLookup:
        return self.cache.lookup(self.key(household_id, cache_key))

    def store(self, household_id: str, cache_key: str, payload: Any, ttl_seconds: float | None = None) -> None:
        self.cache.put(self.key(household_id, cache_key), payload, ttl_seconds or self.ttl_seconds)

    def get_or_generate(
        self,
        household_id: str,
        cache_key: str,
        generate: Callable[[], Any],
    ) -> tuple[Any, bool]:
        """Return (payload, from_cache). CacheStorageError propagates."""
        found = self.lookup(household_id, cache_key)
        if found.hit:
            return found.value, True
        if found.status is LookupStatus.CORRUPT:
            logger.info("regenerating corrupt insights: household=%s key=%s", household_id, cache_key)
        payload = generate()
        self.store(household_id, cache_key, payload)
        return payload, False

    def invalidate_household(self, household_id: str) -> int:
        return self.cache.invalidate_prefix(f"{household_id}:")

    def sweep_expired(self) -> int:
        return self.cache.sweep_expired()


def household_summary(
    history: RecordHistory,
    household_id: str,
    period_days: int = 30,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    period_days = max(1, min(int(period_days or 30), 365))
    since = now - timedelta(days=period_days)

    by_date: Counter[str] = Counter()
    by_type: Counter[str] = Counter()
    by_member: Counter[str] = Counter()
    by_time_of_day: Counter[str] = Counter()
    tags: Counter[str] = Counter()
    members: set[int] = set()
    total = 0

    for rec in history.recent(household_id, limit=SUMMARY_HISTORY_LIMIT, since=since):
        total += 1
        by_date[rec.recorded_at.date().isoformat()] += 1
        by_type[rec.record_type_name or str(rec.record_type_id)] += 1
        if rec.member_id is not None:
            members.add(rec.member_id)
            by_member[rec.member_name or str(rec.member_id)] += 1
        by_time_of_day[time_of_day(rec.recorded_at)] += 1
        tags.update(split_tags(rec.tags))

    busiest = by_date.most_common(1)[0][0] if by_date else None
    return {
        "householdId": household_id,
        "periodDays": period_days,
        "generatedAt": now.isoformat(),
        "totalRecords": int(total),
        "activeMembers": int(len(members)),
        "byDate": dict(sorted(by_date.items())),
        "byRecordType": dict(by_type),
        "byMember": dict(by_member),
        "byTimeOfDay": dict(by_time_of_day),
        "topTags": [t for t, _ in tags.most_common(10)],
        "busiestDay": busiest,
        "averagePerDay": round(total / period_days, 2),
    }
