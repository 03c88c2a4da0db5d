"""Auto-completion suggestions ranked from a household's recent records.

Ranking is a pure function over history rows (`rank_field_suggestions`);
`SuggestionService` wraps it in cache-aside through RankedSuggestionCache
and reports what happened as a SuggestionOutcome, so "nothing to suggest"
and "something failed" stay distinguishable even though both render as
empty lists to the user.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable

from household_edge.cache import CacheStorageError, TTLCache
from household_edge.storage import HistoricalRecord, RecordHistory

logger = logging.getLogger(__name__)

FIELD_HISTORY_LIMIT = 75
TITLE_HISTORY_LIMIT = 40
TAG_HISTORY_LIMIT = 60
DEFAULTS_HISTORY_LIMIT = 15

RECENT_WINDOW = timedelta(days=7)
DEFAULTS_WINDOW = timedelta(days=30)
RECENT_LIMIT = 5
FREQUENT_LIMIT = 5
CONTEXTUAL_LIMIT = 3
TITLE_LIMIT = 8
TAG_LIMIT = 12
DEFAULT_TAG_LIMIT = 3


def time_of_day(dt: datetime) -> str:
    if dt.hour < 12:
        return "morning"
    if dt.hour < 17:
        return "afternoon"
    return "evening"


def normalize(value: str) -> str:
    return (value or "").strip().lower()


@dataclass(slots=True)
class SuggestionContext:
    member_id: int | None = None
    member_name: str | None = None
    record_type_name: str | None = None
    time_of_day: str | None = None

    def to_dict(self) -> dict:
        return {k: v for k, v in (
            ("memberId", self.member_id),
            ("memberName", self.member_name),
            ("recordTypeName", self.record_type_name),
            ("timeOfDay", self.time_of_day),
        ) if v is not None}

    @classmethod
    def from_dict(cls, data: dict | None) -> "SuggestionContext":
        data = data or {}
        return cls(
            member_id=data.get("memberId"),
            member_name=data.get("memberName"),
            record_type_name=data.get("recordTypeName"),
            time_of_day=data.get("timeOfDay"),
        )


@dataclass(slots=True)
class RankedSuggestion:
    value: str
    frequency: int
    last_used: datetime
    context: SuggestionContext = field(default_factory=SuggestionContext)

    @property
    def normalized(self) -> str:
        return normalize(self.value)

    def merge(self, other: "RankedSuggestion") -> None:
        """Fold a duplicate in: frequencies add up, the newer use wins the rest."""
        self.frequency += other.frequency
        if other.last_used > self.last_used:
            self.last_used = other.last_used
            self.value = other.value
            self.context = other.context

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "frequency": self.frequency,
            "lastUsed": self.last_used.isoformat(),
            "context": self.context.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RankedSuggestion":
        return cls(
            value=data["value"],
            frequency=int(data["frequency"]),
            last_used=datetime.fromisoformat(data["lastUsed"]),
            context=SuggestionContext.from_dict(data.get("context")),
        )


@dataclass(slots=True)
class FieldSuggestions:
    recent: list[RankedSuggestion] = field(default_factory=list)
    frequent: list[RankedSuggestion] = field(default_factory=list)
    contextual: list[RankedSuggestion] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.recent or self.frequent or self.contextual)

    def to_dict(self) -> dict:
        return {
            "recent": [s.to_dict() for s in self.recent],
            "frequent": [s.to_dict() for s in self.frequent],
            "contextual": [s.to_dict() for s in self.contextual],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldSuggestions":
        return cls(
            recent=[RankedSuggestion.from_dict(x) for x in data.get("recent") or []],
            frequent=[RankedSuggestion.from_dict(x) for x in data.get("frequent") or []],
            contextual=[RankedSuggestion.from_dict(x) for x in data.get("contextual") or []],
        )


def dedupe(candidates: Iterable[RankedSuggestion]) -> list[RankedSuggestion]:
    merged: dict[str, RankedSuggestion] = {}
    for s in candidates:
        existing = merged.get(s.normalized)
        if existing is None:
            merged[s.normalized] = s
        else:
            existing.merge(s)
    return list(merged.values())


def extract_field_value(content: str, field_id: str) -> str | None:
    """Trimmed value of `field_<id>` from a record's content blob.

    Raises ValueError when the blob is not a JSON object.
    """
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("content is not an object")
    fields = data.get("fields")
    value = fields.get(f"field_{field_id}") if isinstance(fields, dict) else None
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _by_frequency(s: RankedSuggestion):
    return (-s.frequency, -s.last_used.timestamp())


def rank_field_suggestions(
    rows: Iterable[HistoricalRecord],
    field_id: str,
    *,
    current_value: str | None = None,
    member_id: int | None = None,
    now: datetime | None = None,
) -> tuple[FieldSuggestions, int]:
    """Bucket the values previously typed into one field.

    Returns the buckets and the number of rows skipped as unparsable.
    """
    now = now or datetime.now(timezone.utc)
    current = normalize(current_value) if current_value else ""
    skipped = 0
    candidates: list[RankedSuggestion] = []
    for row in rows:
        if not row.content:
            continue
        try:
            value = extract_field_value(row.content, field_id)
        except ValueError:
            skipped += 1
            continue
        if value is None:
            continue
        if current and normalize(value) == current:
            continue
        candidates.append(RankedSuggestion(
            value=value,
            frequency=1,
            last_used=row.recorded_at,
            context=SuggestionContext(
                member_id=row.member_id,
                member_name=row.member_name,
                record_type_name=row.record_type_name,
                time_of_day=time_of_day(row.recorded_at),
            ),
        ))

    merged = dedupe(candidates)

    week_ago = now - RECENT_WINDOW
    recent = sorted(
        (s for s in merged if s.last_used >= week_ago),
        key=lambda s: s.last_used,
        reverse=True,
    )[:RECENT_LIMIT]
    frequent = sorted((s for s in merged if s.frequency >= 2), key=_by_frequency)[:FREQUENT_LIMIT]

    taken = {s.normalized for s in (*recent, *frequent)}
    bucket = time_of_day(now)
    contextual = sorted(
        (
            s for s in merged
            if s.normalized not in taken
            and ((member_id is not None and s.context.member_id == member_id) or s.context.time_of_day == bucket)
        ),
        key=_by_frequency,
    )[:CONTEXTUAL_LIMIT]

    return FieldSuggestions(recent=recent, frequent=frequent, contextual=contextual), skipped


def rank_titles(rows: Iterable[HistoricalRecord]) -> list[RankedSuggestion]:
    merged = dedupe(
        RankedSuggestion(
            value=row.title.strip(),
            frequency=1,
            last_used=row.recorded_at,
            context=SuggestionContext(member_id=row.member_id, member_name=row.member_name),
        )
        for row in rows
        if row.title and row.title.strip()
    )
    return sorted(merged, key=_by_frequency)[:TITLE_LIMIT]


def split_tags(tags: str) -> list[str]:
    return [t for t in (x.strip().lower() for x in (tags or "").split(",")) if t]


def rank_tags(rows: Iterable[HistoricalRecord], limit: int = TAG_LIMIT) -> list[str]:
    counts: Counter[str] = Counter()
    for row in rows:
        counts.update(split_tags(row.tags))
    return [tag for tag, _ in counts.most_common(limit)]


def smart_defaults(rows: list[HistoricalRecord], now: datetime | None = None) -> dict:
    now = now or datetime.now(timezone.utc)
    hours: Counter[int] = Counter(row.recorded_at.hour for row in rows)
    hour = hours.most_common(1)[0][0] if hours else now.hour
    suggested = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    return {
        "suggestedTime": suggested.strftime("%Y-%m-%dT%H:%M"),
        "suggestedTags": rank_tags(rows, DEFAULT_TAG_LIMIT),
        "commonPatterns": {"mostCommonHour": hour, "totalRecords": len(rows)},
    }


class OutcomeStatus(str, Enum):
    RANKED = "ranked"
    CACHED = "cached"
    NO_DATA = "no_data"
    FAILED = "failed"


@dataclass(slots=True)
class SuggestionOutcome:
    status: OutcomeStatus
    suggestions: FieldSuggestions = field(default_factory=FieldSuggestions)
    skipped: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED


@dataclass(slots=True)
class GeneralOutcome:
    status: OutcomeStatus
    titles: list[RankedSuggestion] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    defaults: dict = field(default_factory=dict)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "titleSuggestions": [s.to_dict() for s in self.titles],
            "tagSuggestions": self.tags,
            "smartDefaults": self.defaults,
        }

    @classmethod
    def from_cached(cls, data: dict) -> "GeneralOutcome":
        return cls(
            status=OutcomeStatus.CACHED,
            titles=[RankedSuggestion.from_dict(x) for x in data.get("titleSuggestions") or []],
            tags=list(data.get("tagSuggestions") or []),
            defaults=dict(data.get("smartDefaults") or {}),
        )


@dataclass(slots=True)
class RankedSuggestionCache:
    """TTLCache of ranked suggestion sets keyed by household first.

    Keys start with "<household>:" so one household can be invalidated with
    a single prefix delete.
    """

    cache: TTLCache
    ttl_seconds: float = 300

    @staticmethod
    def field_key(
        household_id: str,
        record_type_id: int,
        field_id: str,
        member_id: int | None = None,
        current_value: str | None = None,
    ) -> str:
        member = f"m{member_id}" if member_id else "m-"
        # Keyed on the whole normalized value: it decides what gets excluded.
        current = normalize(current_value) if current_value else ""
        value = f"v{hashlib.sha1(current.encode('utf-8')).hexdigest()[:16]}" if current else "v-"
        return f"{household_id}:field:{record_type_id}:{field_id}:{member}:{value}"

    @staticmethod
    def general_key(household_id: str, record_type_id: int, member_id: int | None = None) -> str:
        member = f"m{member_id}" if member_id else "m-"
        return f"{household_id}:general:{record_type_id}:{member}"

    def get(self, key: str) -> dict | None:
        found = self.cache.lookup(key)
        return found.value if found.hit and isinstance(found.value, dict) else None

    def put(self, key: str, value: dict) -> None:
        self.cache.put(key, value, self.ttl_seconds)

    def invalidate_household(self, household_id: str) -> int:
        return self.cache.invalidate_prefix(f"{household_id}:")

    def sweep_expired(self) -> int:
        return self.cache.sweep_expired()


@dataclass(slots=True)
class SuggestionService:
    history: RecordHistory
    cache: RankedSuggestionCache

    def _cached(self, key: str) -> dict | None:
        try:
            return self.cache.get(key)
        except CacheStorageError as e:
            logger.warning("suggestion cache read failed: key=%s error=%s", key, e)
            return None

    def _store(self, key: str, value: dict) -> None:
        try:
            self.cache.put(key, value)
        except CacheStorageError as e:
            logger.warning("suggestion cache write failed: key=%s error=%s", key, e)

    def field_suggestions(
        self,
        field_id: str,
        record_type_id: int,
        household_id: str,
        member_id: int | None = None,
        current_value: str | None = None,
        now: datetime | None = None,
    ) -> SuggestionOutcome:
        key = RankedSuggestionCache.field_key(household_id, record_type_id, field_id, member_id, current_value)
        cached = self._cached(key)
        if cached is not None:
            try:
                return SuggestionOutcome(OutcomeStatus.CACHED, FieldSuggestions.from_dict(cached))
            except (KeyError, TypeError, ValueError):
                logger.warning("ignoring malformed cached suggestions: key=%s", key)

        try:
            rows = self.history.recent(household_id, record_type_id, limit=FIELD_HISTORY_LIMIT, require="content")
        except OSError as e:
            logger.error("field suggestions failed: household=%s error=%s", household_id, e)
            return SuggestionOutcome(OutcomeStatus.FAILED, error=str(e))

        suggestions, skipped = rank_field_suggestions(
            rows, field_id, current_value=current_value, member_id=member_id, now=now
        )
        if skipped:
            logger.info("field suggestions skipped rows: household=%s skipped=%s", household_id, skipped)
        self._store(key, suggestions.to_dict())
        status = OutcomeStatus.NO_DATA if suggestions.is_empty() else OutcomeStatus.RANKED
        return SuggestionOutcome(status, suggestions, skipped=skipped)

    def general_suggestions(
        self,
        record_type_id: int,
        household_id: str,
        member_id: int | None = None,
        now: datetime | None = None,
    ) -> GeneralOutcome:
        key = RankedSuggestionCache.general_key(household_id, record_type_id, member_id)
        cached = self._cached(key)
        if cached is not None:
            try:
                return GeneralOutcome.from_cached(cached)
            except (KeyError, TypeError, ValueError):
                logger.warning("ignoring malformed cached suggestions: key=%s", key)

        now = now or datetime.now(timezone.utc)
        try:
            titles = rank_titles(
                self.history.recent(household_id, record_type_id, limit=TITLE_HISTORY_LIMIT, require="title")
            )
            tags = rank_tags(
                self.history.recent(household_id, record_type_id, limit=TAG_HISTORY_LIMIT, require="tags")
            )
            defaults = smart_defaults(
                self.history.recent(
                    household_id,
                    record_type_id,
                    limit=DEFAULTS_HISTORY_LIMIT,
                    member_id=member_id,
                    since=now - DEFAULTS_WINDOW,
                ),
                now=now,
            )
        except OSError as e:
            logger.error("general suggestions failed: household=%s error=%s", household_id, e)
            return GeneralOutcome(OutcomeStatus.FAILED, error=str(e))

        status = OutcomeStatus.RANKED if (titles or tags) else OutcomeStatus.NO_DATA
        outcome = GeneralOutcome(status, titles, tags, defaults)
        self._store(key, outcome.to_dict())
        return outcome

    def invalidate(self, household_id: str) -> int:
        return self.cache.invalidate_household(household_id)
