"""Household record history kept as JSON lines, one file per household.

This is the read side the suggestion ranking and analytics consume: a
most-recent-first, capped query over raw rows whose `content` stays an
opaque JSON blob until a consumer parses it.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

HISTORY_DIRNAME = "history"


@dataclass(slots=True)
class HistoricalRecord:
    household_id: str
    record_type_id: int
    recorded_at: datetime
    content: str = ""
    title: str = ""
    tags: str = ""
    member_id: int | None = None
    member_name: str | None = None
    record_type_name: str | None = None

    def to_json(self) -> str:
        row = asdict(self)
        row["recorded_at"] = self.recorded_at.isoformat()
        return json.dumps(row, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, row: dict) -> "HistoricalRecord":
        return cls(
            household_id=str(row["household_id"]),
            record_type_id=int(row["record_type_id"]),
            recorded_at=_parse_datetime(row["recorded_at"]),
            content=str(row.get("content") or ""),
            title=str(row.get("title") or ""),
            tags=str(row.get("tags") or ""),
            member_id=int(row["member_id"]) if row.get("member_id") is not None else None,
            member_name=row.get("member_name") or None,
            record_type_name=row.get("record_type_name") or None,
        )


def _parse_datetime(value: str) -> datetime:
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iter_jsonl(path: Path):
    if not path.exists():
        return
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(obj, dict):
                yield obj


class RecordHistory:
    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self._lock = threading.Lock()

    def _path(self, household_id: str) -> Path:
        return self.base_dir / HISTORY_DIRNAME / f"{household_id}.jsonl"

    def append(self, record: HistoricalRecord) -> None:
        p = self._path(record.household_id)
        line = record.to_json() + "\n"
        with self._lock:
            p.parent.mkdir(parents=True, exist_ok=True)
            with open(p, "a", encoding="utf-8") as f:
                f.write(line)

    def recent(
        self,
        household_id: str,
        record_type_id: int | None = None,
        *,
        limit: int = 75,
        member_id: int | None = None,
        since: datetime | None = None,
        require: str | None = None,
    ) -> list[HistoricalRecord]:
        """Most-recent-first rows, capped at `limit`.

        `require` names a column ("content", "title", "tags") that must be
        non-empty. Raises OSError when the history cannot be read.
        """
        rows: list[HistoricalRecord] = []
        skipped = 0
        for obj in _iter_jsonl(self._path(household_id)):
            try:
                rec = HistoricalRecord.from_dict(obj)
            except (KeyError, TypeError, ValueError):
                skipped += 1
                continue
            if record_type_id is not None and rec.record_type_id != record_type_id:
                continue
            if member_id is not None and rec.member_id != member_id:
                continue
            if since is not None and rec.recorded_at < since:
                continue
            if require and not str(getattr(rec, require, "") or "").strip():
                continue
            rows.append(rec)
        if skipped:
            logger.debug("history rows skipped: household=%s skipped=%s", household_id, skipped)
        rows.sort(key=lambda r: r.recorded_at, reverse=True)
        return rows[: max(0, limit)]
