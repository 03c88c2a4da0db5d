from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Mapping

from household_edge.store import DurableStore, StoreUnavailable

logger = logging.getLogger(__name__)

# Extra seconds the store keeps a counter after its window closes.
RECORD_TTL_PADDING_S = 10


def mask_identifier(identifier: str) -> str:
    return (identifier or "")[:10] + "***"


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: int | None = None

    @property
    def reset_epoch(self) -> int:
        return math.ceil(self.reset_at)


@dataclass(slots=True)
class RateWindowRecord:
    identifier: str
    timestamps: list[float] = field(default_factory=list)
    last_persisted: float | None = None

    def prune(self, cutoff: float) -> None:
        self.timestamps = [t for t in self.timestamps if t > cutoff]

    def dumps(self) -> str:
        return json.dumps(
            {"requests": self.timestamps, "lastPersisted": self.last_persisted},
            separators=(",", ":"),
        )

    @classmethod
    def loads(cls, identifier: str, raw: str | None) -> "RateWindowRecord":
        if not raw:
            return cls(identifier)
        try:
            data = json.loads(raw)
            stamps = sorted(float(t) for t in data.get("requests") or [])
            last = data.get("lastPersisted")
            return cls(identifier, stamps, float(last) if last is not None else None)
        except (ValueError, TypeError, AttributeError):
            logger.warning("discarding corrupt rate window: id=%s", mask_identifier(identifier))
            return cls(identifier)


@dataclass(frozen=True, slots=True)
class PersistPolicy:
    """When a counter update is worth a write to the durable store.

    Writes happen on the first request, once `interval_s` has passed since the
    last write (never less often than twice per window), or once the count
    reaches `threshold_ratio` of the limit.
    """

    interval_s: float = 30.0
    threshold_ratio: float = 0.8

    @classmethod
    def always(cls) -> "PersistPolicy":
        return cls(interval_s=0.0, threshold_ratio=0.0)

    def should_persist(self, record: RateWindowRecord, count: int, max_count: int, window_s: float, now: float) -> bool:
        if record.last_persisted is None:
            return True
        if now - record.last_persisted >= min(self.interval_s, window_s / 2):
            return True
        return count >= self.threshold_ratio * max_count


ALWAYS_PERSIST = PersistPolicy.always()


@dataclass(slots=True)
class WindowCounter:
    """Sliding-window request counter over a DurableStore.

    The read-modify-write is not atomic: concurrent requests for the same
    identifier can lose updates, and skipped writes under-count. Both are
    accepted for abuse mitigation.
    """

    store: DurableStore
    persist_policy: PersistPolicy = field(default_factory=PersistPolicy)

    def increment_and_check(
        self,
        identifier: str,
        window_ms: int,
        max_count: int,
        *,
        key_prefix: str = "rl",
        skip_on_error: bool = True,
        persist_policy: PersistPolicy | None = None,
        now: float | None = None,
    ) -> AdmissionDecision:
        identifier = identifier or "unknown"
        policy = persist_policy or self.persist_policy
        if now is None:
            now = time.time()
        window_s = window_ms / 1000.0
        key = f"{key_prefix}:{identifier}"

        try:
            raw = self.store.get(key)
        except StoreUnavailable as e:
            return self._on_store_error(identifier, e, max_count, window_s, skip_on_error, now)

        record = RateWindowRecord.loads(identifier, raw)
        record.prune(now - window_s)
        record.timestamps.append(now)
        # max_count + 1 newest entries are enough to keep a flood denied.
        if len(record.timestamps) > max_count + 1:
            record.timestamps = record.timestamps[-(max_count + 1):]
        count = len(record.timestamps)

        if policy.should_persist(record, count, max_count, window_s, now):
            record.last_persisted = now
            try:
                self.store.put(key, record.dumps(), expiration_ttl=math.ceil(window_s) + RECORD_TTL_PADDING_S)
            except StoreUnavailable as e:
                logger.warning(
                    "rate window write failed: id=%s error=%s",
                    mask_identifier(identifier),
                    e,
                    extra={"event": "rate_limit.store_write_failed", "identifier": mask_identifier(identifier)},
                )

        reset_at = record.timestamps[0] + window_s
        if count <= max_count:
            return AdmissionDecision(
                allowed=True,
                limit=max_count,
                remaining=max(0, max_count - count),
                reset_at=reset_at,
            )
        # The next request passes once this entry has left the window.
        pivot = record.timestamps[count - max_count] if max_count > 0 else now
        retry_after = max(1, math.ceil(pivot + window_s - now))
        return AdmissionDecision(
            allowed=False,
            limit=max_count,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def peek(self, identifier: str, window_ms: int, *, key_prefix: str = "rl", now: float | None = None) -> int:
        """Live count for `identifier` without recording a request.

        Raises StoreUnavailable; callers are admin tools, not request paths.
        """
        if now is None:
            now = time.time()
        record = RateWindowRecord.loads(identifier, self.store.get(f"{key_prefix}:{identifier}"))
        record.prune(now - window_ms / 1000.0)
        return len(record.timestamps)

    def reset(self, identifier: str, *, key_prefix: str = "rl") -> None:
        self.store.delete(f"{key_prefix}:{identifier}")

    def _on_store_error(
        self,
        identifier: str,
        error: Exception,
        max_count: int,
        window_s: float,
        skip_on_error: bool,
        now: float,
    ) -> AdmissionDecision:
        logger.warning(
            "rate limit check failed: id=%s skip_on_error=%s error=%s",
            mask_identifier(identifier),
            skip_on_error,
            error,
            extra={"event": "rate_limit.store_unavailable", "identifier": mask_identifier(identifier)},
        )
        if skip_on_error:
            return AdmissionDecision(
                allowed=True,
                limit=max_count,
                remaining=max(0, max_count - 1),
                reset_at=now + window_s,
            )
        return AdmissionDecision(
            allowed=False,
            limit=max_count,
            remaining=0,
            reset_at=now + window_s,
            retry_after_seconds=math.ceil(window_s),
        )


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int
    key_prefix: str = "rl"
    skip_on_error: bool = False
    # Only limits that tolerate an under-count may skip store writes.
    skip_writes: bool = False


DEFAULT_RATE_LIMITS: dict[str, RateLimitConfig] = {
    # 5 attempts per 15 minutes
    "auth": RateLimitConfig(window_ms=15 * 60 * 1000, max_requests=5, key_prefix="auth"),
    "api": RateLimitConfig(window_ms=60 * 1000, max_requests=60, key_prefix="api", skip_on_error=True),
    "analytics": RateLimitConfig(window_ms=60 * 1000, max_requests=30, key_prefix="analytics", skip_on_error=True),
    "write": RateLimitConfig(window_ms=60 * 1000, max_requests=10, key_prefix="write"),
    # Volumetric limit applied by the probe filter to all traffic.
    "probe": RateLimitConfig(
        window_ms=60 * 1000, max_requests=120, key_prefix="rate_limit", skip_on_error=True, skip_writes=True
    ),
}


def resolve_identifier(
    user_id: str | int | None,
    headers: Mapping[str, str],
    trusted_ip_header: str = "cf-connecting-ip",
) -> str:
    """Caller key for counters: user id, then trusted client IP, then the proxy chain."""
    if user_id:
        return f"user:{user_id}"
    trusted = (headers.get(trusted_ip_header) or "").strip() if trusted_ip_header else ""
    if trusted:
        return f"ip:{trusted}"
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return f"ip:{forwarded}"
    return "ip:unknown"


@dataclass(slots=True)
class AdmissionPolicy:
    """Named rate-limit configurations over one WindowCounter."""

    counter: WindowCounter
    configs: dict[str, RateLimitConfig] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))

    def config(self, name: str) -> RateLimitConfig:
        return self.configs[name]

    def check(self, name: str, identifier: str, now: float | None = None) -> AdmissionDecision:
        cfg = self.configs[name]
        decision = self.counter.increment_and_check(
            identifier,
            cfg.window_ms,
            cfg.max_requests,
            key_prefix=cfg.key_prefix,
            skip_on_error=cfg.skip_on_error,
            persist_policy=None if cfg.skip_writes else ALWAYS_PERSIST,
            now=now,
        )
        if not decision.allowed:
            logger.info(
                "rate limit exceeded: config=%s id=%s retry_after=%s",
                name,
                mask_identifier(identifier),
                decision.retry_after_seconds,
                extra={"event": "rate_limit.exceeded", "config": name, "identifier": mask_identifier(identifier)},
            )
        return decision

    @staticmethod
    def headers(decision: AdmissionDecision) -> dict[str, str]:
        out = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_epoch),
        }
        if not decision.allowed:
            out["Retry-After"] = str(decision.retry_after_seconds or 60)
        return out
