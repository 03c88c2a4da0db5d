"""Per-process object graph, built once by the entry point and injected."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from fastapi import Depends, Request, Response

from household_edge.analytics import InsightsCache
from household_edge.auth import CallerIdentity, optional_caller
from household_edge.cache import CacheTable, JsonFileCacheTable, StoreCacheTable, TTLCache
from household_edge.config import RATE_LIMITS
from household_edge.probes import ProbeFilter, ProbeRules
from household_edge.security import (
    AdmissionDecision,
    AdmissionPolicy,
    PersistPolicy,
    RateLimitConfig,
    WindowCounter,
    resolve_identifier,
)
from household_edge.storage import RecordHistory
from household_edge.store import DurableStore
from household_edge.suggestions import RankedSuggestionCache, SuggestionService

CACHE_DIRNAME = "cache"


@dataclass(slots=True)
class EdgeServices:
    store: DurableStore
    counter: WindowCounter
    policy: AdmissionPolicy
    probe_filter: ProbeFilter
    history: RecordHistory
    suggestions: SuggestionService
    insights: InsightsCache
    bot_protection: bool = True
    trusted_ip_header: str = "cf-connecting-ip"


def build_services(
    store: DurableStore,
    data_dir: Path,
    *,
    rate_limits: dict[str, RateLimitConfig],
    rules: ProbeRules | None = None,
    persist_policy: PersistPolicy = PersistPolicy(),
    bot_protection: bool = True,
    probe_rate_limit: bool = True,
    log_blocked: bool = True,
    trusted_ip_header: str = "cf-connecting-ip",
    suggestion_ttl: float = 300,
    analytics_ttl: float = 3600,
    shared_cache: bool = False,
) -> EdgeServices:
    """Wire the per-process object graph.

    `shared_cache` keeps both caches in `store` so every worker sees the
    same entries and invalidations; otherwise they live in JSON files under
    `data_dir/cache`.
    """

    def cache_table(name: str) -> CacheTable:
        if shared_cache:
            return StoreCacheTable(store, name)
        return JsonFileCacheTable(data_dir / CACHE_DIRNAME / f"{name}.json")

    counter = WindowCounter(store, persist_policy)
    policy = AdmissionPolicy(counter, dict(rate_limits))
    history = RecordHistory(data_dir)
    suggestion_cache = RankedSuggestionCache(TTLCache(cache_table("suggestions")), ttl_seconds=suggestion_ttl)
    return EdgeServices(
        store=store,
        counter=counter,
        policy=policy,
        probe_filter=ProbeFilter(
            rules=rules or ProbeRules(),
            policy=policy if probe_rate_limit else None,
            log_blocked=log_blocked,
        ),
        history=history,
        suggestions=SuggestionService(history, suggestion_cache),
        insights=InsightsCache(TTLCache(cache_table("insights")), ttl_seconds=analytics_ttl),
        bot_protection=bot_protection,
        trusted_ip_header=trusted_ip_header,
    )


def get_services(request: Request) -> EdgeServices:
    return request.app.state.services


class RateLimitExceeded(Exception):
    def __init__(self, decision: AdmissionDecision):
        super().__init__("rate limit exceeded")
        self.decision = decision


def rate_limited(name: str):
    """Dependency enforcing the named limit; adds X-RateLimit-* headers either way."""
    if name not in RATE_LIMITS:
        raise KeyError(f"unknown rate limit: {name}")

    def dependency(
        request: Request,
        response: Response,
        caller: CallerIdentity | None = Depends(optional_caller),
        services: EdgeServices = Depends(get_services),
    ) -> AdmissionDecision:
        identifier = resolve_identifier(
            caller.user_id if caller else None,
            request.headers,
            services.trusted_ip_header,
        )
        decision = services.policy.check(name, identifier)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        response.headers.update(AdmissionPolicy.headers(decision))
        return decision

    return dependency
