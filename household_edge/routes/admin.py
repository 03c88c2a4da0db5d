from fastapi import APIRouter, Depends, Header, HTTPException

from household_edge.auth import auth_header_key
from household_edge.cache import CacheStorageError
from household_edge.services import EdgeServices, get_services, rate_limited
from household_edge.store import StoreUnavailable

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(rate_limited("auth"))])


def _config_or_404(services: EdgeServices, name: str):
    try:
        return services.policy.config(name)
    except KeyError:
        raise HTTPException(status_code=404, detail="unknown rate limit") from None


@router.get("/rate-limit/{name}/{identifier}")
def api_rate_limit_status(
    name: str,
    identifier: str,
    x_api_key: str | None = Header(default=None),
    services: EdgeServices = Depends(get_services),
):
    auth_header_key(x_api_key)
    cfg = _config_or_404(services, name)
    try:
        count = services.counter.peek(identifier, cfg.window_ms, key_prefix=cfg.key_prefix)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail="rate limit store unavailable") from e
    return {
        "ok": True,
        "name": name,
        "identifier": identifier,
        "count": count,
        "limit": cfg.max_requests,
        "windowMs": cfg.window_ms,
        "limited": count >= cfg.max_requests,
    }


@router.delete("/rate-limit/{name}/{identifier}")
def api_rate_limit_clear(
    name: str,
    identifier: str,
    x_api_key: str | None = Header(default=None),
    services: EdgeServices = Depends(get_services),
):
    auth_header_key(x_api_key)
    cfg = _config_or_404(services, name)
    try:
        services.counter.reset(identifier, key_prefix=cfg.key_prefix)
    except StoreUnavailable as e:
        raise HTTPException(status_code=503, detail="rate limit store unavailable") from e
    return {"ok": True, "name": name, "identifier": identifier}


@router.post("/cache/sweep")
def api_cache_sweep(
    x_api_key: str | None = Header(default=None),
    services: EdgeServices = Depends(get_services),
):
    auth_header_key(x_api_key)
    try:
        suggestions = services.suggestions.cache.sweep_expired()
        insights = services.insights.sweep_expired()
    except CacheStorageError as e:
        raise HTTPException(status_code=503, detail="cache storage unavailable") from e
    return {"ok": True, "removed": {"suggestions": suggestions, "insights": insights}}
