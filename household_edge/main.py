import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from household_edge import config
from household_edge.probes import ProbeRules, Rejection
from household_edge.routes import admin, analytics, health, records, suggestions
from household_edge.security import AdmissionPolicy, PersistPolicy, resolve_identifier
from household_edge.services import EdgeServices, RateLimitExceeded, build_services
from household_edge.store import build_store

logger = logging.getLogger(__name__)

BLOCKED_BY = "household-edge"

_SECURITY_HEADERS = {
    "Referrer-Policy": "no-referrer",
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=(), payment=(), usb=()",
}


def default_services() -> EdgeServices:
    store = build_store(config.REDIS_URL, config.STORE_TIMEOUT_MS)
    return build_services(
        store,
        config.DATA_DIR,
        rate_limits=config.RATE_LIMITS,
        rules=ProbeRules.with_overrides(config.BLOCKED_PATHS, config.BLOCKED_USER_AGENTS, config.ALLOW_LIST),
        # Applies to limits marked skip_writes, and only when writes go to the remote store.
        persist_policy=(
            PersistPolicy(config.PERSIST_INTERVAL_S, config.PERSIST_THRESHOLD)
            if config.REDIS_URL
            else PersistPolicy.always()
        ),
        bot_protection=config.BOT_PROTECTION_ENABLED,
        probe_rate_limit=config.PROBE_RATE_LIMIT_ENABLED,
        log_blocked=config.LOG_BLOCKED,
        trusted_ip_header=config.TRUSTED_CLIENT_IP_HEADER,
        suggestion_ttl=config.SUGGESTION_CACHE_TTL,
        analytics_ttl=config.ANALYTICS_CACHE_TTL,
        shared_cache=bool(config.REDIS_URL),
    )


def blocked_response(rejection: Rejection) -> JSONResponse:
    headers = {"X-Blocked-By": BLOCKED_BY, "Cache-Control": "no-store"}
    if rejection.decision is not None:
        headers.update(AdmissionPolicy.headers(rejection.decision))
    return JSONResponse(rejection.body(), status_code=rejection.status, headers=headers)


def create_app(services: EdgeServices | None = None) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = FastAPI(title="household-edge", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.services = services or default_services()
    logger.info(
        "household-edge starting: version=%s bot_protection=%s",
        config.APP_VERSION,
        app.state.services.bot_protection,
    )

    @app.middleware("http")
    async def edge_guard_middleware(request: Request, call_next):
        svc: EdgeServices = request.app.state.services
        if svc.bot_protection:
            client_id = resolve_identifier(None, request.headers, svc.trusted_ip_header)
            rejection = await run_in_threadpool(
                svc.probe_filter.evaluate,
                request.url.path,
                request.headers.get("user-agent", ""),
                request.query_params.multi_items(),
                client_id,
            )
            if rejection is not None:
                return blocked_response(rejection)
        return await call_next(request)

    @app.middleware("http")
    async def security_headers_middleware(request, call_next):
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            {"error": "Too Many Requests", "message": "Rate limit exceeded", "status": 429},
            status_code=429,
            headers=AdmissionPolicy.headers(exc.decision),
        )

    @app.get("/robots.txt", include_in_schema=False)
    def robots_txt():
        return PlainTextResponse(
            "User-agent: *\nDisallow: /api/\nDisallow: /manage\nDisallow: /settings\nAllow: /\n",
            media_type="text/plain; charset=utf-8",
            headers={"Cache-Control": "public, max-age=3600"},
        )

    app.include_router(health.router)
    app.include_router(suggestions.router)
    app.include_router(records.router)
    app.include_router(analytics.router)
    app.include_router(admin.router)
    return app


app = create_app()
