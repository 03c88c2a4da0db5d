import pytest


@pytest.fixture()
def down_store(app_ctx):
    # Imported after app_ctx so the exception class matches the reloaded package.
    from household_edge.store import DurableStore, StoreUnavailable

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

    return DownStore()


def _field_request(household_id="hh1", **extra):
    body = {"_action": "get-field-suggestions", "recordTypeId": 1, "householdId": household_id, "fieldId": "5"}
    body.update(extra)
    return body


def _record(value, **extra):
    body = {"recordTypeId": 1, "memberId": 1, "memberName": "Ana", "fieldValues": {"field_5": value}}
    body.update(extra)
    return body


def test_probe_path_is_blocked(client):
    r = client.get("/wp-admin/install.php")
    assert r.status_code == 403
    assert r.json() == {"error": "Forbidden", "message": "Path not allowed", "status": 403}
    assert r.headers["X-Blocked-By"] == "household-edge"
    assert r.headers["Cache-Control"] == "no-store"
    assert r.headers["X-Frame-Options"] == "DENY"


def test_scanner_user_agent_is_blocked(client):
    r = client.get("/health", headers={"User-Agent": "Nikto/2.5"})
    assert r.status_code == 403
    assert r.json()["message"] == "User agent not allowed"


def test_suspicious_query_is_blocked(client):
    r = client.get("/health", params={"q": "1 union select password"})
    assert r.status_code == 403
    assert r.json()["message"] == "Suspicious request"


def test_bot_protection_can_be_disabled(client, app_ctx):
    app_ctx["app"].state.services.bot_protection = False
    assert client.get("/wp-admin").status_code == 404


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["checks"] == {"app": "ok", "storage": "ok", "store": "ok"}
    assert body["version"] == "test"
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["Referrer-Policy"] == "no-referrer"


def test_health_reports_degraded_store(client, app_ctx, down_store):
    app_ctx["app"].state.services.store = down_store
    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["checks"]["store"] == "unavailable"


def test_robots_txt(client):
    r = client.get("/robots.txt")
    assert r.status_code == 200
    assert "Disallow: /api/" in r.text


def test_auto_completion_requires_caller(client, caller_headers):
    assert client.post("/api/auto-completion", json=_field_request()).status_code == 401
    r = client.post("/api/auto-completion", json=_field_request(), headers=caller_headers("hh2"))
    assert r.status_code == 403


def test_auto_completion_rejects_unknown_action(client, caller_headers):
    r = client.post("/api/auto-completion", json=_field_request(_action="drop-tables"), headers=caller_headers())
    assert r.status_code == 422


def test_field_suggestions_require_field_id(client, caller_headers):
    body = _field_request()
    del body["fieldId"]
    r = client.post("/api/auto-completion", json=body, headers=caller_headers())
    assert r.status_code == 400


def test_field_suggestions_flow(client, caller_headers):
    headers = caller_headers()
    r = client.post("/api/auto-completion", json=_field_request(), headers=headers)
    assert r.status_code == 200
    assert r.json()["status"] == "no_data"
    assert r.json()["success"] is True

    assert client.post("/api/records/hh1", json=_record("Pizza"), headers=headers).status_code == 200

    r = client.post("/api/auto-completion", json=_field_request(), headers=headers)
    body = r.json()
    assert body["status"] == "ranked"
    assert [s["value"] for s in body["fieldSuggestions"]["recent"]] == ["Pizza"]
    assert r.headers["X-RateLimit-Limit"] == "60"
    assert r.headers["X-RateLimit-Remaining"] == "58"

    assert client.post("/api/auto-completion", json=_field_request(), headers=headers).json()["status"] == "cached"

    client.post("/api/records/hh1", json=_record("Sushi"), headers=headers)
    body = client.post("/api/auto-completion", json=_field_request(), headers=headers).json()
    assert body["status"] == "ranked"
    assert [s["value"] for s in body["fieldSuggestions"]["recent"]] == ["Sushi", "Pizza"]


def test_current_value_is_not_suggested(client, caller_headers):
    headers = caller_headers()
    client.post("/api/records/hh1", json=_record("Pizza"), headers=headers)
    body = client.post("/api/auto-completion", json=_field_request(currentValue="pizza"), headers=headers).json()
    assert body["fieldSuggestions"] == {"recent": [], "frequent": [], "contextual": []}
    assert body["status"] == "no_data"


def test_general_suggestions(client, caller_headers):
    headers = caller_headers()
    client.post("/api/records/hh1", json=_record("x", title="Piano lesson", tags="music, kids"), headers=headers)
    body = {"_action": "get-suggestions", "recordTypeId": 1, "householdId": "hh1"}
    r = client.post("/api/auto-completion", json=body, headers=headers)
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert [t["value"] for t in data["titleSuggestions"]] == ["Piano lesson"]
    assert data["tagSuggestions"] == ["music", "kids"]
    assert data["smartDefaults"]["commonPatterns"]["totalRecords"] == 1


def test_write_limit_returns_429(client, caller_headers):
    headers = caller_headers()
    for _ in range(10):
        assert client.post("/api/records/hh1", json=_record("x"), headers=headers).status_code == 200
    r = client.post("/api/records/hh1", json=_record("x"), headers=headers)
    assert r.status_code == 429
    assert r.json() == {"error": "Too Many Requests", "message": "Rate limit exceeded", "status": 429}
    assert r.headers["X-RateLimit-Limit"] == "10"
    assert r.headers["X-RateLimit-Remaining"] == "0"
    assert int(r.headers["Retry-After"]) > 0

    other = caller_headers(household_id="hh2", caller_id="u2")
    assert client.post("/api/records/hh2", json=_record("x"), headers=other).status_code == 200


def test_store_outage_fails_closed_for_writes_and_open_for_reads(client, app_ctx, caller_headers, down_store):
    app_ctx["app"].state.services.counter.store = down_store
    headers = caller_headers()
    r = client.post("/api/records/hh1", json=_record("x"), headers=headers)
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "60"

    r = client.get("/api/analytics/hh1", headers=headers)
    assert r.status_code == 200
    assert r.headers["X-RateLimit-Remaining"] == "29"


def test_analytics_cache_header(client, caller_headers):
    headers = caller_headers()
    client.post("/api/records/hh1", json=_record("x", recordTypeName="Meal"), headers=headers)

    r = client.get("/api/analytics/hh1", headers=headers)
    assert r.status_code == 200
    assert r.headers["X-Cache"] == "miss"
    assert r.json()["insights"]["totalRecords"] == 1
    assert r.json()["insights"]["byRecordType"] == {"Meal": 1}

    r = client.get("/api/analytics/hh1", headers=headers)
    assert r.headers["X-Cache"] == "hit"
    assert r.json()["cached"] is True

    client.post("/api/records/hh1", json=_record("y"), headers=headers)
    r = client.get("/api/analytics/hh1", headers=headers)
    assert r.headers["X-Cache"] == "miss"
    assert r.json()["insights"]["totalRecords"] == 2


def test_analytics_period_is_part_of_the_key(client, caller_headers):
    headers = caller_headers()
    assert client.get("/api/analytics/hh1?period=7", headers=headers).headers["X-Cache"] == "miss"
    assert client.get("/api/analytics/hh1?period=30", headers=headers).headers["X-Cache"] == "miss"
    assert client.get("/api/analytics/hh1?period=7", headers=headers).json()["insights"]["periodDays"] == 7


def test_invalid_household_id(client, caller_headers):
    r = client.get("/api/analytics/-bad", headers=caller_headers("-bad"))
    assert r.status_code == 400


def test_admin_rate_limit_status_and_clear(client, api_secret, caller_headers):
    for _ in range(3):
        client.post("/api/records/hh1", json=_record("x"), headers=caller_headers())

    url = "/api/admin/rate-limit/write/user:u1"
    assert client.get(url).status_code == 401

    admin = {"X-Api-Key": api_secret}
    body = client.get(url, headers=admin).json()
    assert body["count"] == 3
    assert body["limit"] == 10
    assert body["limited"] is False

    assert client.delete(url, headers=admin).json()["ok"] is True
    assert client.get(url, headers=admin).json()["count"] == 0
    assert client.get("/api/admin/rate-limit/nope/user:u1", headers=admin).status_code == 404


def test_admin_cache_sweep(client, api_secret):
    r = client.post("/api/admin/cache/sweep", headers={"X-Api-Key": api_secret})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "removed": {"suggestions": 0, "insights": 0}}


def test_admin_is_behind_auth_limit(client):
    for _ in range(5):
        assert client.post("/api/admin/cache/sweep", headers={"X-Api-Key": "wrong"}).status_code == 401
    r = client.post("/api/admin/cache/sweep", headers={"X-Api-Key": "wrong"})
    assert r.status_code == 429
    assert r.headers["X-RateLimit-Limit"] == "5"


def test_rate_limit_env_override(app_ctx, monkeypatch):
    from household_edge import config
    from household_edge.security import DEFAULT_RATE_LIMITS

    monkeypatch.setenv("RATE_LIMIT_WRITE", "3/30")
    cfg = config._rate_limit("write", DEFAULT_RATE_LIMITS["write"])
    assert (cfg.max_requests, cfg.window_ms, cfg.key_prefix) == (3, 30_000, "write")

    monkeypatch.setenv("RATE_LIMIT_PROBE", "300/60")
    assert config._rate_limit("probe", DEFAULT_RATE_LIMITS["probe"]).skip_writes is True

    monkeypatch.setenv("RATE_LIMIT_WRITE", "lots")
    with pytest.raises(RuntimeError):
        config._rate_limit("write", DEFAULT_RATE_LIMITS["write"])


def test_rate_limited_only_accepts_configured_names(app_ctx):
    from household_edge.config import RATE_LIMITS
    from household_edge.services import rate_limited

    for name in RATE_LIMITS:
        assert callable(rate_limited(name))
    with pytest.raises(KeyError):
        rate_limited("nope")


def test_shared_cache_lives_in_the_store(app_ctx, data_dir):
    from household_edge.cache import JsonFileCacheTable, StoreCacheTable
    from household_edge.config import RATE_LIMITS
    from household_edge.services import build_services
    from household_edge.store import MemoryStore

    store = MemoryStore(sweep_probability=0)
    shared = build_services(store, data_dir, rate_limits=RATE_LIMITS, shared_cache=True)
    assert isinstance(shared.suggestions.cache.cache.table, StoreCacheTable)
    assert isinstance(shared.insights.cache.table, StoreCacheTable)

    shared.insights.store("hh1", "summary:30", {"total": 1})
    assert store.get("cache:insights:hh1:insights:summary:30") is not None

    local = build_services(store, data_dir, rate_limits=RATE_LIMITS)
    assert isinstance(local.insights.cache.table, JsonFileCacheTable)
