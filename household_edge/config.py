import os
import subprocess
from pathlib import Path

from household_edge.security import DEFAULT_RATE_LIMITS, RateLimitConfig


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    return [x.strip() for x in (os.environ.get(name) or "").split(",") if x.strip()]


def _rate_limit(name: str, default: RateLimitConfig) -> RateLimitConfig:
    # RATE_LIMIT_API="60/60" -> 60 requests per 60 seconds
    raw = (os.environ.get(f"RATE_LIMIT_{name.upper()}") or "").strip()
    if not raw:
        return default
    try:
        max_requests, window_s = raw.split("/", 1)
        return RateLimitConfig(
            window_ms=int(float(window_s) * 1000),
            max_requests=int(max_requests),
            key_prefix=default.key_prefix,
            skip_on_error=default.skip_on_error,
            skip_writes=default.skip_writes,
        )
    except ValueError as e:
        raise RuntimeError(f"RATE_LIMIT_{name.upper()} must look like '<max>/<window seconds>'") from e


API_SECRET = os.environ.get("EDGE_API_SECRET", "")
DATA_DIR = Path(os.environ.get("DATA_DIR", "/var/lib/household-edge")).resolve()
REDIS_URL = os.environ.get("REDIS_URL", "")
STORE_TIMEOUT_MS = int(os.environ.get("STORE_TIMEOUT_MS", "250"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

BOT_PROTECTION_ENABLED = _env_bool("BOT_PROTECTION_ENABLED", True)
PROBE_RATE_LIMIT_ENABLED = _env_bool("PROBE_RATE_LIMIT_ENABLED", True)
LOG_BLOCKED = _env_bool("LOG_BLOCKED", True)
BLOCKED_PATHS = _env_list("BLOCKED_PATHS")
BLOCKED_USER_AGENTS = _env_list("BLOCKED_USER_AGENTS")
ALLOW_LIST = _env_list("ALLOW_LIST")
TRUSTED_CLIENT_IP_HEADER = os.environ.get("TRUSTED_CLIENT_IP_HEADER", "cf-connecting-ip").strip().lower()

SUGGESTION_CACHE_TTL = int(os.environ.get("SUGGESTION_CACHE_TTL", "300"))
ANALYTICS_CACHE_TTL = int(os.environ.get("ANALYTICS_CACHE_TTL", "3600"))
PERSIST_INTERVAL_S = float(os.environ.get("RATE_LIMIT_PERSIST_INTERVAL", "30"))
PERSIST_THRESHOLD = float(os.environ.get("RATE_LIMIT_PERSIST_THRESHOLD", "0.8"))

RATE_LIMITS = {name: _rate_limit(name, cfg) for name, cfg in DEFAULT_RATE_LIMITS.items()}

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _resolve_app_version() -> str:
    env_version = (os.environ.get("APP_VERSION") or "").strip()
    if env_version:
        return env_version
    file_version = (_PROJECT_ROOT / ".version")
    if file_version.exists():
        from_file = file_version.read_text(encoding="utf-8").strip()
        if from_file:
            return from_file
    try:
        commit = subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=str(_PROJECT_ROOT),
            text=True,
            stderr=subprocess.DEVNULL,
        ).strip()
        return commit or "dev"
    except (OSError, subprocess.CalledProcessError):
        return "dev"


APP_VERSION = _resolve_app_version()

if not API_SECRET:
    raise RuntimeError("EDGE_API_SECRET is required")
