import hmac
import re
from dataclasses import dataclass

from fastapi import Header, HTTPException

from household_edge.config import API_SECRET

HOUSEHOLD_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,63}$")
FIELD_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


@dataclass(frozen=True, slots=True)
class CallerIdentity:
    """Who is calling, as asserted by the trusted front end."""

    user_id: str
    household_id: str | None = None


def safe_household_id(household_id: str) -> str:
    household_id = (household_id or "").strip()
    if not HOUSEHOLD_RE.match(household_id):
        raise HTTPException(status_code=400, detail="invalid household id")
    return household_id


def safe_field_id(field_id: str) -> str:
    field_id = (field_id or "").strip()
    if not FIELD_ID_RE.match(field_id):
        raise HTTPException(status_code=400, detail="invalid field id")
    return field_id


def _key_ok(key: str | None) -> bool:
    return bool(key) and hmac.compare_digest(key.encode(), API_SECRET.encode())


def auth_header_key(x_api_key: str | None):
    if not _key_ok(x_api_key):
        raise HTTPException(status_code=401, detail="invalid key")


def optional_caller(
    x_api_key: str | None = Header(default=None),
    x_caller_id: str | None = Header(default=None),
    x_household_id: str | None = Header(default=None),
) -> CallerIdentity | None:
    """Caller identity, only honoured when the request carries the API key."""
    if not _key_ok(x_api_key) or not (x_caller_id or "").strip():
        return None
    return CallerIdentity(user_id=x_caller_id.strip(), household_id=(x_household_id or "").strip() or None)


def require_household_access(caller: CallerIdentity | None, household_id: str):
    if caller is None:
        raise HTTPException(status_code=401, detail="caller identity required")
    if caller.household_id != household_id:
        raise HTTPException(status_code=403, detail="access denied")
