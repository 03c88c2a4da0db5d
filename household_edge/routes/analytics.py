import logging

from fastapi import APIRouter, Depends, Response

from household_edge.analytics import household_summary
from household_edge.auth import CallerIdentity, optional_caller, require_household_access, safe_household_id
from household_edge.cache import CacheStorageError
from household_edge.services import EdgeServices, get_services, rate_limited

router = APIRouter(prefix="/api/analytics", tags=["analytics"])
logger = logging.getLogger(__name__)


@router.get("/{household_id}", dependencies=[Depends(rate_limited("analytics"))])
def api_analytics(
    household_id: str,
    response: Response,
    period: int = 30,
    caller: CallerIdentity | None = Depends(optional_caller),
    services: EdgeServices = Depends(get_services),
):
    household_id = safe_household_id(household_id)
    require_household_access(caller, household_id)
    period = max(1, min(int(period or 30), 365))

    def generate():
        return household_summary(services.history, household_id, period_days=period)

    try:
        summary, cached = services.insights.get_or_generate(household_id, f"summary:{period}", generate)
        cache_state = "hit" if cached else "miss"
    except CacheStorageError as e:
        logger.warning("insights cache unavailable: household=%s error=%s", household_id, e)
        summary, cached, cache_state = generate(), False, "error"
    response.headers["X-Cache"] = cache_state
    return {"ok": True, "cached": cached, "insights": summary}
