import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from household_edge.auth import CallerIdentity, optional_caller, require_household_access, safe_household_id
from household_edge.cache import CacheStorageError
from household_edge.models import RecordPayload
from household_edge.services import EdgeServices, get_services, rate_limited
from household_edge.storage import HistoricalRecord

router = APIRouter(prefix="/api/records", tags=["records"])
logger = logging.getLogger(__name__)


@router.post("/{household_id}", dependencies=[Depends(rate_limited("write"))])
def api_record_create(
    household_id: str,
    payload: RecordPayload,
    caller: CallerIdentity | None = Depends(optional_caller),
    services: EdgeServices = Depends(get_services),
):
    household_id = safe_household_id(household_id)
    require_household_access(caller, household_id)

    recorded_at = payload.recordedAt or datetime.now(timezone.utc)
    if recorded_at.tzinfo is None:
        recorded_at = recorded_at.replace(tzinfo=timezone.utc)
    record = HistoricalRecord(
        household_id=household_id,
        record_type_id=payload.recordTypeId,
        recorded_at=recorded_at,
        content=json.dumps({"fields": payload.fieldValues}, ensure_ascii=False),
        title=payload.title.strip(),
        tags=payload.tags.strip(),
        member_id=payload.memberId,
        member_name=payload.memberName,
        record_type_name=payload.recordTypeName,
    )
    services.history.append(record)

    # New history makes cached suggestions and summaries stale.
    try:
        removed = services.suggestions.invalidate(household_id)
        removed += services.insights.invalidate_household(household_id)
    except CacheStorageError as e:
        logger.warning("cache invalidation failed: household=%s error=%s", household_id, e)
        removed = 0
    logger.info("record stored: household=%s type=%s invalidated=%s", household_id, payload.recordTypeId, removed)
    return {"ok": True, "householdId": household_id, "recordedAt": recorded_at.isoformat()}
