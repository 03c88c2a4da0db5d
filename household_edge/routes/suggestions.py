from fastapi import APIRouter, Depends, HTTPException

from household_edge.auth import CallerIdentity, optional_caller, require_household_access, safe_field_id, safe_household_id
from household_edge.models import AutoCompletionPayload
from household_edge.services import EdgeServices, get_services, rate_limited

router = APIRouter(prefix="/api/auto-completion", tags=["auto-completion"])


@router.post("", dependencies=[Depends(rate_limited("api"))])
def api_auto_completion(
    payload: AutoCompletionPayload,
    caller: CallerIdentity | None = Depends(optional_caller),
    services: EdgeServices = Depends(get_services),
):
    household_id = safe_household_id(payload.householdId)
    require_household_access(caller, household_id)

    if payload.action == "get-field-suggestions":
        if not payload.fieldId:
            raise HTTPException(status_code=400, detail="fieldId is required for field suggestions")
        outcome = services.suggestions.field_suggestions(
            safe_field_id(payload.fieldId),
            payload.recordTypeId,
            household_id,
            member_id=payload.memberId,
            current_value=payload.currentValue,
        )
        return {
            "success": not outcome.failed,
            "status": outcome.status.value,
            "fieldSuggestions": outcome.suggestions.to_dict(),
        }

    general = services.suggestions.general_suggestions(
        payload.recordTypeId,
        household_id,
        member_id=payload.memberId,
    )
    return {
        "success": not general.failed,
        "status": general.status.value,
        **general.to_dict(),
    }
