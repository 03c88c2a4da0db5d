from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class AutoCompletionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["get-field-suggestions", "get-suggestions"] = Field(alias="_action")
    recordTypeId: int = Field(gt=0)
    householdId: str
    fieldId: Optional[str] = None
    memberId: Optional[int] = Field(default=None, gt=0)
    currentValue: Optional[str] = None


class RecordPayload(BaseModel):
    recordTypeId: int = Field(gt=0)
    recordTypeName: Optional[str] = None
    memberId: Optional[int] = Field(default=None, gt=0)
    memberName: Optional[str] = None
    title: str = ""
    tags: str = ""
    fieldValues: Dict[str, Any] = {}
    recordedAt: Optional[datetime] = None
