from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from state.models import NOTES_MAX


def _strip(value):
    return value.strip() if isinstance(value, str) else value


class CheckinRequest(BaseModel):
    volunteer_id: str = Field(min_length=1)
    # may be empty here; an empty selection is a business rule checked in the transaction
    material_ids: List[str]
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @field_validator("volunteer_id", mode="before")
    @classmethod
    def strip_id(cls, v):
        return _strip(v)

    @field_validator("material_ids")
    @classmethod
    def unique_ids(cls, v: List[str]) -> List[str]:
        ids = [i.strip() for i in v]
        if any(not i for i in ids):
            raise ValueError("material ids must not be blank")
        if len(set(ids)) != len(ids):
            raise ValueError("material ids must not repeat")
        return ids


class CheckoutRequest(BaseModel):
    volunteer_id: str = Field(min_length=1)
    # values are checked against Disposition inside the transaction
    dispositions: Dict[str, Any]
    notes: Optional[str] = Field(default=None, max_length=NOTES_MAX)

    @field_validator("volunteer_id", mode="before")
    @classmethod
    def strip_id(cls, v):
        return _strip(v)
