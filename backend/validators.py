"""Request payload validation for the deal, note and ticket routes."""

import re
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from hubspot_deals import DEAL_PROPERTIES

STAGE_ID_PATTERN = re.compile(r"^[0-9a-z_-]+$", re.IGNORECASE)


class DealUpdate(BaseModel):
    """Partial deal update; only default deal properties are accepted."""

    dealname: Optional[str] = None
    amount: Optional[str] = None
    closedate: Optional[str] = None
    dealstage: Optional[str] = None
    hubspot_owner_id: Optional[str] = None
    createdate: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _require_one_property(self):
        if all(getattr(self, name) is None for name in self.model_fields_set):
            raise ValueError("Request body must include at least one deal property")
        return self

    def to_properties(self) -> Dict[str, str]:
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if key in DEAL_PROPERTIES and isinstance(value, str)
        }


class NoteCreate(BaseModel):
    note_body: str = Field(alias="noteBody")

    @field_validator("note_body")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Note body is required and cannot be empty")
        return value


class TicketStageUpdate(BaseModel):
    hs_pipeline_stage: str

    @field_validator("hs_pipeline_stage")
    @classmethod
    def _stage_identifier(cls, value: str) -> str:
        if not value:
            raise ValueError("hs_pipeline_stage is required")
        if not STAGE_ID_PATTERN.fullmatch(value):
            raise ValueError("hs_pipeline_stage must be an alphanumeric stage identifier")
        return value


def first_error_message(exc, default: str) -> str:
    """First human-readable message of a pydantic ValidationError."""
    errors = exc.errors()
    if not errors or errors[0].get("type") == "missing":
        return default
    message = errors[0].get("msg") or default
    return message.removeprefix("Value error, ")
