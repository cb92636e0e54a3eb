"""Pydantic models for the FHIR-style value types shared by every resource."""
from typing import Optional, List
from datetime import datetime, timezone
from pydantic import BaseModel, field_validator, model_validator


class Coding(BaseModel):
    """FHIR Coding - a reference to a code defined by a terminology system."""
    system: str
    code: str
    display: Optional[str] = None

    @field_validator("system")
    @classmethod
    def system_must_be_uri_or_dictionary(cls, v):
        """Validate system is a URI or an eHealth dictionary name."""
        if not v or not v.startswith(("http://", "https://", "urn:", "eHealth/")):
            raise ValueError("system must be a valid URI or eHealth dictionary")
        return v


class CodeableConcept(BaseModel):
    """FHIR CodeableConcept - a value that is usually supplied by a terminology system."""
    coding: List[Coding] = []
    text: Optional[str] = None

    @model_validator(mode="after")
    def coding_or_text_required(self):
        if not self.coding and not self.text:
            raise ValueError("codeable concept needs at least one coding or text")
        return self


def _as_utc(value: datetime) -> datetime:
    # naive values are UTC, as in storage
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Period(BaseModel):
    """FHIR Period - a time period with optional start and end dates."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("end")
    @classmethod
    def end_must_be_after_start(cls, v, info):
        """Validate that end date is after or equal to start date."""
        start = info.data.get("start")
        if v and start and _as_utc(v) < _as_utc(start):
            raise ValueError("period end must be after or equal to start")
        return v


class Reference(BaseModel):
    """Pointer to another resource by type and id, resolved by the store."""
    type: str
    id: str

    @property
    def key(self) -> str:
        return f"{self.type}/{self.id}"
