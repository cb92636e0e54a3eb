"""Approvals granting an external party access to an episode's data."""
from enum import Enum
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from .episode import ResourceKind
from .fhir import Period, Reference


class ApprovalStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Approval(BaseModel):
    """Time-bounded grant of access to an episode.

    Never mutated after issuance except for the ``active -> expired`` and
    ``active -> revoked`` status transitions.
    """

    id: str
    episode: Reference
    granted_to: Reference
    granted_resources: List[ResourceKind] = []
    period: Period
    status: ApprovalStatus = ApprovalStatus.ACTIVE
    reason: Optional[str] = None
    inserted_at: Optional[datetime] = None

    @field_validator("granted_to")
    @classmethod
    def grantee_must_be_party(cls, v):
        if v.type not in ("legal_entity", "employee"):
            raise ValueError("approval can only be granted to a legal_entity or employee")
        return v

    @field_validator("period")
    @classmethod
    def period_needs_start(cls, v):
        if v.start is None:
            raise ValueError("approval period must have a start")
        return v


class ApprovalFilters(BaseModel):
    """Optional filters for listing an episode's approvals.

    ``period`` is an overlap window: an approval matches when its validity
    period intersects the window.
    """

    granted_to: Optional[Reference] = None
    period: Optional[Period] = None
    status: Optional[ApprovalStatus] = None


class PageRequest(BaseModel):
    size: Optional[int] = Field(default=None, ge=1)
    cursor: Optional[str] = None


class ApprovalPage(BaseModel):
    items: List[Approval]
    next_cursor: Optional[str] = None
