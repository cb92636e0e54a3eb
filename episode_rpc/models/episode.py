"""Episode of care aggregate and the sub-resources that point back to it."""
from enum import Enum
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .fhir import CodeableConcept, Coding, Period, Reference


class ResourceKind(str, Enum):
    """Sub-resource kinds that may carry an episode back-reference."""

    ALLERGY_INTOLERANCE = "allergy_intolerance"
    CONDITION = "condition"
    DEVICE = "device"
    DIAGNOSTIC_REPORT = "diagnostic_report"
    ENCOUNTER = "encounter"
    IMMUNIZATION = "immunization"
    MEDICATION_STATEMENT = "medication_statement"
    OBSERVATION = "observation"
    RISK_ASSESSMENT = "risk_assessment"
    SERVICE_REQUEST = "service_request"


class EpisodeStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    ENTERED_IN_ERROR = "entered_in_error"


# Statuses reachable from each status; anything missing is terminal.
EPISODE_STATUS_TRANSITIONS = {
    EpisodeStatus.ACTIVE: {
        EpisodeStatus.CLOSED,
        EpisodeStatus.CANCELLED,
        EpisodeStatus.ENTERED_IN_ERROR,
    },
}


class DiagnosisRole(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    COMORBIDITY = "comorbidity"
    COMPLICATION = "complication"


class Diagnosis(BaseModel):
    """One diagnosis entry in an episode's diagnoses history."""

    condition: Reference
    code: CodeableConcept
    role: DiagnosisRole
    rank: Optional[int] = Field(default=None, ge=1)
    evidence: Optional[Reference] = None
    onset_date: Optional[datetime] = None
    recorded_date: Optional[datetime] = None

    @field_validator("evidence")
    @classmethod
    def evidence_must_be_report_or_condition(cls, v):
        if v is not None and v.type not in ("diagnostic_report", "condition"):
            raise ValueError("evidence must reference a diagnostic_report or condition")
        return v


class StatusHistoryEntry(BaseModel):
    status: EpisodeStatus
    changed_at: datetime
    reason: Optional[str] = None


class Episode(BaseModel):
    """Episode of care - a bounded period of clinical care for one patient.

    ``diagnoses_history`` and ``status_history`` are append-only logs with the
    most recent entry last.  The current status is always the last status
    history entry; the active primary diagnosis is the most recently appended
    diagnosis with the ``primary`` role.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    patient_id: str
    name: Optional[str] = None
    type: Optional[Coding] = None
    period: Period
    managing_organization: Reference
    care_manager: Optional[Reference] = None
    diagnoses_history: List[Diagnosis] = []
    status_history: List[StatusHistoryEntry] = Field(min_length=1)
    inserted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def status(self) -> EpisodeStatus:
        return self.status_history[-1].status

    @property
    def active_primary_diagnosis(self) -> Optional[Diagnosis]:
        for diagnosis in reversed(self.diagnoses_history):
            if diagnosis.role == DiagnosisRole.PRIMARY:
                return diagnosis
        return None


class DiagnosticReport(BaseModel):
    """Diagnostic report; ``episode`` is set at creation time or left empty."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    code: CodeableConcept
    episode: Optional[Reference] = None
    issued: Optional[datetime] = None
    conclusion: Optional[str] = None


class ServiceRequest(BaseModel):
    """Service request; ``episode`` is set at creation time or left empty."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    intent: str = "order"
    code: CodeableConcept
    episode: Optional[Reference] = None
    requisition: Optional[str] = None
    authored_on: Optional[datetime] = None
