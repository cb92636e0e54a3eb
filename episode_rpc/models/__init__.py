"""Episode, approval and numbering data models."""
from .fhir import (
    Coding,
    CodeableConcept,
    Period,
    Reference,
)
from .episode import (
    ResourceKind,
    EpisodeStatus,
    EPISODE_STATUS_TRANSITIONS,
    DiagnosisRole,
    Diagnosis,
    StatusHistoryEntry,
    Episode,
    DiagnosticReport,
    ServiceRequest,
)
from .approval import (
    ApprovalStatus,
    Approval,
    ApprovalFilters,
    PageRequest,
    ApprovalPage,
)
from .context import ClientContext
from .numbering import FormatOptions, luhn_check_digit, mod11_check_digit
from .validation import RequestValidator

__all__ = [
    "Coding",
    "CodeableConcept",
    "Period",
    "Reference",
    "ResourceKind",
    "EpisodeStatus",
    "EPISODE_STATUS_TRANSITIONS",
    "DiagnosisRole",
    "Diagnosis",
    "StatusHistoryEntry",
    "Episode",
    "DiagnosticReport",
    "ServiceRequest",
    "ApprovalStatus",
    "Approval",
    "ApprovalFilters",
    "PageRequest",
    "ApprovalPage",
    "ClientContext",
    "FormatOptions",
    "luhn_check_digit",
    "mod11_check_digit",
    "RequestValidator",
]
