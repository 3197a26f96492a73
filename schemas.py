"""
schemas.py
----------
RecordVerify - Patient-Verified Health Records - Pydantic Data Contracts
-------------------------------------------------------------------------
Pydantic v2 models that act as the data contract between the pipeline
stages, the record store and the HTTP layer.

Serialisation policy
--------------------
Python attributes are snake_case; the wire format (API responses, the JSON
stored in SQLite) is camelCase via ``alias_generator=to_camel``. Every model
accepts either spelling on input (``populate_by_name=True``).

Lifecycle ordering
------------------
``CALL_STATUS_RANK`` and ``PROCESSING_STATUS_RANK`` define the only allowed
direction of travel for the two status fields. ``is_forward_transition()`` is
the single check used by the record store to refuse regressions: a value may
be rewritten with itself or moved to a strictly higher rank, never sideways
between two terminal values and never backwards.

Stage results
-------------
``StageResult`` is the uniform shape returned by every fail-soft stage
(extraction, structuring, transcript analysis): the value the pipeline should
use plus ``source`` = ``"real"`` when the upstream service produced it or
``"mock"`` when a fallback was substituted.

Public API
----------
    DocumentType, ProcessingStatus, CallStatus   Closed enumerations.
    PageText, ExtractedData                      Extraction output.
    Correction, TranscriptAnalysis
    CallStart, CallStatusSnapshot                Call platform boundary shapes.
    VerificationCall, HealthRecord               Persisted record.
    UploadIntake                                 Upload boundary shape.
    StageResult                                  Ok/Degraded variant.
    is_forward_transition()                      Monotonic status check.

Project: RecordVerify - Patient-Verified Health Records
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SOURCE_REAL = "real"
SOURCE_MOCK = "mock"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class DocumentType(str, Enum):
    MEDICAL_REPORT = "Medical Report"
    PRESCRIPTION = "Prescription"
    LAB_RESULT = "Lab Result"
    VACCINATION_RECORD = "Vaccination Record"
    INSURANCE_DOCUMENT = "Insurance Document"
    CONSULTATION_NOTE = "Consultation Note"
    DISCHARGE_SUMMARY = "Discharge Summary"
    MEDICAL_BILL = "Medical Bill"
    OTHER = "Other"


class ProcessingStatus(str, Enum):
    UPLOADED = "uploaded"
    DOCUMENT_AI_COMPLETE = "document_ai_complete"
    VERIFICATION_INITIATED = "verification_initiated"
    VERIFICATION_ENDED = "verification_ended"
    VERIFICATION_COMPLETE = "verification_complete"
    PROCESSING_COMPLETE = "processing_complete"


class CallStatus(str, Enum):
    NOT_INITIATED = "not_initiated"
    REGISTERED = "registered"
    ONGOING = "ongoing"
    ENDED = "ended"
    ERROR = "error"


CALL_STATUS_RANK: Dict[str, int] = {
    CallStatus.NOT_INITIATED.value: 0,
    CallStatus.REGISTERED.value: 1,
    CallStatus.ONGOING.value: 2,
    CallStatus.ENDED.value: 3,
    CallStatus.ERROR.value: 3,
}

PROCESSING_STATUS_RANK: Dict[str, int] = {
    ProcessingStatus.UPLOADED.value: 0,
    ProcessingStatus.DOCUMENT_AI_COMPLETE.value: 1,
    ProcessingStatus.VERIFICATION_INITIATED.value: 2,
    ProcessingStatus.VERIFICATION_ENDED.value: 3,
    ProcessingStatus.PROCESSING_COMPLETE.value: 4,
    # A later manual verification may upgrade a processed record.
    ProcessingStatus.VERIFICATION_COMPLETE.value: 5,
}

TERMINAL_CALL_STATUSES = {CallStatus.ENDED.value, CallStatus.ERROR.value}
ACTIVE_CALL_STATUSES = {CallStatus.REGISTERED.value, CallStatus.ONGOING.value}


def is_forward_transition(current: Optional[str], new: str, ranks: Dict[str, int]) -> bool:
    """
    Return True if moving a status field from *current* to *new* is allowed.

    Args:
        current: Stored value (None/empty when never set).
        new:     Proposed value.
        ranks:   CALL_STATUS_RANK or PROCESSING_STATUS_RANK.

    Returns:
        bool: True for a no-op rewrite or a strictly higher rank. False for
            unknown values, backward moves and sideways moves between equal
            ranks (e.g. ended -> error).
    """
    if new not in ranks:
        return False
    if not current or current not in ranks:
        return True
    if new == current:
        return True
    return ranks[new] > ranks[current]


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Extraction output
# ---------------------------------------------------------------------------

class PageText(_CamelModel):
    page_number: int
    text: str = ""


class ExtractedData(_CamelModel):
    text: str = ""
    pages: List[PageText] = Field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)


# ---------------------------------------------------------------------------
# Verification call
# ---------------------------------------------------------------------------

class Correction(_CamelModel):
    """A patient-asserted fix discovered during the verification call."""
    field: str
    incorrect: Optional[Any] = None
    correct: Optional[Any] = None

    @field_validator("field", mode="before")
    @classmethod
    def require_field(cls, v: Any) -> str:
        raw = str(v).strip() if v is not None else ""
        if not raw:
            raise ValueError("correction field must not be empty.")
        return raw


class TranscriptAnalysis(_CamelModel):
    corrections: List[Correction] = Field(default_factory=list)
    additional_info: str = ""
    summary: str = ""
    verification_complete: bool = False


class CallStart(_CamelModel):
    call_id: str
    status: str = CallStatus.REGISTERED.value
    start_time: str
    raw: Dict[str, Any] = Field(default_factory=dict)


class CallStatusSnapshot(_CamelModel):
    call_id: str = ""
    status: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_seconds: Optional[float] = None
    transcript: Optional[str] = None
    transcript_object: Optional[List[Dict[str, Any]]] = None
    recording_url: Optional[str] = None
    call_analysis: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATUSES

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript) or bool(self.transcript_object)


class VerificationCall(_CamelModel):
    call_id: Optional[str] = None
    status: str = CallStatus.NOT_INITIATED.value
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    transcript: Optional[str] = None
    transcript_object: Optional[List[Dict[str, Any]]] = None
    recording_url: Optional[str] = None
    verification_complete: bool = False
    corrections: List[Dict[str, Any]] = Field(default_factory=list)
    additional_info: str = ""
    summary: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

class HealthRecord(_CamelModel):
    """One uploaded document and its full processing lineage."""
    id: str
    user_id: str
    title: str = "Untitled Health Record"
    description: str = ""
    document_type: DocumentType = DocumentType.MEDICAL_REPORT
    patient_name: str = ""
    patient_phone: str = ""
    file_url: Optional[str] = None
    extracted_data: Optional[ExtractedData] = None
    structured_data: Optional[Dict[str, Any]] = None
    processing_metadata: Dict[str, Any] = Field(default_factory=dict)
    verification_call: VerificationCall = Field(default_factory=VerificationCall)
    processing_status: ProcessingStatus = ProcessingStatus.UPLOADED
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Upload boundary
# ---------------------------------------------------------------------------

class UploadIntake(_CamelModel):
    """What the upload transport hands the pipeline once the file is on disk."""
    local_file_path: str
    original_file_name: str
    mime_type: str
    size_bytes: int = Field(ge=0)
    title: str = "Untitled Health Record"
    description: str = ""
    document_type: DocumentType = DocumentType.MEDICAL_REPORT
    patient_name: str = ""
    patient_phone: str = ""
    user_id: str

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v: Any) -> str:
        raw = str(v).strip() if v is not None else ""
        return raw or "Untitled Health Record"

    @field_validator("description", "patient_name", "patient_phone", mode="before")
    @classmethod
    def strip_optional(cls, v: Any) -> str:
        return str(v).strip() if v is not None else ""

    @field_validator("document_type", mode="before")
    @classmethod
    def default_document_type(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return DocumentType.MEDICAL_REPORT
        return v

    @property
    def has_phone(self) -> bool:
        return bool(self.patient_phone)


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------

class StageResult(BaseModel):
    """
    Ok/Degraded variant returned by every fail-soft stage.

    Attributes:
        value:  What the pipeline should use (real or fallback).
        source: "real" when the upstream produced it, "mock" for a fallback.
        error:  Human-readable reason for the degradation, None when real.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Any = None
    source: str = SOURCE_REAL
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: Any) -> "StageResult":
        return cls(value=value, source=SOURCE_REAL)

    @classmethod
    def degraded(cls, value: Any, error: str) -> "StageResult":
        return cls(value=value, source=SOURCE_MOCK, error=error)

    @property
    def is_degraded(self) -> bool:
        return self.source != SOURCE_REAL
