from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from riskwatch.asr.models import TranscriptFragment

FlagType = Literal[
    "suicide_risk",
    "self_harm",
    "substance_abuse",
    "medication_noncompliance",
    "psychosis_indicators",
    "trauma_disclosure",
    "abuse_disclosure",
    "homicidal_ideation",
    "severe_depression",
    "mania_indicators",
    "dissociation",
    "eating_disorder",
    "significant_stressor",
]

FLAG_TYPES: tuple[str, ...] = (
    "suicide_risk",
    "self_harm",
    "substance_abuse",
    "medication_noncompliance",
    "psychosis_indicators",
    "trauma_disclosure",
    "abuse_disclosure",
    "homicidal_ideation",
    "severe_depression",
    "mania_indicators",
    "dissociation",
    "eating_disorder",
    "significant_stressor",
)

Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_RANK: Dict[str, int] = {"low": 1, "medium": 2, "high": 3, "critical": 4}

FlagSource = Literal["live", "batch"]

SessionState = Literal["idle", "recording", "paused", "stopping", "completed", "failed"]

TERMINAL_SESSION_STATES = frozenset({"completed", "failed"})

JobType = Literal["transcript_processing", "document_generation"]

JobStatus = Literal["pending", "processing", "completed", "failed"]

TranscriptStatus = Literal["live_partial", "live_complete", "processing", "completed", "failed"]


class RiskFlag(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    type: FlagType
    severity: Severity
    confidence: float = Field(ge=0.0, le=1.0)
    matched_text: str
    context: str = ""
    session_relative_timestamp_ms: int = Field(default=0, ge=0)
    speaker_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def dedup_key(self) -> tuple[str, str]:
        return (self.type, self.matched_text[:50])


class StoredFlag(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    source: FlagSource
    flag: RiskFlag
    stored_at: str
    superseded_by: Optional[str] = None


class TranscriptRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    raw_text: str = ""
    fragments: List[TranscriptFragment] = Field(default_factory=list)
    processing_status: TranscriptStatus = "live_partial"
    summary: Dict[str, Any] = Field(default_factory=dict)
    medical_terms: List[str] = Field(default_factory=list)
    created_at: str
    updated_at: str
    processed_at: Optional[str] = None


class BatchJob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    session_id: str
    team_id: str = ""
    type: JobType
    attempts: int = Field(default=0, ge=0)
    status: JobStatus = "pending"
    input: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str
    updated_at: str
    next_attempt_at: Optional[str] = None


class JobStatusView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    session_id: str
    type: JobType
    status: JobStatus
    attempts: int
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class SessionStatusView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    state: SessionState
    fragments_final: int = 0
    fragments_interim: int = 0
    flags_total: int = 0
    critical_flags: int = 0
    audio_bytes_captured: int = 0
    subscribers: int = 0
    job_id: Optional[str] = None
    error: Optional[str] = None
    updated_at: str = ""


AuditEventType = Literal[
    "SESSION_STARTED",
    "SESSION_PAUSED",
    "SESSION_RESUMED",
    "SESSION_STOPPED",
    "SESSION_FAILED",
    "CRITICAL_FLAG",
    "TRANSCRIPT_PERSISTED",
    "JOB_ENQUEUED",
    "JOB_RETRY_SCHEDULED",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    session_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None
