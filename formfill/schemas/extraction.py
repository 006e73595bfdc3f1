"""
Data models for extraction requests, candidates and filled results.
"""

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_serializer, model_validator

from formfill.errors import RequestValidationError
from formfill.schemas.exemplar import Exemplar
from formfill.schemas.fields import CurrentFieldValue, FieldSpec, normalize_field_payload

Scalar = Union[str, int, float, None]


class FieldStatus(str, Enum):
    EXTRACTED = "extracted"
    ABSENT = "absent"
    CONFLICT = "conflict"


class MissingReason(str, Enum):
    INFO_NOT_FOUND = "info_not_found"
    CONTRADICTORY_EVIDENCE = "contradictory_evidence"
    FORMAT_MISMATCH = "format_mismatch"
    LOW_CONFIDENCE = "low_confidence"
    NOT_APPLICABLE = "not_applicable"


class Granularity(str, Enum):
    BATCH = "batch"
    PER_FIELD = "per_field"


class Reconciliation(str, Enum):
    NONE = "none"
    VERIFIER = "verifier"


class CandidateValue(BaseModel):
    """One provider's (validated, normalized) proposal for a field."""
    value: Scalar = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    evidence_snippet: Optional[str] = None
    evidence_start: Optional[int] = None
    evidence_end: Optional[int] = None
    status: FieldStatus = FieldStatus.ABSENT
    reason: Optional[MissingReason] = None
    action_message: Optional[str] = None
    provider: Optional[str] = None

    @property
    def is_extracted(self) -> bool:
        return self.status == FieldStatus.EXTRACTED

    @classmethod
    def absent(
        cls,
        reason: MissingReason = MissingReason.INFO_NOT_FOUND,
        provider: Optional[str] = None,
        action_message: Optional[str] = None,
    ) -> "CandidateValue":
        return cls(
            value=None,
            confidence=0.0,
            status=FieldStatus.ABSENT,
            reason=reason,
            provider=provider,
            action_message=action_message,
        )


class Contradiction(BaseModel):
    """Set by the quality pass when the transcript clearly conflicts with a value."""
    reason: str
    quote: str


class FilledField(BaseModel):
    """Final per-field output handed back to the caller."""
    value: Scalar = None
    changed: bool = False
    previous_value: Scalar = None  # serialized only when changed
    source: Literal["user", "ai"] = "ai"
    confidence: Optional[float] = None
    evidence_snippet: Optional[str] = None
    evidence_start: Optional[int] = None
    evidence_end: Optional[int] = None
    contradiction: Optional[Contradiction] = None
    status: Optional[FieldStatus] = None

    @model_serializer(mode="wrap")
    def _previous_value_iff_changed(self, handler: Any) -> dict[str, Any]:
        data = handler(self)
        if self.changed:
            data["previous_value"] = self.previous_value
        else:
            data.pop("previous_value", None)
        return data


class ExtractionOptions(BaseModel):
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_escalations_per_field: int = Field(default=1, ge=0, le=5)
    require_evidence: bool = False
    preserve_user_edits: bool = True
    fill_only_empty: bool = False
    rejection_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    deadline_seconds: Optional[float] = Field(default=None, gt=0)


class PipelineConfig(BaseModel):
    """Which extraction strategy to run: providers x granularity x verification."""
    provider_count: int = Field(default=1, ge=1)
    granularity: Granularity = Granularity.BATCH
    reconciliation: Reconciliation = Reconciliation.NONE


class ExtractionRequest(BaseModel):
    """Everything one extraction call needs. Created and consumed within the call."""
    old_transcript: str = ""  # context only, never a source of new values
    new_transcript: str
    fields: list[FieldSpec] = Field(min_length=1)
    current_values: dict[str, CurrentFieldValue] = Field(default_factory=dict)
    few_shots: list[Exemplar] = Field(default_factory=list)
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)
    pipeline: Optional[PipelineConfig] = None
    domain_id: Optional[str] = None
    today: Optional[str] = None
    lang: str = "en"  # prompt language; "de*" selects German

    @field_validator("new_transcript")
    @classmethod
    def _require_new_transcript(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("new_transcript is required")
        return v

    @field_validator("fields", mode="before")
    @classmethod
    def _legacy_field_types(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [normalize_field_payload(item) for item in v]
        return v

    @model_validator(mode="after")
    def _unique_field_ids(self) -> "ExtractionRequest":
        seen: set[str] = set()
        for f in self.fields:
            if f.id in seen:
                raise ValueError(f"duplicate field id: {f.id}")
            seen.add(f.id)
        return self

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExtractionRequest":
        """Validate a raw request, raising RequestValidationError on bad shape."""
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise RequestValidationError(str(e)) from e

    # ── Transcript helpers ───────────────────────────────────────

    @property
    def old_text(self) -> str:
        return self.old_transcript.strip()

    @property
    def new_text(self) -> str:
        return self.new_transcript.strip()

    @property
    def combined_transcript(self) -> str:
        return f"{self.old_text}\n{self.new_text}" if self.old_text else self.new_text

    def field(self, field_id: str) -> FieldSpec:
        for f in self.fields:
            if f.id == field_id:
                return f
        raise RequestValidationError(f"unknown field id: {field_id}")

    def current(self, field_id: str) -> CurrentFieldValue:
        return self.current_values.get(field_id) or CurrentFieldValue()

    def threshold_for(self, spec: FieldSpec) -> float:
        if spec.confidence_threshold is not None:
            return spec.confidence_threshold
        return self.options.confidence_threshold


class TranscriptEcho(BaseModel):
    old: str
    new: str
    combined: str


class ExtractionResult(BaseModel):
    """Full result of one extract-all-fields call."""
    filled: dict[str, FilledField]
    model_identifier: str
    transcript_echo: TranscriptEcho
    completeness: float = Field(default=1.0, ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    escalations_used: int = 0
    response_time_ms: float = 0.0
    timings: dict[str, float] = Field(default_factory=dict)
