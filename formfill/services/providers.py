"""
Extraction Providers.

An ``LLMClient`` is one text-in/JSON-out model endpoint (OpenAI chat
completions or Gemini generateContent over httpx). An
``ExtractionProvider`` wraps a client with the extraction prompts and
turns the raw JSON into validated, normalized, grounded candidates.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from formfill.config import Settings
from formfill.errors import GroundingViolation, ProviderTransportError, SchemaViolation
from formfill.logging_config import get_logger, preview
from formfill.schemas.extraction import (
    CandidateValue,
    ExtractionRequest,
    FieldStatus,
    MissingReason,
)
from formfill.schemas.fields import FieldSpec, FieldType
from formfill.services import grounding, value_coercer
from formfill.services.prompts import (
    action_message,
    build_batch_prompt,
    build_single_field_prompt,
)
from formfill.services.retry import RetryPolicy

logger = get_logger(__name__)


# ── Transport ────────────────────────────────────────────────────


class LLMClient:
    """Base class for a JSON-mode chat model endpoint."""

    vendor = "llm"

    def __init__(
        self,
        model: str,
        retry: RetryPolicy,
        temperature: float = 0.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.retry = retry
        self.temperature = temperature
        self._transport = transport

    @property
    def model_identifier(self) -> str:
        return self.model

    async def complete_json(self, system: str, user: str) -> Any:
        """
        Run one prompt and return the parsed JSON body.

        Raises:
            ProviderTransportError: retries exhausted or non-retryable status.
            SchemaViolation: the model answered with something that is not JSON.
        """
        content = await self.retry.run(
            lambda: self._request(system, user),
            label=f"{self.vendor}:{self.model}",
        )
        try:
            return json.loads(_strip_code_fence(content))
        except (json.JSONDecodeError, TypeError) as e:
            raise SchemaViolation(f"{self.model} returned invalid JSON: {e}") from e

    async def _request(self, system: str, user: str) -> str:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        # Timeouts are enforced per attempt by the retry policy
        return httpx.AsyncClient(timeout=None, transport=self._transport)


class OpenAIChatClient(LLMClient):
    """OpenAI chat completions with ``response_format=json_object``."""

    vendor = "openai"

    def __init__(self, model: str, api_key: str, retry: RetryPolicy, base_url: str = "https://api.openai.com/v1",
                 **kwargs: Any) -> None:
        super().__init__(model, retry, **kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def _request(self, system: str, user: str) -> str:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    "response_format": {"type": "json_object"},
                    "temperature": self.temperature,
                },
            )
            response.raise_for_status()
            data = response.json()

        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderTransportError(f"unexpected OpenAI response shape: {e}") from e


class GeminiClient(LLMClient):
    """Google Gemini ``generateContent`` with a JSON response mime type."""

    vendor = "gemini"

    def __init__(self, model: str, api_key: str, retry: RetryPolicy,
                 base_url: str = "https://generativelanguage.googleapis.com/v1beta", **kwargs: Any) -> None:
        super().__init__(model, retry, **kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def _request(self, system: str, user: str) -> str:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json={
                    "systemInstruction": {"parts": [{"text": system}]},
                    "contents": [{"role": "user", "parts": [{"text": user}]}],
                    "generationConfig": {
                        "responseMimeType": "application/json",
                        "temperature": self.temperature,
                    },
                },
            )
            response.raise_for_status()
            data = response.json()

        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in parts)
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderTransportError(f"unexpected Gemini response shape: {e}") from e


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0]
    return text.strip()


def create_client(vendor: str, model: str, settings: Settings, **kwargs: Any) -> LLMClient:
    """Build a client for ``vendor`` from settings."""
    retry = RetryPolicy.from_settings(settings)
    if vendor == "openai":
        return OpenAIChatClient(model, settings.openai_api_key, retry, base_url=settings.openai_base_url, **kwargs)
    if vendor == "gemini":
        return GeminiClient(model, settings.gemini_api_key, retry, base_url=settings.gemini_base_url, **kwargs)
    raise ValueError(f"Unsupported LLM vendor: {vendor}")


# ── Model output parsing ─────────────────────────────────────────


class ModelFieldOutput(BaseModel):
    """Shape of one field entry in a model response."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    value: Any = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    status: Optional[FieldStatus] = None
    reason: Optional[MissingReason] = None
    action_message: Optional[str] = Field(default=None, alias="actionMessage")
    evidence: Optional[str] = None

    @field_validator("evidence", mode="before")
    @classmethod
    def _evidence_text(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return v.get("quote") or v.get("transcriptSnippet") or v.get("transcript_snippet")
        return v

    @field_validator("reason", mode="before")
    @classmethod
    def _known_reason(cls, v: Any) -> Any:
        valid = {r.value for r in MissingReason}
        return v if isinstance(v, str) and v in valid else None


def structurally_valid(raw: Any, spec: FieldSpec) -> bool:
    """Check the JSON type of a raw value; no coercion happens here."""
    if raw is None:
        return True
    if spec.type == FieldType.NUMBER.value:
        return isinstance(raw, (int, float)) and not isinstance(raw, bool)
    if spec.type == FieldType.MULTI_VALUE.value:
        return isinstance(raw, str) or (
            isinstance(raw, list) and all(isinstance(x, str) for x in raw)
        )
    if spec.type == FieldType.DATE.value:
        return isinstance(raw, str) and bool(value_coercer.ISO_DATE_RE.match(raw.strip()))
    return isinstance(raw, str)


def to_candidate(
    entry: Any,
    spec: FieldSpec,
    request: ExtractionRequest,
    provider: Optional[str] = None,
) -> CandidateValue:
    """
    Turn one raw field entry into a candidate.

    Structural failures and ungrounded evidence drop the value to None;
    nothing in here raises.
    """
    try:
        return _parse_entry(entry, spec, request, provider)
    except Exception as e:
        logger.warning("malformed_field_entry", field=spec.id, provider=provider, error=str(e))
        return CandidateValue.absent(MissingReason.FORMAT_MISMATCH, provider, action_message(spec, "format_mismatch"))


def _parse_entry(
    entry: Any,
    spec: FieldSpec,
    request: ExtractionRequest,
    provider: Optional[str],
) -> CandidateValue:
    if entry is None:
        return CandidateValue.absent(provider=provider, action_message=action_message(spec, None))
    if not isinstance(entry, dict):
        entry = {"value": entry}

    try:
        out = ModelFieldOutput.model_validate(entry)
    except ValidationError as e:
        logger.warning("schema_violation", field=spec.id, provider=provider, error=str(e))
        return CandidateValue.absent(MissingReason.FORMAT_MISMATCH, provider, action_message(spec, "format_mismatch"))

    if out.status == FieldStatus.CONFLICT:
        return CandidateValue(
            value=None,
            confidence=out.confidence,
            status=FieldStatus.CONFLICT,
            reason=MissingReason.CONTRADICTORY_EVIDENCE,
            action_message=out.action_message or action_message(spec, "contradictory_evidence"),
            provider=provider,
        )

    if out.value is None:
        reason = out.reason or MissingReason.INFO_NOT_FOUND
        return CandidateValue(
            value=None,
            confidence=out.confidence if out.confidence is not None else 0.0,
            status=FieldStatus.ABSENT,
            reason=reason,
            action_message=out.action_message or action_message(spec, reason.value),
            provider=provider,
        )

    if not structurally_valid(out.value, spec):
        logger.info("structural_mismatch", field=spec.id, provider=provider, raw_type=type(out.value).__name__)
        return CandidateValue.absent(MissingReason.FORMAT_MISMATCH, provider, action_message(spec, "format_mismatch"))

    value = value_coercer.normalize(out.value, spec)
    if value is None:
        return CandidateValue.absent(MissingReason.FORMAT_MISMATCH, provider, action_message(spec, "format_mismatch"))

    try:
        span = check_evidence(out.evidence, request)
    except GroundingViolation as e:
        logger.info("grounding_violation", field=spec.id, provider=provider, snippet=preview(out.evidence), error=str(e))
        return CandidateValue.absent(MissingReason.INFO_NOT_FOUND, provider, action_message(spec, None))

    return CandidateValue(
        value=value,
        confidence=out.confidence,
        evidence_snippet=out.evidence if span else None,
        evidence_start=span[0] if span else None,
        evidence_end=span[1] if span else None,
        status=FieldStatus.EXTRACTED,
        provider=provider,
    )


def check_evidence(snippet: Optional[str], request: ExtractionRequest) -> Optional[tuple[int, int]]:
    """
    Locate the evidence snippet in the NEW transcript.

    Raises:
        GroundingViolation: the snippet is absent from the new transcript, or
            missing while the request requires evidence.
    """
    if not grounding.clean_snippet(snippet):
        if request.options.require_evidence:
            raise GroundingViolation("evidence required but none given")
        return None
    span = grounding.locate(snippet, request.new_text)
    if span is None:
        raise GroundingViolation(f"snippet not found in new transcript: {snippet!r}")
    return span


# ── Provider ─────────────────────────────────────────────────────


class ExtractionProvider:
    """One model producing candidates for one or many fields."""

    def __init__(self, client: LLMClient, name: Optional[str] = None) -> None:
        self.client = client
        self.name = name or client.vendor

    @property
    def model_identifier(self) -> str:
        return self.client.model_identifier

    async def extract(
        self,
        request: ExtractionRequest,
        fields: Union[FieldSpec, list[FieldSpec]],
    ) -> dict[str, CandidateValue]:
        """Batch prompt for a list of fields, narrow prompt for a single field."""
        if isinstance(fields, list):
            if len(fields) == 1:
                return await self.extract_field(request, fields[0])
            return await self.extract_batch(request, fields)
        return await self.extract_field(request, fields)

    async def extract_batch(self, request: ExtractionRequest, fields: list[FieldSpec]) -> dict[str, CandidateValue]:
        system, user = build_batch_prompt(request, fields)
        raw = await self.client.complete_json(system, user)
        if not isinstance(raw, dict):
            raise SchemaViolation(f"{self.name} returned {type(raw).__name__}, expected an object")
        if set(raw) == {"fields"} and isinstance(raw["fields"], dict):
            raw = raw["fields"]

        candidates: dict[str, CandidateValue] = {}
        for spec in fields:
            if spec.id in raw:
                candidates[spec.id] = to_candidate(raw[spec.id], spec, request, self.name)
        return candidates

    async def extract_field(self, request: ExtractionRequest, spec: FieldSpec) -> dict[str, CandidateValue]:
        system, user = build_single_field_prompt(request, spec)
        raw = await self.client.complete_json(system, user)
        if isinstance(raw, dict) and "value" not in raw and isinstance(raw.get(spec.id), dict):
            raw = raw[spec.id]
        return {spec.id: to_candidate(raw, spec, request, self.name)}
