"""
Ensemble Reconciler.

Arbitrates between two or more providers' candidates for every field in
one judge call, and runs the quality pass that scores a single
extractor's accepted values against the transcript.

Decisions per field: adopt a named provider, ``merge`` (multi-value
fields only) or ``keep_current``. The judge's answer is validated
field by field; whatever is missing or illegal falls back to the
confidence heuristic.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from formfill.errors import ProviderTransportError, ReconcilerFailure, SchemaViolation
from formfill.logging_config import get_logger
from formfill.schemas.extraction import (
    CandidateValue,
    Contradiction,
    ExtractionRequest,
    FieldStatus,
    MissingReason,
)
from formfill.schemas.fields import FieldSpec, FieldType
from formfill.services import grounding
from formfill.services.prompts import action_message, build_quality_prompt, build_reconcile_prompt
from formfill.services.providers import LLMClient
from formfill.services.value_coercer import MULTI_VALUE_JOINER, split_items

logger = get_logger(__name__)

MERGE = "merge"
KEEP_CURRENT = "keep_current"

# Long-form labels collapsed to their canonical short form during merges.
DEFAULT_ALIASES = {
    "FARABUNDO MARTI NATIONAL LIBERATION FRONT": "FMLN",
    "MANUEL RODRIGUEZ PATRIOTIC FRONT": "FPMR",
}

_PARENTHESIZED_RE = re.compile(r"\s*\(.*?\)\s*")


class ReconcileDecision(BaseModel):
    decision: str
    reason: Optional[str] = None
    origin: Literal["judge", "heuristic", "rule"] = "judge"


class ReconcileOutcome(BaseModel):
    """Accepted candidate and the decision behind it, per field."""
    accepted: dict[str, CandidateValue]
    decisions: dict[str, ReconcileDecision]


class _JudgeEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    decision: str
    reason: Optional[str] = None


class QualityEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    quote: Optional[str] = None
    contradiction: Optional[Contradiction] = None


# ── Merge helpers ────────────────────────────────────────────────


def canonical_item(item: str, aliases: dict[str, str], strip_qualifiers: bool = False) -> str:
    """Map known long forms to their alias, optionally dropping parenthesized qualifiers first."""
    text = _PARENTHESIZED_RE.sub(" ", item).strip() if strip_qualifiers else item.strip()
    return aliases.get(text.upper(), text)


def merge_values(
    values: list[Any],
    aliases: Optional[dict[str, str]] = None,
    strip_qualifiers: bool = False,
) -> Optional[str]:
    """
    Union of every value's items in first-seen order.

    Duplicates are detected case-insensitively after alias normalization;
    the first spelling wins.
    """
    aliases = DEFAULT_ALIASES if aliases is None else aliases
    seen: set[str] = set()
    merged: list[str] = []
    for value in values:
        for item in split_items(value):
            canon = canonical_item(item, aliases, strip_qualifiers)
            key = canon.casefold()
            if canon and key not in seen:
                seen.add(key)
                merged.append(canon)
    return MULTI_VALUE_JOINER.join(merged) if merged else None


def is_usable(candidate: Optional[CandidateValue], rejection_threshold: float) -> bool:
    if candidate is None or not candidate.is_extracted or candidate.value is None:
        return False
    return candidate.confidence is None or candidate.confidence >= rejection_threshold


def heuristic_pick(candidates: list[CandidateValue], rejection_threshold: float) -> Optional[CandidateValue]:
    """Highest self-reported confidence among usable candidates; ties go to the earlier one."""
    usable = [c for c in candidates if is_usable(c, rejection_threshold)]
    if not usable:
        return None
    return max(usable, key=lambda c: c.confidence if c.confidence is not None else 0.0)


def _resolve_decision(raw: str, provider_names: Iterable[str]) -> str:
    """Provider names and keywords match regardless of case."""
    text = raw.strip()
    for name in provider_names:
        if name.casefold() == text.casefold():
            return name
    return text.lower()


# ── Reconciler ───────────────────────────────────────────────────


class EnsembleReconciler:
    """Judge-backed arbitration between providers, plus the quality pass."""

    def __init__(
        self,
        judge: Optional[LLMClient] = None,
        aliases: Optional[dict[str, str]] = None,
        strip_qualifiers: bool = False,
    ) -> None:
        self.judge = judge
        self.aliases = DEFAULT_ALIASES if aliases is None else aliases
        self.strip_qualifiers = strip_qualifiers

    async def reconcile(
        self,
        request: ExtractionRequest,
        candidates: dict[str, dict[str, CandidateValue]],
        provider_names: Optional[list[str]] = None,
    ) -> ReconcileOutcome:
        """
        Decide every field from all providers' candidates.

        ``candidates`` maps provider name -> field id -> candidate and must be
        complete before this is called; the judge sees the whole field set at
        once.
        """
        names = provider_names or list(candidates)
        threshold = request.options.rejection_threshold

        contested: list[FieldSpec] = []
        accepted: dict[str, CandidateValue] = {}
        decisions: dict[str, ReconcileDecision] = {}

        for spec in request.fields:
            per_provider = [candidates.get(p, {}).get(spec.id) for p in names]
            if request.current(spec.id).locked:
                accepted[spec.id] = self._keep_current(spec, per_provider)
                decisions[spec.id] = ReconcileDecision(decision=KEEP_CURRENT, reason="locked", origin="rule")
            elif not any(is_usable(c, threshold) for c in per_provider):
                accepted[spec.id] = self._keep_current(spec, per_provider)
                decisions[spec.id] = ReconcileDecision(
                    decision=KEEP_CURRENT, reason="no usable candidate", origin="rule",
                )
            else:
                contested.append(spec)

        if not contested:
            return ReconcileOutcome(accepted=accepted, decisions=decisions)

        try:
            judged = await self._judge(request, candidates, names)
        except ReconcilerFailure as e:
            logger.warning("reconciler_fallback", fields=len(contested), error=str(e))
            judged = {}

        for spec in contested:
            per_provider = {p: candidates.get(p, {}).get(spec.id) for p in names}
            entry = judged.get(spec.id)
            candidate, decision = self._apply_decision(spec, entry, per_provider, request)
            accepted[spec.id] = candidate
            decisions[spec.id] = decision

        logger.info(
            "reconcile_complete",
            fields=len(request.fields),
            contested=len(contested),
            judged=sum(1 for d in decisions.values() if d.origin == "judge"),
            merged=sum(1 for d in decisions.values() if d.decision == MERGE),
        )
        return ReconcileOutcome(accepted=accepted, decisions=decisions)

    async def _judge(
        self,
        request: ExtractionRequest,
        candidates: dict[str, dict[str, CandidateValue]],
        names: list[str],
    ) -> dict[str, _JudgeEntry]:
        if self.judge is None:
            raise ReconcilerFailure("no judge configured")

        system, user = build_reconcile_prompt(request, candidates, names)
        try:
            raw = await self.judge.complete_json(system, user)
        except (ProviderTransportError, SchemaViolation) as e:
            raise ReconcilerFailure(str(e)) from e

        if isinstance(raw, dict) and set(raw) == {"decisions"} and isinstance(raw["decisions"], dict):
            raw = raw["decisions"]
        if not isinstance(raw, dict):
            raise ReconcilerFailure(f"judge returned {type(raw).__name__}, expected an object")

        judged: dict[str, _JudgeEntry] = {}
        for field_id, entry in raw.items():
            if isinstance(entry, str):
                entry = {"decision": entry}
            try:
                judged[field_id] = _JudgeEntry.model_validate(entry)
            except ValidationError:
                logger.info("judge_entry_invalid", field=field_id)
        return judged

    def _apply_decision(
        self,
        spec: FieldSpec,
        entry: Optional[_JudgeEntry],
        per_provider: dict[str, Optional[CandidateValue]],
        request: ExtractionRequest,
    ) -> tuple[CandidateValue, ReconcileDecision]:
        threshold = request.options.rejection_threshold
        decision = _resolve_decision(entry.decision, per_provider) if entry else None
        reason = entry.reason if entry else None

        if decision == KEEP_CURRENT:
            return (
                self._keep_current(spec, list(per_provider.values())),
                ReconcileDecision(decision=KEEP_CURRENT, reason=reason),
            )

        if decision == MERGE:
            if spec.type == FieldType.MULTI_VALUE.value:
                merged = self._merge(list(per_provider.values()), threshold)
                if merged is not None:
                    return merged, ReconcileDecision(decision=MERGE, reason=reason)
            else:
                logger.info("illegal_merge_rejected", field=spec.id, type=spec.type)

        elif decision in per_provider and is_usable(per_provider[decision], threshold):
            return per_provider[decision], ReconcileDecision(decision=decision, reason=reason)

        return self._heuristic(spec, per_provider, threshold)

    def _heuristic(
        self,
        spec: FieldSpec,
        per_provider: dict[str, Optional[CandidateValue]],
        threshold: float,
    ) -> tuple[CandidateValue, ReconcileDecision]:
        names = list(per_provider)
        ordered = [c for c in per_provider.values() if c is not None]
        pick = heuristic_pick(ordered, threshold)
        if pick is None:
            return (
                self._keep_current(spec, ordered),
                ReconcileDecision(decision=KEEP_CURRENT, reason="no usable candidate", origin="heuristic"),
            )
        chosen = next(n for n in names if per_provider[n] is pick)
        return pick, ReconcileDecision(decision=chosen, reason="higher confidence", origin="heuristic")

    def _merge(self, candidates: list[Optional[CandidateValue]], threshold: float) -> Optional[CandidateValue]:
        usable = [c for c in candidates if is_usable(c, threshold)]
        value = merge_values([c.value for c in usable], self.aliases, self.strip_qualifiers)
        if value is None:
            return None
        confidences = [c.confidence for c in usable if c.confidence is not None]
        evidence = next((c for c in usable if c.evidence_snippet), None)
        return CandidateValue(
            value=value,
            confidence=max(confidences) if confidences else None,
            evidence_snippet=evidence.evidence_snippet if evidence else None,
            evidence_start=evidence.evidence_start if evidence else None,
            evidence_end=evidence.evidence_end if evidence else None,
            status=FieldStatus.EXTRACTED,
            provider=MERGE,
        )

    @staticmethod
    def _keep_current(spec: FieldSpec, candidates: list[Optional[CandidateValue]]) -> CandidateValue:
        proposed = [c for c in candidates if c is not None and c.value is not None]
        if proposed:
            return CandidateValue(
                value=None,
                status=FieldStatus.CONFLICT,
                reason=MissingReason.CONTRADICTORY_EVIDENCE,
                action_message=action_message(spec, MissingReason.CONTRADICTORY_EVIDENCE.value),
            )
        reasons = [c.reason for c in candidates if c is not None and c.reason is not None]
        return CandidateValue.absent(
            reasons[0] if reasons else MissingReason.INFO_NOT_FOUND,
            action_message=action_message(spec, None),
        )

    # ── Quality pass ─────────────────────────────────────────────

    async def verify(
        self,
        request: ExtractionRequest,
        accepted: dict[str, CandidateValue],
    ) -> dict[str, QualityEntry]:
        """
        Score one extractor's accepted values against the transcript.

        Returns per-field confidence and, only where the quoted conflicting
        text really occurs in the transcript and the value is non-null, a
        contradiction. Any failure returns an empty map.
        """
        scored = {fid: c for fid, c in accepted.items() if c.value is not None}
        if self.judge is None or not scored:
            return {}

        system, user = build_quality_prompt(request, scored)
        try:
            raw = await self.judge.complete_json(system, user)
        except (ProviderTransportError, SchemaViolation) as e:
            logger.warning("quality_pass_failed", error=str(e))
            return {}
        if not isinstance(raw, dict):
            logger.warning("quality_pass_failed", error=f"unexpected {type(raw).__name__}")
            return {}

        transcript = request.combined_transcript
        results: dict[str, QualityEntry] = {}
        for field_id, entry in raw.items():
            if field_id not in scored or not isinstance(entry, dict):
                continue
            try:
                quality = QualityEntry.model_validate(entry)
            except ValidationError:
                logger.info("quality_entry_invalid", field=field_id)
                continue
            if quality.contradiction and not grounding.is_grounded(quality.contradiction.quote, transcript):
                logger.info("ungrounded_contradiction_dropped", field=field_id)
                quality.contradiction = None
            results[field_id] = quality

        logger.info(
            "quality_pass_complete",
            scored=len(results),
            contradictions=sum(1 for q in results.values() if q.contradiction),
        )
        return results
