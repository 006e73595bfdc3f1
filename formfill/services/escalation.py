"""
Escalation Orchestrator.

Runs the initial all-fields pass, then re-asks the model about each
field that came back missing or below its confidence threshold with a
narrow single-field prompt. Every field may be escalated at most
``max_escalations_per_field`` times, and the whole request at most
``max_escalations_per_field * len(fields)`` times.

Field lifecycle: unfilled -> proposed -> accepted, or
unfilled -> proposed -> escalated -> accepted.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from formfill.errors import ProviderTransportError, SchemaViolation
from formfill.logging_config import get_logger
from formfill.schemas.extraction import CandidateValue, ExtractionRequest, FieldStatus, MissingReason
from formfill.schemas.fields import FieldSpec, Priority
from formfill.services.prompts import action_message
from formfill.services.providers import ExtractionProvider

logger = get_logger(__name__)

InitialPass = Callable[[ExtractionRequest], Awaitable[dict[str, CandidateValue]]]


@dataclass
class EscalationState:
    """
    Progress of one request, updated in place.

    The engine keeps a reference so that whatever was accepted before a
    caller deadline is still applied.
    """

    candidates: dict[str, CandidateValue] = field(default_factory=dict)
    escalations_used: int = 0
    timings: dict[str, float] = field(default_factory=dict)


def _confidence(candidate: CandidateValue) -> float:
    return candidate.confidence if candidate.confidence is not None else 0.0


def needs_escalation(candidate: CandidateValue, spec: FieldSpec, threshold: float) -> bool:
    if candidate.status == FieldStatus.EXTRACTED:
        return _confidence(candidate) < threshold
    return spec.required or spec.priority == Priority.HIGH


def is_improvement(new: CandidateValue, prior: CandidateValue) -> bool:
    if new.status == FieldStatus.EXTRACTED and _confidence(new) > _confidence(prior):
        return True
    return prior.status != FieldStatus.EXTRACTED and new.status != FieldStatus.ABSENT


def completeness(request: ExtractionRequest, candidates: dict[str, CandidateValue]) -> float:
    """Share of required fields that ended up extracted; 1.0 when nothing is required."""
    required = [f for f in request.fields if f.required]
    if not required:
        return 1.0
    done = sum(
        1 for f in required
        if f.id in candidates and candidates[f.id].status == FieldStatus.EXTRACTED
    )
    return done / len(required)


def missing_required_issues(request: ExtractionRequest, candidates: dict[str, CandidateValue]) -> list[str]:
    issues = []
    for f in request.fields:
        if not f.required:
            continue
        c = candidates.get(f.id)
        if c is not None and c.status == FieldStatus.EXTRACTED:
            continue
        if c is None:
            detail = FieldStatus.ABSENT.value
        else:
            detail = c.reason.value if c.reason else c.status.value
        issues.append(f"Missing required field: {f.label} ({detail})")
    return issues


class EscalationOrchestrator:
    """Initial pass plus bounded single-field escalation."""

    def __init__(self, provider: ExtractionProvider) -> None:
        self.provider = provider

    async def run(
        self,
        request: ExtractionRequest,
        initial_pass: InitialPass,
        state: EscalationState | None = None,
    ) -> EscalationState:
        state = state if state is not None else EscalationState()

        started = time.perf_counter()
        initial = await initial_pass(request)
        for spec in request.fields:
            candidate = initial.get(spec.id)
            if candidate is None:
                candidate = CandidateValue.absent(
                    MissingReason.INFO_NOT_FOUND, action_message=action_message(spec, None),
                )
            state.candidates[spec.id] = candidate
        state.timings["initial_pass_ms"] = _elapsed_ms(started)

        per_field = request.options.max_escalations_per_field
        if per_field <= 0:
            return state

        flagged = [
            spec for spec in request.fields
            if not request.current(spec.id).locked
            and needs_escalation(state.candidates[spec.id], spec, request.threshold_for(spec))
        ]
        if not flagged:
            return state

        cap = per_field * len(request.fields)
        logger.info("escalation_started", flagged=[f.id for f in flagged], budget=cap)

        started = time.perf_counter()
        await asyncio.gather(*(self._escalate(request, spec, state, cap) for spec in flagged))
        state.timings["escalation_ms"] = _elapsed_ms(started)

        logger.info("escalation_complete", escalations_used=state.escalations_used)
        return state

    async def _escalate(self, request: ExtractionRequest, spec: FieldSpec, state: EscalationState, cap: int) -> None:
        threshold = request.threshold_for(spec)
        attempts = 0
        while attempts < request.options.max_escalations_per_field:
            # Reserved before the await; every flagged field shares this counter
            if state.escalations_used >= cap:
                logger.info("escalation_budget_exhausted", field=spec.id)
                return
            attempts += 1
            state.escalations_used += 1

            try:
                result = await self.provider.extract_field(request, spec)
            except (ProviderTransportError, SchemaViolation) as e:
                logger.warning("escalation_failed", field=spec.id, attempt=attempts, error=str(e))
                return

            prior = state.candidates[spec.id]
            new = result.get(spec.id)
            if new is not None and is_improvement(new, prior):
                state.candidates[spec.id] = new
                logger.info(
                    "escalation_accepted",
                    field=spec.id,
                    attempt=attempts,
                    status=new.status.value,
                    confidence=new.confidence,
                )

            current = state.candidates[spec.id]
            if current.status != FieldStatus.EXTRACTED or _confidence(current) >= threshold:
                return


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)
