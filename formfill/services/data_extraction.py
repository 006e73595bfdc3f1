"""
Form-Fill Extraction Engine.

Entry point for extracting form values from a transcript. Wires the
stages together:

    exemplar retrieval -> provider pass(es) -> reconciliation / quality pass
    -> escalation -> overwrite policy -> result

Every field requested comes back in ``filled``; degraded fields keep
their current value. Only ``RequestValidationError`` reaches the caller.
"""

from __future__ import annotations

import asyncio
import time
from functools import lru_cache
from typing import Any, Optional, Union

from formfill.config import Settings, get_settings
from formfill.errors import RequestValidationError
from formfill.logging_config import get_logger, preview, request_scope
from formfill.schemas.extraction import (
    CandidateValue,
    Contradiction,
    ExtractionOptions,
    ExtractionRequest,
    ExtractionResult,
    FilledField,
    Granularity,
    PipelineConfig,
    Reconciliation,
    TranscriptEcho,
)
from formfill.services import overwrite_policy
from formfill.services.escalation import (
    EscalationOrchestrator,
    EscalationState,
    completeness,
    missing_required_issues,
)
from formfill.services.exemplar_retriever import ExemplarRetriever, create_retriever
from formfill.services.extractor import SingleProviderExtractor
from formfill.services.providers import ExtractionProvider, create_client
from formfill.services.reconciler import EnsembleReconciler

logger = get_logger(__name__)

RequestLike = Union[ExtractionRequest, dict[str, Any]]


class FormFillEngine:
    """
    Stateless extraction engine; one instance can serve concurrent requests.

    Args:
        providers: Extraction providers in preference order. The first one
            also runs escalations.
        retriever: Optional exemplar retriever for few-shot grounding.
        reconciler: Judge-backed reconciler used when the pipeline asks for
            a verifier. Without one, multi-provider runs use the confidence
            heuristic.
        settings: Pipeline and policy defaults.
    """

    def __init__(
        self,
        providers: list[ExtractionProvider],
        retriever: Optional[ExemplarRetriever] = None,
        reconciler: Optional[EnsembleReconciler] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if not providers:
            raise ValueError("at least one extraction provider is required")
        self.providers = providers
        self.retriever = retriever
        self.reconciler = reconciler or EnsembleReconciler()
        self.settings = settings or get_settings()

    # ── Public API ───────────────────────────────────────────────

    async def extract_all_fields(self, request: RequestLike) -> ExtractionResult:
        """
        Fill every field of the request.

        Raises:
            RequestValidationError: the request is malformed. Raised before
                any model call.
        """
        request = self._prepare(request)
        with request_scope():
            return await self._run(request)

    async def extract_one_field(self, request: RequestLike, field_id: str) -> FilledField:
        """
        Fill a single field, using the single-field prompt.

        Raises:
            RequestValidationError: the request is malformed or ``field_id``
                is not one of its fields.
        """
        request = self._prepare(request)
        spec = request.field(field_id)
        narrowed = request.model_copy(update={"fields": [spec]})
        result = await self.extract_all_fields(narrowed)
        return result.filled[spec.id]

    # ── Pipeline ─────────────────────────────────────────────────

    async def _run(self, request: ExtractionRequest) -> ExtractionResult:
        started = time.perf_counter()
        pipeline = self._pipeline(request)
        providers = self._active_providers(pipeline)

        logger.info(
            "extraction_started",
            fields=len(request.fields),
            old_chars=len(request.old_text),
            new_chars=len(request.new_text),
            transcript=preview(request.new_text),
            lang=request.lang,
            providers=[p.name for p in providers],
            granularity=pipeline.granularity.value,
            reconciliation=pipeline.reconciliation.value,
        )

        state = EscalationState()
        contradictions: dict[str, Contradiction] = {}

        async def _stages() -> None:
            prepared = await self._with_exemplars(request, state)
            orchestrator = EscalationOrchestrator(providers[0])
            await orchestrator.run(
                prepared,
                lambda r: self._initial_pass(r, providers, pipeline, contradictions),
                state,
            )

        deadline = request.options.deadline_seconds
        try:
            if deadline:
                await asyncio.wait_for(_stages(), timeout=deadline)
            else:
                await _stages()
        except asyncio.TimeoutError:
            logger.warning(
                "extraction_deadline_exceeded",
                deadline_seconds=deadline,
                resolved=len(state.candidates),
            )

        filled = self._apply_policy(request, state.candidates, contradictions)
        elapsed = round((time.perf_counter() - started) * 1000, 1)

        result = ExtractionResult(
            filled=filled,
            model_identifier=self._model_identifier(providers, pipeline),
            transcript_echo=TranscriptEcho(
                old=request.old_text,
                new=request.new_text,
                combined=request.combined_transcript,
            ),
            completeness=completeness(request, state.candidates),
            issues=missing_required_issues(request, state.candidates),
            escalations_used=state.escalations_used,
            response_time_ms=elapsed,
            timings=state.timings,
        )

        logger.info(
            "extraction_complete",
            changed=sum(1 for f in filled.values() if f.changed),
            completeness=round(result.completeness, 3),
            escalations_used=result.escalations_used,
            issues=len(result.issues),
            response_time_ms=elapsed,
        )
        return result

    async def _with_exemplars(self, request: ExtractionRequest, state: EscalationState) -> ExtractionRequest:
        k = self.settings.fewshot_k
        if request.few_shots or self.retriever is None or k <= 0:
            return request

        started = time.perf_counter()
        exemplars = await self.retriever.retrieve(
            request.new_text,
            request.fields,
            k,
            domain_id=request.domain_id,
        )
        state.timings["retrieval_ms"] = round((time.perf_counter() - started) * 1000, 1)
        if not exemplars:
            return request
        return request.model_copy(update={"few_shots": exemplars})

    async def _initial_pass(
        self,
        request: ExtractionRequest,
        providers: list[ExtractionProvider],
        pipeline: PipelineConfig,
        contradictions: dict[str, Contradiction],
    ) -> dict[str, CandidateValue]:
        extractors = [
            SingleProviderExtractor(p, pipeline.granularity, self.settings.max_parallel_fields)
            for p in providers
        ]
        results = await asyncio.gather(*(e.extract(request) for e in extractors), return_exceptions=True)

        per_provider: dict[str, dict[str, CandidateValue]] = {}
        for name, result in zip(_unique_names(providers), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error("provider_pass_error", provider=name, error=str(result))
                result = {}
            per_provider[name] = result

        if len(per_provider) > 1:
            reconciler = self.reconciler
            if pipeline.reconciliation == Reconciliation.NONE:
                reconciler = EnsembleReconciler(
                    judge=None, aliases=self.reconciler.aliases, strip_qualifiers=self.reconciler.strip_qualifiers,
                )
            outcome = await reconciler.reconcile(request, per_provider, list(per_provider))
            return outcome.accepted

        candidates = next(iter(per_provider.values()))
        if pipeline.reconciliation == Reconciliation.VERIFIER:
            quality = await self.reconciler.verify(request, candidates)
            for field_id, entry in quality.items():
                if entry.confidence is not None:
                    candidates[field_id] = candidates[field_id].model_copy(update={"confidence": entry.confidence})
                if entry.contradiction is not None:
                    contradictions[field_id] = entry.contradiction
        return candidates

    def _apply_policy(
        self,
        request: ExtractionRequest,
        candidates: dict[str, CandidateValue],
        contradictions: dict[str, Contradiction],
    ) -> dict[str, FilledField]:
        filled: dict[str, FilledField] = {}
        for spec in request.fields:
            field = overwrite_policy.apply(request.current(spec.id), candidates.get(spec.id), request.options)
            contradiction = contradictions.get(spec.id)
            if contradiction is not None and field.value is not None:
                field = field.model_copy(update={"contradiction": contradiction})
            filled[spec.id] = field
        return filled

    # ── Request preparation ──────────────────────────────────────

    def _prepare(self, request: RequestLike) -> ExtractionRequest:
        if isinstance(request, dict):
            request = ExtractionRequest.from_payload(request)
        elif not isinstance(request, ExtractionRequest):
            raise RequestValidationError(f"unsupported request type: {type(request).__name__}")

        if "options" not in request.model_fields_set:
            request = request.model_copy(update={"options": self._default_options()})
        return request

    def _default_options(self) -> ExtractionOptions:
        s = self.settings
        return ExtractionOptions(
            confidence_threshold=s.confidence_threshold,
            max_escalations_per_field=s.max_escalations_per_field,
            preserve_user_edits=s.preserve_user_edits,
            rejection_threshold=s.rejection_threshold,
        )

    def _pipeline(self, request: ExtractionRequest) -> PipelineConfig:
        if request.pipeline is not None:
            return request.pipeline
        return PipelineConfig(
            provider_count=self.settings.provider_count,
            granularity=Granularity(self.settings.granularity),
            reconciliation=Reconciliation(self.settings.reconciliation),
        )

    def _active_providers(self, pipeline: PipelineConfig) -> list[ExtractionProvider]:
        if pipeline.provider_count > len(self.providers):
            logger.warning(
                "provider_count_reduced",
                requested=pipeline.provider_count,
                available=len(self.providers),
            )
        return self.providers[: pipeline.provider_count]

    @staticmethod
    def _model_identifier(providers: list[ExtractionProvider], pipeline: PipelineConfig) -> str:
        if len(providers) == 1:
            return providers[0].model_identifier
        prefix = "ensemble-per-field" if pipeline.granularity == Granularity.PER_FIELD else "ensemble"
        return f"{prefix}:{'+'.join(p.model_identifier for p in providers)}"


def _unique_names(providers: list[ExtractionProvider]) -> list[str]:
    names: list[str] = []
    for i, p in enumerate(providers):
        names.append(p.name if p.name not in names else f"{p.name}_{i + 1}")
    return names


# ── Default engine built from settings ───────────────────────────


def create_engine(settings: Optional[Settings] = None) -> FormFillEngine:
    """Build an engine with OpenAI (primary), Gemini (secondary) and an OpenAI judge."""
    settings = settings or get_settings()
    providers = [
        ExtractionProvider(create_client("openai", settings.fill_model_primary, settings)),
        ExtractionProvider(create_client("gemini", settings.fill_model_secondary, settings)),
    ]
    judge = create_client("openai", settings.verifier_model, settings)
    retriever = create_retriever(settings) if settings.fewshot_k > 0 else None
    return FormFillEngine(
        providers,
        retriever=retriever,
        reconciler=EnsembleReconciler(judge),
        settings=settings,
    )


@lru_cache(maxsize=1)
def get_engine() -> FormFillEngine:
    return create_engine()


async def extract_all_fields(request: RequestLike) -> ExtractionResult:
    return await get_engine().extract_all_fields(request)


async def extract_one_field(request: RequestLike, field_id: str) -> FilledField:
    return await get_engine().extract_one_field(request, field_id)
