"""
Single-provider extraction.

Runs one provider over a field set, either as one batch prompt or as one
prompt per field. Per-field calls run concurrently with bounded
parallelism, and a failing field never affects its siblings. Every
requested field gets a candidate back; anything the model skipped or
failed on is reported as absent.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from formfill.errors import ProviderTransportError, SchemaViolation
from formfill.logging_config import get_logger
from formfill.schemas.extraction import CandidateValue, ExtractionRequest, Granularity, MissingReason
from formfill.schemas.fields import FieldSpec
from formfill.services.prompts import action_message
from formfill.services.providers import ExtractionProvider

logger = get_logger(__name__)


class SingleProviderExtractor:
    """One provider, batch or per-field."""

    def __init__(
        self,
        provider: ExtractionProvider,
        granularity: Granularity = Granularity.BATCH,
        max_parallel_fields: int = 4,
    ) -> None:
        self.provider = provider
        self.granularity = Granularity(granularity)
        self.max_parallel_fields = max(1, max_parallel_fields)

    async def extract(
        self,
        request: ExtractionRequest,
        fields: Optional[list[FieldSpec]] = None,
    ) -> dict[str, CandidateValue]:
        """
        Candidates for ``fields`` (default: every field in the request).

        Transport and schema failures degrade to absent candidates; this
        method does not raise for them.
        """
        fields = list(fields if fields is not None else request.fields)
        if not fields:
            return {}

        if self.granularity == Granularity.PER_FIELD and len(fields) > 1:
            candidates = await self._per_field(request, fields)
        else:
            candidates = await self._batch(request, fields)

        for spec in fields:
            if spec.id not in candidates:
                candidates[spec.id] = CandidateValue.absent(
                    MissingReason.INFO_NOT_FOUND,
                    self.provider.name,
                    action_message(spec, None),
                )

        extracted = sum(1 for c in candidates.values() if c.is_extracted)
        logger.info(
            "provider_pass_complete",
            provider=self.provider.name,
            granularity=self.granularity.value,
            fields=len(fields),
            extracted=extracted,
        )
        return candidates

    async def _batch(self, request: ExtractionRequest, fields: list[FieldSpec]) -> dict[str, CandidateValue]:
        try:
            return await self.provider.extract(request, fields)
        except (ProviderTransportError, SchemaViolation) as e:
            logger.warning(
                "provider_batch_failed",
                provider=self.provider.name,
                fields=len(fields),
                error=str(e),
            )
            return {}

    async def _per_field(self, request: ExtractionRequest, fields: list[FieldSpec]) -> dict[str, CandidateValue]:
        semaphore = asyncio.Semaphore(self.max_parallel_fields)

        async def _one(spec: FieldSpec) -> dict[str, CandidateValue]:
            async with semaphore:
                return await self.provider.extract_field(request, spec)

        results = await asyncio.gather(*(_one(f) for f in fields), return_exceptions=True)

        candidates: dict[str, CandidateValue] = {}
        for spec, result in zip(fields, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "provider_field_failed",
                    provider=self.provider.name,
                    field=spec.id,
                    error=str(result),
                )
                continue
            if spec.id in result:
                candidates[spec.id] = result[spec.id]
        return candidates
