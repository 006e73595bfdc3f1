"""Pytest fixtures for formfill tests."""

from __future__ import annotations

import random
from typing import Any, Callable, Union

import pytest

from formfill.config import Settings
from formfill.schemas.extraction import ExtractionRequest
from formfill.schemas.fields import parse_field_spec
from formfill.services.providers import ExtractionProvider
from formfill.services.retry import RetryPolicy

Response = Union[Any, Exception]


class ScriptedClient:
    """
    Stand-in for an LLMClient that replays canned JSON responses.

    ``responses`` is either a list consumed in order, or a callable taking
    ``(system, user)`` and returning the parsed JSON body. Exceptions are
    raised instead of returned.
    """

    def __init__(
        self,
        responses: Union[list[Response], Callable[[str, str], Response]],
        vendor: str = "openai",
        model: str = "fake-model",
    ) -> None:
        self.vendor = vendor
        self.model = model
        self.calls: list[tuple[str, str]] = []
        self._responses = responses

    @property
    def model_identifier(self) -> str:
        return self.model

    async def complete_json(self, system: str, user: str) -> Any:
        self.calls.append((system, user))
        if callable(self._responses):
            result = self._responses(system, user)
        else:
            assert self._responses, "no scripted response left"
            result = self._responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy that never actually sleeps."""
    return RetryPolicy(
        timeout_seconds=1.0,
        max_retries=2,
        base_delay_seconds=0.01,
        rng=random.Random(7),
        sleep=_no_sleep,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        fewshot_k=0,
        provider_count=1,
        granularity="batch",
        reconciliation="none",
        max_retries=0,
    )


@pytest.fixture
def field_payloads() -> list[dict[str, Any]]:
    return [
        {"id": "status", "label": "Status", "type": "enum", "options": ["open", "closed"], "required": True},
        {"id": "attendees", "label": "Attendees", "type": "multiValue"},
        {"id": "notes", "label": "Notes", "type": "text"},
        {"id": "due_date", "label": "Due date", "type": "date"},
        {"id": "count", "label": "Count", "type": "number"},
    ]


@pytest.fixture
def specs(field_payloads):
    return {p["id"]: parse_field_spec(p) for p in field_payloads}


@pytest.fixture
def make_request(field_payloads) -> Callable[..., ExtractionRequest]:
    """Factory for requests over the sample fields; keyword args override the payload."""

    def _make(**overrides: Any) -> ExtractionRequest:
        payload: dict[str, Any] = {
            "old_transcript": "",
            "new_transcript": "the ticket is now closed",
            "fields": field_payloads,
            "today": "2025-01-15",
        }
        payload.update(overrides)
        return ExtractionRequest.from_payload(payload)

    return _make


def provider(responses, vendor: str = "openai", model: str = "fake-model", name: str | None = None):
    """ExtractionProvider backed by a ScriptedClient."""
    return ExtractionProvider(ScriptedClient(responses, vendor=vendor, model=model), name=name)
