"""
Exception types raised inside the extraction engine.

Only ``RequestValidationError`` ever reaches the caller of the engine;
every other error is caught at the stage that raised it and degrades
the affected field or provider.
"""

from __future__ import annotations


class FormFillError(Exception):
    """Base class for engine errors."""


class RequestValidationError(FormFillError, ValueError):
    """The request itself is malformed (empty transcript, no fields, bad field spec)."""


class ProviderTransportError(FormFillError):
    """A model, embedding or vector-search call failed (timeout, network, bad status)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SchemaViolation(FormFillError):
    """Model output does not match the structure requested for a field."""


class GroundingViolation(FormFillError):
    """An evidence snippet does not occur in the new transcript."""


class ReconcilerFailure(FormFillError):
    """The reconciliation call failed or returned unusable decisions."""
