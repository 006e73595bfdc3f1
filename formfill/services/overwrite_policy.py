"""
Overwrite policy and change tracking.

The one rule deciding a field's final value, used by every path that
writes a FilledField:

1. A locked field keeps its current value.
2. A usable accepted value replaces the current one, unless it would
   overwrite non-empty user data (``preserve_user_edits``) or any
   non-empty value (``fill_only_empty``).
3. Otherwise the current value stays.
"""

from __future__ import annotations

from typing import Optional

from formfill.schemas.extraction import CandidateValue, ExtractionOptions, FieldStatus, FilledField
from formfill.schemas.fields import CurrentFieldValue
from formfill.services.reconciler import is_usable


def apply(
    current: Optional[CurrentFieldValue],
    candidate: Optional[CandidateValue],
    options: ExtractionOptions,
) -> FilledField:
    current = current or CurrentFieldValue()
    status = candidate.status if candidate is not None else FieldStatus.ABSENT

    if current.locked:
        return _unchanged(current, status)

    if not is_usable(candidate, options.rejection_threshold):
        return _unchanged(current, status)

    if not current.is_empty:
        if options.preserve_user_edits and current.source == "user":
            return _unchanged(current, status)
        if options.fill_only_empty:
            return _unchanged(current, status)

    changed = candidate.value != current.value
    return FilledField(
        value=candidate.value,
        changed=changed,
        previous_value=current.value if changed else None,
        source="ai" if changed else current.source,
        confidence=candidate.confidence,
        evidence_snippet=candidate.evidence_snippet,
        evidence_start=candidate.evidence_start,
        evidence_end=candidate.evidence_end,
        status=status,
    )


def _unchanged(current: CurrentFieldValue, status: FieldStatus) -> FilledField:
    return FilledField(
        value=current.value,
        changed=False,
        source=current.source,
        status=status,
    )
