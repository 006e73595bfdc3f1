"""
Value Coercer.

Validates and normalizes a raw value against its field type. Pure and
total: anything that does not fit the type comes back as None, never
as an exception.
"""

from __future__ import annotations

import math
import re
from datetime import date
from typing import Any

from formfill.schemas.fields import (
    PLACEHOLDER_VALUES,
    DateField,
    EnumField,
    FieldSpec,
    MultiValueField,
    NumberField,
    TextField,
)

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
ITEM_SEPARATORS_RE = re.compile(r"[,;\n]")
MULTI_VALUE_JOINER = ", "


def normalize(raw: Any, spec: FieldSpec) -> Any:
    """
    Return the canonical value of ``raw`` for ``spec``, or None.

    - date: strict ``YYYY-MM-DD`` naming a real calendar day
    - number: finite int/float (bools are not numbers here)
    - enum: upper-cased, must be one of the declared options
    - multiValue: list or delimited string, cleaned and re-joined with ", "
    - text: trimmed, non-placeholder, optionally matching the field pattern
    """
    if raw is None:
        return None
    try:
        if isinstance(spec, DateField):
            return _normalize_date(raw)
        if isinstance(spec, NumberField):
            return _normalize_number(raw)
        if isinstance(spec, EnumField):
            return _normalize_enum(raw, spec)
        if isinstance(spec, MultiValueField):
            return _normalize_multi_value(raw)
        if isinstance(spec, TextField):
            return _normalize_text(raw, spec)
    except (TypeError, ValueError, re.error):
        return None
    return None


def serialize(value: Any, spec: FieldSpec) -> Any:
    """JSON-friendly form of a canonical value (multi-values become a list)."""
    if value is None:
        return None
    if isinstance(spec, MultiValueField):
        return split_items(value)
    return value


def split_items(value: Any) -> list[str]:
    """Split a list or delimited string into trimmed, non-placeholder items."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = [str(v) for v in value if v is not None]
    else:
        parts = ITEM_SEPARATORS_RE.split(str(value))
    return [p.strip() for p in parts if not _is_placeholder(p)]


def _is_placeholder(text: str) -> bool:
    stripped = text.strip()
    return not stripped or stripped.lower() in PLACEHOLDER_VALUES


def _normalize_date(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not ISO_DATE_RE.match(text):
        return None
    date.fromisoformat(text)  # rejects 2024-02-30
    return text


def _normalize_number(raw: Any) -> int | float | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    if isinstance(raw, float) and not math.isfinite(raw):
        return None
    return raw


def _normalize_enum(raw: Any, spec: EnumField) -> str | None:
    if not isinstance(raw, str) or _is_placeholder(raw):
        return None
    candidate = raw.strip().upper()
    return candidate if candidate in spec.options else None


def _normalize_multi_value(raw: Any) -> str | None:
    if not isinstance(raw, (str, list, tuple)):
        return None
    items = split_items(raw)
    return MULTI_VALUE_JOINER.join(items) if items else None


def _normalize_text(raw: Any, spec: TextField) -> str | None:
    if isinstance(raw, bool) or not isinstance(raw, (str, int, float)):
        return None
    text = str(raw).strip()
    if _is_placeholder(text):
        return None
    if spec.pattern and not re.search(spec.pattern, text):
        return None
    return text
