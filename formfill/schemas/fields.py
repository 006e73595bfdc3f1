"""
Data models for form field definitions and the form's current values.

A field spec is a closed union keyed by ``type`` and is validated once,
when the template is loaded into a request.
"""

import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

PLACEHOLDER_VALUES = frozenset({"-"})


class FieldType(str, Enum):
    TEXT = "text"
    MULTI_VALUE = "multiValue"
    NUMBER = "number"
    DATE = "date"
    ENUM = "enum"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class _FieldBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    label: str = Field(default="", validate_default=True)
    required: bool = False
    description: str = ""
    priority: Priority = Priority.MEDIUM
    confidence_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @field_validator("id")
    @classmethod
    def _strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field id must not be blank")
        return v

    @field_validator("label")
    @classmethod
    def _default_label(cls, v: str, info: Any) -> str:
        return v.strip() or info.data.get("id", "")


class TextField(_FieldBase):
    """Free text, optionally constrained by a regex."""
    type: Literal["text"] = "text"
    pattern: Optional[str] = None

    @field_validator("pattern")
    @classmethod
    def _compile_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid pattern {v!r}: {e}") from e
        return v


class MultiValueField(_FieldBase):
    """A list of items stored as one comma-separated string."""
    type: Literal["multiValue"] = "multiValue"


class NumberField(_FieldBase):
    type: Literal["number"] = "number"


class DateField(_FieldBase):
    type: Literal["date"] = "date"


class EnumField(_FieldBase):
    """One value out of a fixed option set (stored upper-cased)."""
    type: Literal["enum"] = "enum"
    options: list[str] = Field(min_length=1)

    @field_validator("options")
    @classmethod
    def _normalize_options(cls, v: list[str]) -> list[str]:
        out: list[str] = []
        for opt in v:
            norm = str(opt).strip().upper()
            if norm and norm not in out:
                out.append(norm)
        if not out:
            raise ValueError("enum fields must declare at least one option")
        return out


FieldSpec = Annotated[
    Union[TextField, MultiValueField, NumberField, DateField, EnumField],
    Field(discriminator="type"),
]

_field_spec_adapter: TypeAdapter[FieldSpec] = TypeAdapter(FieldSpec)

# Older templates used "textarea" for multi-value fields.
_LEGACY_TYPES = {"textarea": FieldType.MULTI_VALUE.value}


def normalize_field_payload(data: Any) -> Any:
    """Map legacy type names onto the current union before validation."""
    if isinstance(data, dict) and data.get("type") in _LEGACY_TYPES:
        return {**data, "type": _LEGACY_TYPES[data["type"]]}
    return data


def parse_field_spec(data: Any) -> FieldSpec:
    """Validate one raw field definition into its FieldSpec variant."""
    return _field_spec_adapter.validate_python(normalize_field_payload(data))


class CurrentFieldValue(BaseModel):
    """The value a form currently holds for one field (owned by the caller)."""
    value: Union[str, int, float, None] = None
    source: Literal["user", "ai"] = "ai"
    locked: bool = False

    @property
    def is_empty(self) -> bool:
        return is_empty_value(self.value)


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False
