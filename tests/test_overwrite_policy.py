"""Tests for the shared overwrite rule."""

import pytest

from formfill.schemas.extraction import CandidateValue, ExtractionOptions, FieldStatus
from formfill.schemas.fields import CurrentFieldValue
from formfill.services.overwrite_policy import apply


def cand(value, confidence=0.9, evidence=None):
    return CandidateValue(value=value, confidence=confidence, status=FieldStatus.EXTRACTED, evidence_snippet=evidence)


DEFAULT = ExtractionOptions()


class TestLock:
    @pytest.mark.parametrize("candidate", [cand("overwrite me"), cand(None), CandidateValue.absent(), None])
    def test_locked_value_never_changes(self, candidate):
        current = CurrentFieldValue(value="do not change", source="user", locked=True)
        out = apply(current, candidate, DEFAULT)
        assert out.value == "do not change"
        assert out.changed is False
        assert out.previous_value is None
        assert out.source == "user"

    def test_locked_even_when_user_edits_are_not_preserved(self):
        current = CurrentFieldValue(value="x", source="ai", locked=True)
        out = apply(current, cand("y"), ExtractionOptions(preserve_user_edits=False))
        assert out.value == "x"
        assert out.changed is False


class TestAcceptedValue:
    def test_fills_empty_field(self):
        out = apply(CurrentFieldValue(), cand("CLOSED", evidence="now closed"), DEFAULT)
        assert out.value == "CLOSED"
        assert out.changed is True
        assert out.previous_value is None
        assert out.source == "ai"
        assert out.evidence_snippet == "now closed"

    def test_replaces_ai_value_and_records_previous(self):
        out = apply(CurrentFieldValue(value="OPEN", source="ai"), cand("CLOSED"), DEFAULT)
        assert out.value == "CLOSED"
        assert out.changed is True
        assert out.previous_value == "OPEN"

    def test_same_value_is_unchanged(self):
        out = apply(CurrentFieldValue(value="CLOSED", source="user"), cand("CLOSED"), ExtractionOptions(preserve_user_edits=False))
        assert out.changed is False
        assert out.source == "user"

    def test_user_value_is_preserved_by_default(self):
        out = apply(CurrentFieldValue(value="OPEN", source="user"), cand("CLOSED"), DEFAULT)
        assert out.value == "OPEN"
        assert out.changed is False

    def test_user_value_replaced_when_allowed(self):
        options = ExtractionOptions(preserve_user_edits=False)
        out = apply(CurrentFieldValue(value="OPEN", source="user"), cand("CLOSED"), options)
        assert out.value == "CLOSED"
        assert out.previous_value == "OPEN"
        assert out.source == "ai"

    def test_empty_user_value_is_filled(self):
        out = apply(CurrentFieldValue(value="  ", source="user"), cand("CLOSED"), DEFAULT)
        assert out.value == "CLOSED"
        assert out.changed is True

    def test_fill_only_empty(self):
        options = ExtractionOptions(fill_only_empty=True)
        assert apply(CurrentFieldValue(value="OPEN"), cand("CLOSED"), options).value == "OPEN"
        assert apply(CurrentFieldValue(), cand("CLOSED"), options).value == "CLOSED"


class TestNoUsableValue:
    @pytest.mark.parametrize("candidate", [None, CandidateValue.absent(), cand("CLOSED", confidence=0.1)])
    def test_current_value_kept(self, candidate):
        out = apply(CurrentFieldValue(value="OPEN", source="ai"), candidate, DEFAULT)
        assert out.value == "OPEN"
        assert out.changed is False

    def test_missing_current_defaults(self):
        out = apply(None, None, DEFAULT)
        assert out.value is None
        assert out.source == "ai"
        assert out.status == FieldStatus.ABSENT
