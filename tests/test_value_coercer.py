"""Tests for per-type value normalization."""

import math

import pytest

from formfill.schemas.fields import parse_field_spec
from formfill.services.value_coercer import normalize, serialize, split_items


def spec(type_, **kw):
    return parse_field_spec({"id": "f", "type": type_, **kw})


class TestDate:
    def test_accepts_strict_iso(self):
        assert normalize("2024-03-01", spec("date")) == "2024-03-01"

    def test_trims(self):
        assert normalize("  2024-03-01 ", spec("date")) == "2024-03-01"

    @pytest.mark.parametrize("raw", ["01.03.2024", "2024-3-1", "March 1, 2024", "2024-02-30", 20240301, ""])
    def test_rejects_everything_else(self, raw):
        assert normalize(raw, spec("date")) is None


class TestNumber:
    def test_int_and_float(self):
        assert normalize(3, spec("number")) == 3
        assert normalize(2.5, spec("number")) == 2.5

    @pytest.mark.parametrize("raw", [True, math.nan, math.inf, "12 apples", None, [1]])
    def test_rejects_non_finite_and_non_numbers(self, raw):
        assert normalize(raw, spec("number")) is None


class TestEnum:
    def test_upper_cases_and_checks_options(self):
        s = spec("enum", options=["open", "Closed"])
        assert normalize("closed", s) == "CLOSED"
        assert normalize(" Open ", s) == "OPEN"

    def test_unknown_option_is_none(self):
        assert normalize("pending", spec("enum", options=["OPEN"])) is None

    def test_placeholder_is_none(self):
        assert normalize("-", spec("enum", options=["OPEN", "-"])) is None

    @pytest.mark.parametrize("raw,expected", [("none", "NONE"), ("NA", "NA")])
    def test_word_options_are_fillable(self, raw, expected):
        assert normalize(raw, spec("enum", options=["YES", "NO", "NONE", "NA"])) == expected


class TestMultiValue:
    def test_list_is_joined(self):
        assert normalize([" Alice ", "Bob", ""], spec("multiValue")) == "Alice, Bob"

    def test_delimited_string_is_cleaned(self):
        assert normalize("Alice;Bob\n - ,Carol", spec("multiValue")) == "Alice, Bob, Carol"

    def test_only_placeholders_is_none(self):
        assert normalize("-, -, ", spec("multiValue")) is None

    def test_none_is_an_item(self):
        assert normalize("none, -, Bob", spec("multiValue")) == "none, Bob"

    def test_split_items(self):
        assert split_items("a, b,,-") == ["a", "b"]
        assert split_items(None) == []


class TestText:
    def test_trims(self):
        assert normalize("  hello ", spec("text")) == "hello"

    @pytest.mark.parametrize("raw", ["", "   ", "-", " - "])
    def test_rejects_empty_and_placeholders(self, raw):
        assert normalize(raw, spec("text")) is None

    @pytest.mark.parametrize("raw", ["None", "N/A", "null"])
    def test_answer_words_are_kept(self, raw):
        assert normalize(raw, spec("text")) == raw

    def test_pattern(self):
        s = spec("text", pattern=r"^[A-Z]{2}-\d+$")
        assert normalize("AB-12", s) == "AB-12"
        assert normalize("ab-12", s) is None


class TestNeverRaises:
    @pytest.mark.parametrize("type_,extra", [
        ("text", {}), ("multiValue", {}), ("number", {}), ("date", {}), ("enum", {"options": ["A"]}),
    ])
    @pytest.mark.parametrize("raw", [object(), {"a": 1}, b"bytes", 10**400])
    def test_garbage_in_none_out(self, type_, extra, raw):
        result = normalize(raw, spec(type_, **extra))
        assert result is None or isinstance(result, (str, int, float))


class TestRoundTrip:
    """normalize(serialize(x)) == x for canonical values."""

    @pytest.mark.parametrize("type_,extra,value", [
        ("text", {}, "Room 4B"),
        ("text", {}, "None"),
        ("text", {}, "NA"),
        ("enum", {"options": ["YES", "NO", "NONE"]}, "NONE"),
        ("enum", {"options": ["YES", "NA"]}, "NA"),
        ("multiValue", {}, "Alice, Bob, Carol"),
        ("number", {}, 42),
        ("number", {}, 0.25),
        ("date", {}, "2023-12-31"),
        ("enum", {"options": ["OPEN", "CLOSED"]}, "CLOSED"),
    ])
    def test_round_trip(self, type_, extra, value):
        s = spec(type_, **extra)
        assert normalize(serialize(value, s), s) == value
