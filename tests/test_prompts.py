"""Tests for prompt assembly and prompt language selection."""

import pytest

from formfill.schemas.extraction import CandidateValue, FieldStatus
from formfill.services.prompts import (
    build_batch_prompt,
    build_quality_prompt,
    build_reconcile_prompt,
    build_single_field_prompt,
    prompt_language,
)


class TestPromptLanguage:
    @pytest.mark.parametrize("lang,expected", [
        ("de", "de"), ("DE-at", "de"), ("de_CH", "de"), ("en", "en"), ("fr", "en"), ("", "en"), (None, "en"),
    ])
    def test_selection(self, lang, expected):
        assert prompt_language(lang) == expected


class TestExtractionPrompts:
    def test_english_by_default(self, make_request):
        request = make_request()
        system, user = build_batch_prompt(request, request.fields)

        assert "Today is 2025-01-15" in system
        assert "Only the NEW transcript is a source of new values." in user
        assert "NEW transcript (extract ONLY from this):\nthe ticket is now closed" in user
        assert "(empty)" in user

    def test_german_batch(self, make_request):
        request = make_request(lang="de")
        system, user = build_batch_prompt(request, request.fields)

        assert "Heute ist 2025-01-15" in system
        assert user.startswith("Aufgabe:")
        assert "Nur das NEUE Transkript ist Quelle für neue Werte." in user
        assert "Zulässige Werte: OPEN, CLOSED" in user
        assert "status (Status, type=enum, Pflichtfeld)" in user
        assert "ALTES Transkript" in user and "(leer)" in user
        assert "Only the NEW transcript" not in user
        # the output contract is language-neutral
        assert "\"evidence\": <verbatim quote" in user

    def test_german_single_field(self, make_request, specs):
        _, user = build_single_field_prompt(make_request(lang="de"), specs["attendees"])

        assert "Aufgabe: Extrahiere genau EIN Feld: attendees." in user
        assert "kommagetrennte Zeichenkette" in user
        assert "JSON-Ausgabe für \"attendees\":" in user


class TestJudgePrompts:
    def test_german_reconcile_keeps_decision_keywords(self, make_request):
        candidate = CandidateValue(value="CLOSED", confidence=0.9, status=FieldStatus.EXTRACTED)
        system, user = build_reconcile_prompt(
            make_request(lang="de"),
            {"openai": {"status": candidate}, "gemini": {}},
            ["openai", "gemini"],
        )

        assert "Verifizierer" in system
        assert "'openai', 'gemini', 'merge' oder 'keep_current'" in user
        assert "Mehrfach-Felder erlaubt (attendees)" in user

    def test_german_quality_prompt(self, make_request):
        candidate = CandidateValue(value="CLOSED", confidence=0.9, status=FieldStatus.EXTRACTED)
        system, user = build_quality_prompt(make_request(lang="de"), {"status": candidate})

        assert "Qualität" in system
        assert "Ändere die Werte NICHT" in user
        assert "Ausgefüllte Werte:" in user
