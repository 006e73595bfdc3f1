"""Tests for multi-provider reconciliation and the quality pass."""

import pytest

from conftest import ScriptedClient
from formfill.errors import ProviderTransportError
from formfill.schemas.extraction import CandidateValue, FieldStatus
from formfill.services.reconciler import (
    KEEP_CURRENT,
    MERGE,
    EnsembleReconciler,
    canonical_item,
    heuristic_pick,
    merge_values,
)


def cand(value, confidence=0.9, provider=None):
    return CandidateValue(value=value, confidence=confidence, status=FieldStatus.EXTRACTED, provider=provider)


def absent():
    return CandidateValue.absent()


def both(a: dict, b: dict) -> dict:
    return {"openai": a, "gemini": b}


class TestMergeValues:
    def test_union_first_seen_order(self):
        assert merge_values(["Alice, Bob", "Bob, Carol"]) == "Alice, Bob, Carol"

    def test_case_insensitive_dedup_keeps_first_spelling(self):
        assert merge_values(["alice; Bob", "ALICE, bob, Dan"]) == "alice, Bob, Dan"

    def test_aliases_and_parentheses(self):
        merged = merge_values([
            "Farabundo Marti National Liberation Front (FMLN)",
            "FMLN, Manuel Rodriguez Patriotic Front",
        ], strip_qualifiers=True)
        assert merged == "FMLN, FPMR"

    def test_parenthesized_text_kept_by_default(self):
        assert merge_values(["Room 4 (east wing)", "Lobby"], aliases={}) == "Room 4 (east wing), Lobby"
        assert merge_values(["Manuel Rodriguez Patriotic Front", "Room 4 (east wing)"]) == "FPMR, Room 4 (east wing)"

    def test_custom_aliases(self):
        assert canonical_item("Intl. Business Machines", {"INTL. BUSINESS MACHINES": "IBM"}) == "IBM"

    def test_empty(self):
        assert merge_values([None, "", "-"]) is None


class TestHeuristicPick:
    def test_higher_confidence_wins(self):
        a, b = cand("A", 0.6), cand("B", 0.8)
        assert heuristic_pick([a, b], 0.4) is b

    def test_tie_goes_to_first(self):
        a, b = cand("A", 0.7), cand("B", 0.7)
        assert heuristic_pick([a, b], 0.4) is a

    def test_below_rejection_threshold_is_ignored(self):
        assert heuristic_pick([cand("A", 0.2), absent()], 0.4) is None


class TestReconcile:
    @pytest.mark.asyncio
    async def test_merge_for_multi_value(self, make_request):
        judge = ScriptedClient([{"attendees": {"decision": "merge", "reason": "both partial"}}])
        request = make_request(new_transcript="Alice, Bob and Carol attended")
        outcome = await EnsembleReconciler(judge).reconcile(
            request,
            both({"attendees": cand("Alice, Bob")}, {"attendees": cand("Bob, Carol")}),
        )

        assert outcome.accepted["attendees"].value == "Alice, Bob, Carol"
        assert outcome.decisions["attendees"].decision == MERGE
        assert len(judge.calls) == 1

    @pytest.mark.asyncio
    async def test_merge_is_never_accepted_for_scalar_fields(self, make_request):
        judge = ScriptedClient([{
            "status": {"decision": "merge"},
            "notes": {"decision": "merge"},
            "count": {"decision": "merge"},
        }])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            both(
                {"status": cand("OPEN", 0.6), "notes": cand("a", 0.9), "count": cand(3, 0.5)},
                {"status": cand("CLOSED", 0.9), "notes": cand("b", 0.5), "count": cand(4, 0.8)},
            ),
        )

        for field_id in ("status", "notes", "count"):
            assert outcome.decisions[field_id].decision != MERGE
            assert outcome.decisions[field_id].origin == "heuristic"
        assert outcome.accepted["status"].value == "CLOSED"
        assert outcome.accepted["notes"].value == "a"
        assert outcome.accepted["count"].value == 4

    @pytest.mark.asyncio
    async def test_adopt_named_provider(self, make_request):
        judge = ScriptedClient([{"status": {"decision": "openai"}}])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            both({"status": cand("CLOSED", 0.5)}, {"status": cand("OPEN", 0.9)}),
        )
        assert outcome.accepted["status"].value == "CLOSED"
        assert outcome.decisions["status"].decision == "openai"

    @pytest.mark.asyncio
    async def test_provider_names_match_regardless_of_case(self, make_request):
        judge = ScriptedClient([{"status": {"decision": "gpt"}}])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            {"GPT": {"status": cand("CLOSED", 0.5)}, "Gemini": {"status": cand("OPEN", 0.9)}},
        )
        assert outcome.accepted["status"].value == "CLOSED"
        assert outcome.decisions["status"].decision == "GPT"
        assert outcome.decisions["status"].origin == "judge"

    @pytest.mark.asyncio
    async def test_strip_qualifiers_opt_in(self, make_request):
        judge = ScriptedClient([{"attendees": {"decision": "MERGE"}}])
        outcome = await EnsembleReconciler(judge, strip_qualifiers=True).reconcile(
            make_request(),
            both({"attendees": cand("Alice (host)")}, {"attendees": cand("alice, Bob")}),
        )
        assert outcome.accepted["attendees"].value == "Alice, Bob"

    @pytest.mark.asyncio
    async def test_locked_field_keeps_current_without_asking(self, make_request):
        judge = ScriptedClient([])
        request = make_request(current_values={"status": {"value": "OPEN", "locked": True}})
        outcome = await EnsembleReconciler(judge).reconcile(
            request.model_copy(update={"fields": [request.field("status")]}),
            both({"status": cand("CLOSED")}, {"status": cand("CLOSED")}),
        )
        assert outcome.decisions["status"].decision == KEEP_CURRENT
        assert outcome.accepted["status"].value is None
        assert judge.calls == []

    @pytest.mark.asyncio
    async def test_all_low_or_null_keeps_current(self, make_request):
        judge = ScriptedClient([])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            both({"notes": cand("maybe", 0.2)}, {"notes": absent()}),
        )
        assert outcome.decisions["notes"].decision == KEEP_CURRENT
        assert outcome.accepted["notes"].value is None

    @pytest.mark.asyncio
    async def test_keep_current_decision_marks_conflict(self, make_request):
        judge = ScriptedClient([{"status": {"decision": "keep_current", "reason": "disagree"}}])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            both({"status": cand("OPEN")}, {"status": cand("CLOSED")}),
        )
        assert outcome.accepted["status"].value is None
        assert outcome.accepted["status"].status == FieldStatus.CONFLICT

    @pytest.mark.asyncio
    async def test_judge_failure_falls_back_to_heuristic(self, make_request):
        judge = ScriptedClient([ProviderTransportError("down")])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            both({"status": cand("OPEN", 0.6)}, {"status": cand("CLOSED", 0.8)}),
        )
        assert outcome.accepted["status"].value == "CLOSED"
        assert outcome.decisions["status"].origin == "heuristic"

    @pytest.mark.asyncio
    async def test_without_judge_uses_heuristic(self, make_request):
        outcome = await EnsembleReconciler().reconcile(
            make_request(),
            both({"attendees": cand("Alice", 0.9)}, {"attendees": cand("Bob", 0.9)}),
        )
        assert outcome.accepted["attendees"].value == "Alice"
        assert outcome.decisions["attendees"].decision == "openai"

    @pytest.mark.asyncio
    async def test_adopting_a_null_candidate_falls_back(self, make_request):
        judge = ScriptedClient([{"status": {"decision": "gemini"}}])
        outcome = await EnsembleReconciler(judge).reconcile(
            make_request(),
            both({"status": cand("CLOSED", 0.7)}, {"status": absent()}),
        )
        assert outcome.accepted["status"].value == "CLOSED"


class TestQualityPass:
    @pytest.mark.asyncio
    async def test_scores_and_grounded_contradictions(self, make_request):
        judge = ScriptedClient([{
            "status": {"confidence": 0.55, "quote": "now closed",
                       "contradiction": {"reason": "reopened later", "quote": "reopened"}},
            "notes": {"confidence": 0.9, "contradiction": {"reason": "made up", "quote": "never said this"}},
        }])
        request = make_request(new_transcript="the ticket is now closed, then reopened")
        quality = await EnsembleReconciler(judge).verify(
            request,
            {"status": cand("CLOSED"), "notes": cand("x"), "count": absent()},
        )

        assert quality["status"].confidence == 0.55
        assert quality["status"].contradiction.quote == "reopened"
        assert quality["notes"].contradiction is None
        assert "count" not in quality

    @pytest.mark.asyncio
    async def test_failure_returns_nothing(self, make_request):
        judge = ScriptedClient([ProviderTransportError("down")])
        assert await EnsembleReconciler(judge).verify(make_request(), {"status": cand("CLOSED")}) == {}
