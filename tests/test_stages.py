"""
Unit tests for the pipeline stages.

Stages are driven by a scripted LLM so every vote round is reproducible.
"""

import time

import pytest

from scripted_llm import (
    CLEANER_MODEL,
    REFINER_MODEL,
    SANITY_MODEL,
    VALIDITY_MODEL,
    ScriptedLLM,
    cleaned,
    sanity_response,
    validity_response,
)
from quanta_ftt.grading.prompt_builder import PromptBuilder
from quanta_ftt.grading.stages import (
    CleanerStage,
    RefinementStage,
    SanityStage,
    ValidityStage,
    fan_out,
)
from quanta_ftt.grading.voting import format_percent
from quanta_ftt.models import JSON_ERROR_SENTINEL, NO_GRADE, Problem, SanityStatus


class TestFanOut:
    """Tests for fan_out."""

    def test_sequential(self) -> None:
        """Test sequential mode applies the function in order."""
        assert fan_out(lambda x: x * 2, [1, 2, 3]) == [2, 4, 6]

    def test_concurrent_keeps_issuance_order(self) -> None:
        """Test results come back in input order even when calls finish out of order."""

        def slow_for_early(i: int) -> int:
            time.sleep((5 - i) * 0.01)
            return i

        assert fan_out(slow_for_early, range(5), max_workers=5) == [0, 1, 2, 3, 4]

    def test_concurrent_propagates_errors(self) -> None:
        """Test an exception from any call reaches the caller."""

        def explode(i: int) -> int:
            if i == 2:
                raise RuntimeError("boom")
            return i

        with pytest.raises(RuntimeError, match="boom"):
            fan_out(explode, range(4), max_workers=2)


class TestSanityStage:
    """Tests for SanityStage."""

    def _stage(self, llm: ScriptedLLM) -> SanityStage:
        return SanityStage(llm, SANITY_MODEL, "check sanity", "EXAMPLE SHOTS")

    def test_majority_fail(self, sample_problem: Problem, sample_candidate: str) -> None:
        """Test three Fail votes out of five resolve to Fail with decayed confidence."""
        llm = ScriptedLLM(
            {
                SANITY_MODEL: [
                    sanity_response("Fail", "Only restates the problem"),
                    sanity_response("Fail", "Second justification"),
                    sanity_response("Fail"),
                    sanity_response("Pass"),
                    sanity_response("Pass"),
                ]
            }
        )

        verdict = self._stage(llm).run_voted(sample_problem, sample_candidate, 5, 0.95)

        assert verdict.status == SanityStatus.FAIL
        assert verdict.confidence == pytest.approx(0.57)
        assert verdict.justification == "Only restates the problem"
        assert verdict.chain_of_thought == "Checked the attempt"
        assert verdict.is_terminal

    def test_unanimous_pass(self, sample_problem: Problem, sample_candidate: str) -> None:
        """Test five Pass votes keep the starting confidence."""
        llm = ScriptedLLM({SANITY_MODEL: [sanity_response("Pass")] * 5})

        verdict = self._stage(llm).run_voted(sample_problem, sample_candidate, 5, 0.95)

        assert verdict.status == SanityStatus.PASS
        assert verdict.confidence == 0.95
        assert not verdict.is_terminal

    def test_no_consensus(self, sample_problem: Problem, sample_candidate: str) -> None:
        """Test a split vote resolves to Error."""
        llm = ScriptedLLM(
            {
                SANITY_MODEL: [
                    sanity_response("Pass"),
                    sanity_response("Pass"),
                    sanity_response("Fail"),
                    sanity_response("Fail"),
                    "not json",
                ]
            }
        )

        verdict = self._stage(llm).run_voted(sample_problem, sample_candidate, 5, 0.95)

        assert verdict.status == SanityStatus.ERROR

    def test_majority_on_other_value_is_error(
        self, sample_problem: Problem, sample_candidate: str
    ) -> None:
        """Test a majority of malformed responses resolves to Error, not Pass or Fail."""
        llm = ScriptedLLM({SANITY_MODEL: ["oops"] * 3 + [sanity_response("Pass")] * 2})

        verdict = self._stage(llm).run_voted(sample_problem, sample_candidate, 5, 0.95)

        assert verdict.status == SanityStatus.ERROR

    def test_calls_are_identical(self, sample_problem: Problem, sample_candidate: str) -> None:
        """Test every call in a round sends the same structured request."""
        llm = ScriptedLLM({SANITY_MODEL: [sanity_response("Pass")] * 3})

        self._stage(llm).run_voted(sample_problem, sample_candidate, 3)

        calls = llm.calls_for(SANITY_MODEL)
        assert len(calls) == 3
        assert all(call["turns"] == calls[0]["turns"] for call in calls)
        assert all(call["require_structured_output"] for call in calls)
        assert all(call["system_instructions"] == "check sanity" for call in calls)
        assert "EXAMPLE SHOTS" in calls[0]["turns"][0].content
        assert sample_candidate in calls[0]["turns"][0].content


class TestValidityStage:
    """Tests for ValidityStage."""

    def _stage(self, llm: ScriptedLLM) -> ValidityStage:
        return ValidityStage(llm, VALIDITY_MODEL, "review validity")

    def test_winning_record_carries_confidence(
        self, sample_problem: Problem, sample_candidate: str
    ) -> None:
        """Test the winner's fields are returned with the confidence percentage."""
        llm = ScriptedLLM(
            {
                VALIDITY_MODEL: [
                    validity_response("B", "First B"),
                    validity_response("A"),
                    validity_response("B", "Second B"),
                    validity_response("B", "Third B"),
                    validity_response("E"),
                ]
            }
        )

        verdict = self._stage(llm).review(sample_problem, sample_candidate, "refined", 5, 0.95)

        assert verdict.grade == "B"
        assert verdict.record["Validity_Feedback"] == "First B"
        assert verdict.record["Confidence_In_Validify_Feedback"] == format_percent(0.95 * (3 / 5))

    def test_prompt_includes_refined_solution(
        self, sample_problem: Problem, sample_candidate: str
    ) -> None:
        """Test the refined solution is sent as context."""
        llm = ScriptedLLM({VALIDITY_MODEL: [validity_response("A")]})

        self._stage(llm).review(sample_problem, sample_candidate, "REFINED TEXT", 1)

        prompt = llm.calls[0]["turns"][0].content
        assert "REFINED TEXT" in prompt
        assert sample_problem.validity_requirements in prompt

    def test_no_consensus_record(self, sample_problem: Problem, sample_candidate: str) -> None:
        """Test a split vote yields the placeholder record with every vote."""
        llm = ScriptedLLM(
            {VALIDITY_MODEL: [validity_response(g) for g in ("A", "A", "B", "B", "E")]}
        )

        verdict = self._stage(llm).review(sample_problem, sample_candidate, "refined", 5)

        assert verdict.grade == NO_GRADE
        assert verdict.record == {
            "Validity_Grade": NO_GRADE,
            "Validity_Feedback": "The model could not agree on the final grade.",
            "Model_Validity_Grades": ["A", "A", "B", "B", "E"],
        }

    def test_malformed_majority(self, sample_problem: Problem, sample_candidate: str) -> None:
        """Test a malformed majority never yields a letter grade."""
        llm = ScriptedLLM({VALIDITY_MODEL: ["garbage"] * 5})

        verdict = self._stage(llm).review(sample_problem, sample_candidate, "refined", 5)

        assert verdict.grade == JSON_ERROR_SENTINEL
        assert verdict.record["Validity_Grade"] == JSON_ERROR_SENTINEL
        assert verdict.record["Validity_Feedback"] == "garbage"
        assert "Confidence_In_Validify_Feedback" not in verdict.record


class TestRefinementStage:
    """Tests for RefinementStage."""

    def _stage(self, llm: ScriptedLLM) -> RefinementStage:
        return RefinementStage(llm, REFINER_MODEL, "refine")

    def test_short_output_needs_one_call(self, sample_problem: Problem) -> None:
        """Test output up to twice the input length is returned after one call."""
        candidate = "x" * 100
        llm = ScriptedLLM({REFINER_MODEL: ["y" * 150]})

        result = self._stage(llm).refine(sample_problem, candidate)

        assert result == "y" * 150
        assert len(llm.calls) == 1
        assert llm.calls[0]["require_structured_output"] is False

    def test_exactly_twice_needs_one_call(self, sample_problem: Problem) -> None:
        """Test a ratio of exactly 2.0 is accepted."""
        llm = ScriptedLLM({REFINER_MODEL: ["y" * 200]})

        assert self._stage(llm).refine(sample_problem, "x" * 100) == "y" * 200
        assert len(llm.calls) == 1

    def test_long_output_is_corrected(self, sample_problem: Problem) -> None:
        """Test a too-long first pass gets a corrective call in the same conversation."""
        candidate = "x" * 100
        llm = ScriptedLLM({REFINER_MODEL: ["y" * 300, "z" * 180]})

        result = self._stage(llm).refine(sample_problem, candidate)

        assert result == "z" * 180
        assert len(llm.calls) == 2
        turns = llm.calls[1]["turns"]
        assert [turn.role for turn in turns] == ["user", "assistant", "user"]
        assert turns[0] == llm.calls[0]["turns"][0]
        assert turns[1].content == "y" * 300
        assert turns[2].content == PromptBuilder.REFINE_CORRECTION_PROMPT

    def test_still_too_long_falls_back_to_original(self, sample_problem: Problem) -> None:
        """Test ratios of 3.0 then 2.6 return the candidate verbatim."""
        candidate = "x" * 100
        llm = ScriptedLLM({REFINER_MODEL: ["y" * 300, "z" * 260]})

        assert self._stage(llm).refine(sample_problem, candidate) == candidate

    def test_corrected_output_at_limit_is_kept(self, sample_problem: Problem) -> None:
        """Test a corrective ratio of exactly 2.5 is accepted."""
        llm = ScriptedLLM({REFINER_MODEL: ["y" * 300, "z" * 250]})

        assert self._stage(llm).refine(sample_problem, "x" * 100) == "z" * 250

    def test_empty_candidate(self, sample_problem: Problem) -> None:
        """Test an empty candidate never takes on refined text."""
        llm = ScriptedLLM({REFINER_MODEL: ["something", "still something"]})

        assert self._stage(llm).refine(sample_problem, "") == ""
        assert len(llm.calls) == 2


class TestCleanerStage:
    """Tests for CleanerStage."""

    def test_scrub_cleans_each_field(self) -> None:
        """Test each unprotected field gets its own cleaning call."""
        llm = ScriptedLLM({CLEANER_MODEL: cleaned})
        record = {
            "Chain_of_Thought": "The answer is 42",
            "Validity_Feedback": "You should get 42",
            "Validity_Grade": "B",
        }

        result = CleanerStage(llm, CLEANER_MODEL, "clean").scrub(
            record, "Validity_Grade", ValidityStage.PROTECTED_KEYS
        )

        assert result == {
            "Chain_of_Thought": "cleaned: The answer is 42",
            "Validity_Feedback": "cleaned: You should get 42",
            "Validity_Grade": "B",
        }
        assert len(llm.calls) == 2

    def test_scrub_drops_other_protected_keys(self) -> None:
        """Test protected keys other than the grade are left out."""
        llm = ScriptedLLM({CLEANER_MODEL: cleaned})
        record = {"Answer_Status": "Wrong", "Validity_Feedback": "Nope", "Validity_Grade": "E"}

        result = CleanerStage(llm, CLEANER_MODEL, "clean").scrub(
            record, "Validity_Grade", ValidityStage.PROTECTED_KEYS
        )

        assert "Answer_Status" not in result
        assert result["Validity_Grade"] == "E"

    def test_clean_serializes_non_text_values(self) -> None:
        """Test non-string values are sent as JSON."""
        llm = ScriptedLLM({CLEANER_MODEL: cleaned})

        result = CleanerStage(llm, CLEANER_MODEL, "clean").clean(["step 1", "step 2"])

        assert result == 'cleaned: ["step 1", "step 2"]'

    def test_concurrent_scrub(self) -> None:
        """Test concurrent cleaning produces the same mapping."""
        llm = ScriptedLLM({CLEANER_MODEL: cleaned})
        record = {f"Field_{i}": f"text {i}" for i in range(6)}
        record["Quality_Grade"] = "A"

        result = CleanerStage(llm, CLEANER_MODEL, "clean", max_workers=4).scrub(
            record, "Quality_Grade", ("Quality_Grade",)
        )

        assert result == {
            **{f"Field_{i}": f"cleaned: text {i}" for i in range(6)},
            "Quality_Grade": "A",
        }
        assert len(llm.calls) == 6
