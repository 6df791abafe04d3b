"""
Feedback engine - the core orchestrator.

Runs the grading stages in dependency order:

    SANITY -> (FAIL | ERROR | REFINE -> VALIDITY and QUALITY -> MERGE)

and composes their outputs into a single feedback record. Disagreement
between repeated model runs never raises; it degrades the record to a
"-" grade instead. Transport failures from the model endpoint propagate.
"""

import logging
from typing import Any

from quanta_ftt.config import Settings, get_settings
from quanta_ftt.grading.llm_client import LLMClient
from quanta_ftt.grading.stages import (
    CleanerStage,
    QualityStage,
    RefinementStage,
    SanityStage,
    ValidityStage,
)
from quanta_ftt.grading.voting import format_percent, parse_percent
from quanta_ftt.instructions import StageInstructions, load_instructions
from quanta_ftt.models import (
    GRADE_LETTERS,
    NO_GRADE,
    OVERALL_GRADE_KEY,
    SANITY_CHAIN_OF_THOUGHT_KEY,
    SANITY_CONFIDENCE_KEY,
    SANITY_JUSTIFICATION_KEY,
    SANITY_STATUS_KEY,
    FeedbackRecord,
    GradeVerdict,
    Problem,
    SanityStatus,
    SanityVerdict,
)

logger = logging.getLogger(__name__)

SANITY_ERROR_MESSAGE = "Most probably the model could not decide what to say"


class FeedbackEngine:
    """
    Main feedback engine with self-consistency voting.

    Configuration and instruction texts are fixed at construction; each
    call to `evaluate` builds its own votes and confidence values, so one
    engine can serve concurrent requests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        instructions: StageInstructions | None = None,
    ):
        """
        Initialize the feedback engine.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
            instructions: Stage instructions. Loaded from the configured
                sources if not provided.
        """
        self._settings = settings or get_settings()
        if instructions is None:
            instructions = load_instructions(self._settings)
        self._instructions = instructions
        self._llm_client = LLMClient(self._settings)

        s = self._settings
        i = self._instructions
        workers = s.max_concurrent_calls
        self._sanity = SanityStage(
            self._llm_client, s.sanity_model, i.sanity, i.sanity_shots, workers
        )
        self._refiner = RefinementStage(self._llm_client, s.refiner_model, i.refiner)
        self._validity = ValidityStage(
            self._llm_client, s.validity_model, i.validity, i.validity_shots, workers
        )
        self._quality = QualityStage(
            self._llm_client, s.quality_model, i.quality, i.quality_shots, workers
        )
        self._cleaner = CleanerStage(self._llm_client, s.cleaner_model, i.cleaner, workers)

    def evaluate(
        self,
        problem: Problem,
        candidate: str,
        num_reruns: int | None = None,
    ) -> FeedbackRecord:
        """
        Grade a candidate solution.

        Args:
            problem: The problem being answered.
            candidate: The submitted solution text.
            num_reruns: Override number of calls per voting stage.

        Returns:
            The feedback record, always carrying an "Overall Grade" key.

        Raises:
            LLMError: If the endpoint returns an empty completion.
            openai.APIError: On any transport or endpoint failure.
        """
        reruns = num_reruns or self._settings.num_reruns

        sanity = self._sanity.run_voted(
            problem, candidate, reruns, self._settings.initial_confidence
        )
        if sanity.is_terminal:
            return self._sanity_record(sanity)

        refined = self._refiner.refine(problem, candidate)

        validity = self._validity.review(
            problem, candidate, refined, reruns, sanity.confidence
        )
        if not self._settings.quality_stage_enabled:
            return self._merge_validity_only(validity)

        quality = self._quality.review(
            problem, candidate, reruns, self._settings.initial_confidence
        )
        return self._merge(validity, quality)

    def _sanity_record(self, verdict: SanityVerdict) -> FeedbackRecord:
        """Build the terminal record for a failed or undecided sanity check."""
        if verdict.status == SanityStatus.FAIL:
            return {
                OVERALL_GRADE_KEY: "FF",
                SANITY_STATUS_KEY: SanityStatus.FAIL.value,
                SANITY_JUSTIFICATION_KEY: verdict.justification,
                SANITY_CHAIN_OF_THOUGHT_KEY: verdict.chain_of_thought,
                SANITY_CONFIDENCE_KEY: format_percent(verdict.confidence),
            }
        return {
            OVERALL_GRADE_KEY: NO_GRADE,
            SANITY_STATUS_KEY: SanityStatus.ERROR.value,
            SANITY_JUSTIFICATION_KEY: SANITY_ERROR_MESSAGE,
        }

    def _merge(self, validity: GradeVerdict, quality: GradeVerdict) -> FeedbackRecord:
        """
        Downgrade, scrub and combine the validity and quality records.

        Field-shape problems (a missing confidence, a vote that settled on
        something other than a letter grade) produce the "-" fallback record.
        """
        validity_record = dict(validity.record)
        quality_record = dict(quality.record)

        try:
            validity_grade = _letter_grade(validity.grade, ValidityStage.DISCRIMINANT_KEY)
            quality_grade = _letter_grade(quality.grade, QualityStage.DISCRIMINANT_KEY)
            validity_percent = parse_percent(validity_record[ValidityStage.CONFIDENCE_KEY])
            quality_percent = parse_percent(quality_record[QualityStage.CONFIDENCE_KEY])

            validity_threshold = self._settings.validity_confidence_threshold
            quality_threshold = self._settings.quality_confidence_threshold

            # Checks read the voted grades. Quality is tested against the
            # validity confidence first, then against its own.
            if validity_grade == "A" and validity_percent < validity_threshold:
                validity_record[ValidityStage.DISCRIMINANT_KEY] = "B"
            if quality_grade == "A" and validity_percent < validity_threshold:
                quality_record[QualityStage.DISCRIMINANT_KEY] = "B"
            if validity_grade == "A" and validity_percent < validity_threshold:
                validity_record[ValidityStage.DISCRIMINANT_KEY] = "B"
            if quality_grade == "A" and quality_percent < quality_threshold:
                quality_record[QualityStage.DISCRIMINANT_KEY] = "B"

            final_validity = self._scrub_validity(validity_record, validity_grade)
            # Quality feedback is always scrubbed, whatever its grade.
            final_quality = self._cleaner.scrub(
                quality_record, QualityStage.DISCRIMINANT_KEY, QualityStage.PROTECTED_KEYS
            )

            return {
                **final_validity,
                **final_quality,
                OVERALL_GRADE_KEY: (
                    final_validity[ValidityStage.DISCRIMINANT_KEY]
                    + final_quality[QualityStage.DISCRIMINANT_KEY]
                ),
            }

        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Falling back to ungraded feedback: %s", e)
            validity_record = dict(validity.record)
            quality_record = dict(quality.record)
            validity_record[ValidityStage.DISCRIMINANT_KEY] = NO_GRADE
            quality_record[QualityStage.DISCRIMINANT_KEY] = NO_GRADE
            return {**validity_record, **quality_record, OVERALL_GRADE_KEY: NO_GRADE}

    def _merge_validity_only(self, validity: GradeVerdict) -> FeedbackRecord:
        """Downgrade and scrub the validity record when quality review is off."""
        validity_record = dict(validity.record)

        try:
            validity_grade = _letter_grade(validity.grade, ValidityStage.DISCRIMINANT_KEY)
            validity_percent = parse_percent(validity_record[ValidityStage.CONFIDENCE_KEY])

            if (
                validity_grade == "A"
                and validity_percent < self._settings.validity_confidence_threshold
            ):
                validity_record[ValidityStage.DISCRIMINANT_KEY] = "B"

            final_validity = self._scrub_validity(validity_record, validity_grade)
            return {
                **final_validity,
                OVERALL_GRADE_KEY: final_validity[ValidityStage.DISCRIMINANT_KEY],
            }

        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Falling back to ungraded feedback: %s", e)
            validity_record = dict(validity.record)
            validity_record[ValidityStage.DISCRIMINANT_KEY] = NO_GRADE
            return {**validity_record, OVERALL_GRADE_KEY: NO_GRADE}

    def _scrub_validity(self, record: dict[str, Any], voted_grade: str) -> dict[str, Any]:
        """Scrub validity feedback for solutions voted B, E or F."""
        if voted_grade == "A" or not self._settings.hint_free_feedback:
            return record
        return self._cleaner.scrub(
            record, ValidityStage.DISCRIMINANT_KEY, ValidityStage.PROTECTED_KEYS
        )

    def health_check(self) -> bool:
        """
        Check if the feedback engine is operational.

        Returns:
            True if LLM API is reachable.
        """
        return self._llm_client.health_check()


def _letter_grade(grade: Any, key: str) -> str:
    """
    Check a voted grade is a letter grade.

    Raises:
        ValueError: If the grade is not one of A, B, E, F.
    """
    if grade not in GRADE_LETTERS:
        raise ValueError(f"{key} is not a letter grade: {grade!r}")
    return grade


def overall_grade(record: FeedbackRecord) -> str:
    """Get the overall grade a caller should store alongside a record."""
    grade = record.get(OVERALL_GRADE_KEY)
    return grade if isinstance(grade, str) and grade else NO_GRADE


def evaluate_solution(
    problem_statement: str,
    reference_solutions: str,
    candidate: str,
    validity_requirements: str = "",
    quality_requirements: str = "",
    engine: FeedbackEngine | None = None,
) -> FeedbackRecord:
    """
    Grade a solution from plain problem fields.

    Args:
        problem_statement: The problem statement.
        reference_solutions: Correct solution(s) as text.
        candidate: The submitted solution.
        validity_requirements: Optional extra validity requirements.
        quality_requirements: Optional extra quality requirements.
        engine: Engine to use; a default one is built if not provided.

    Returns:
        The feedback record.
    """
    problem = Problem(
        statement=problem_statement,
        reference_solutions=reference_solutions,
        validity_requirements=validity_requirements or "",
        quality_requirements=quality_requirements or "",
    )
    return (engine or FeedbackEngine()).evaluate(problem, candidate)
