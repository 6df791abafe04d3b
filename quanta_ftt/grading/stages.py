"""
Pipeline stages.

Each stage pairs one model and one set of system instructions with its own
prompt layout and post-processing. Voting stages issue the same prompt N
times, parse every response, and resolve the discriminant by majority.
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, ClassVar, Iterable, TypeVar

from quanta_ftt.grading.llm_client import ConversationTurn, LLMClient
from quanta_ftt.grading.parser import ResponseParser, discriminant
from quanta_ftt.grading.prompt_builder import PromptBuilder
from quanta_ftt.grading.voting import decay_confidence, format_percent, resolve_majority
from quanta_ftt.models import (
    JSON_ERROR_SENTINEL,
    NO_GRADE,
    GradeVerdict,
    Malformed,
    Problem,
    SanityStatus,
    SanityVerdict,
    StageOutcome,
    Structured,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def fan_out(func: Callable[[T], R], items: Iterable[T], max_workers: int = 1) -> list[R]:
    """
    Apply `func` to every item, optionally on a thread pool.

    Results always come back in the order of `items`. The first exception
    raised by any call propagates to the caller.
    """
    if max_workers <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(func, items))


class Stage:
    """A pipeline stage bound to one model and one set of instructions."""

    def __init__(
        self,
        llm_client: LLMClient,
        model_id: str,
        instructions: str,
        max_workers: int = 1,
    ):
        self._llm_client = llm_client
        self._model_id = model_id
        self._instructions = instructions
        self._max_workers = max_workers

    def _generate(self, prompt: str, require_structured_output: bool = False) -> str:
        return self._llm_client.generate(
            self._model_id,
            self._instructions,
            prompt,
            require_structured_output,
        )


class VotingStage(Stage):
    """
    A stage resolved by majority vote over repeated structured calls.

    Subclasses name the field of the model's JSON output that is voted on.
    """

    DISCRIMINANT_KEY: ClassVar[str] = ""

    def __init__(
        self,
        llm_client: LLMClient,
        model_id: str,
        instructions: str,
        shots: str = "",
        max_workers: int = 1,
    ):
        super().__init__(llm_client, model_id, instructions, max_workers)
        self._shots = shots
        self._parser = ResponseParser()

    def _vote_round(self, prompt: str, num_reruns: int) -> tuple[list[StageOutcome], list[Any]]:
        """
        Run the same prompt `num_reruns` times.

        Returns:
            Tuple of (outcomes, discriminant values), both in issuance order.
        """
        responses = fan_out(
            lambda _: self._generate(prompt, require_structured_output=True),
            range(num_reruns),
            self._max_workers,
        )
        outcomes = [self._parser.parse(response) for response in responses]
        votes = [discriminant(outcome, self.DISCRIMINANT_KEY) for outcome in outcomes]

        logger.debug("%s votes: %s", type(self).__name__, votes)
        return outcomes, votes


class SanityStage(VotingStage):
    """Gates submissions that are not a genuine attempt at the problem."""

    DISCRIMINANT_KEY = "Sanity_Status"
    JUSTIFICATION_KEY = "Sanity_Status_Justification"
    CHAIN_OF_THOUGHT_KEY = "Chain_of_Thought"

    def run_voted(
        self,
        problem: Problem,
        candidate: str,
        num_reruns: int,
        confidence: float = 0.95,
    ) -> SanityVerdict:
        """
        Vote on whether the candidate passes the sanity check.

        Args:
            problem: The problem being answered.
            candidate: The submitted solution.
            num_reruns: Number of independent calls.
            confidence: Starting confidence level.

        Returns:
            PASS or FAIL with the decayed confidence, or ERROR when the
            votes did not settle on either.
        """
        prompt = PromptBuilder.build_sanity_prompt(problem, candidate, self._shots)
        outcomes, votes = self._vote_round(prompt, num_reruns)

        vote = resolve_majority(votes)
        if vote is None:
            logger.info("Sanity check reached no consensus: %s", votes)
            return SanityVerdict(status=SanityStatus.ERROR, confidence=confidence)

        confidence = decay_confidence(confidence, vote, num_reruns)
        winner = outcomes[vote.index]
        fields = winner.fields if isinstance(winner, Structured) else {}

        if vote.value == SanityStatus.FAIL.value:
            status = SanityStatus.FAIL
            justification = fields.get(self.JUSTIFICATION_KEY, NO_GRADE)
        elif vote.value == SanityStatus.PASS.value:
            status = SanityStatus.PASS
            justification = NO_GRADE
        else:
            logger.info("Sanity check settled on unusable value %r", vote.value)
            return SanityVerdict(status=SanityStatus.ERROR, confidence=confidence)

        logger.info("Sanity %s (%d/%d votes)", status.value, vote.count, num_reruns)
        return SanityVerdict(
            status=status,
            confidence=confidence,
            justification=justification,
            chain_of_thought=fields.get(self.CHAIN_OF_THOUGHT_KEY),
        )


class GradingStage(VotingStage):
    """
    A voting stage producing a letter grade and a feedback record.

    Subclasses name the keys of the record this stage owns.
    """

    FEEDBACK_KEY: ClassVar[str] = ""
    VOTES_KEY: ClassVar[str] = ""
    CONFIDENCE_KEY: ClassVar[str] = ""
    # Keys never sent to the cleaner; only DISCRIMINANT_KEY is carried over.
    PROTECTED_KEYS: ClassVar[tuple[str, ...]] = ()

    NO_CONSENSUS_MESSAGE = "The model could not agree on the final grade."

    def _grade(self, prompt: str, num_reruns: int, confidence: float) -> GradeVerdict:
        outcomes, votes = self._vote_round(prompt, num_reruns)

        vote = resolve_majority(votes)
        if vote is None:
            logger.info("%s reached no consensus: %s", type(self).__name__, votes)
            return GradeVerdict(
                grade=NO_GRADE,
                record={
                    self.DISCRIMINANT_KEY: NO_GRADE,
                    self.FEEDBACK_KEY: self.NO_CONSENSUS_MESSAGE,
                    self.VOTES_KEY: votes,
                },
            )

        confidence = decay_confidence(confidence, vote, num_reruns)
        winner = outcomes[vote.index]
        logger.info(
            "%s grade %r (%d/%d votes)", type(self).__name__, vote.value, vote.count, num_reruns
        )

        if isinstance(winner, Malformed):
            record = {
                self.DISCRIMINANT_KEY: JSON_ERROR_SENTINEL,
                self.FEEDBACK_KEY: winner.raw_text,
            }
        else:
            record = dict(winner.fields)
            record[self.CONFIDENCE_KEY] = format_percent(confidence)

        return GradeVerdict(grade=vote.value, record=record)


class ValidityStage(GradingStage):
    """Grades whether the solution is correct."""

    DISCRIMINANT_KEY = "Validity_Grade"
    FEEDBACK_KEY = "Validity_Feedback"
    VOTES_KEY = "Model_Validity_Grades"
    # Key name is read by existing clients as-is.
    CONFIDENCE_KEY = "Confidence_In_Validify_Feedback"
    PROTECTED_KEYS = ("Answer Status", "Answer_Status", "Validity Grade", "Validity_Grade")

    def review(
        self,
        problem: Problem,
        candidate: str,
        refined_candidate: str,
        num_reruns: int,
        confidence: float = 0.95,
    ) -> GradeVerdict:
        """
        Vote on the validity grade.

        Args:
            problem: The problem being answered.
            candidate: The submitted solution.
            refined_candidate: Proofread solution given as extra context.
            num_reruns: Number of independent calls.
            confidence: Confidence carried over from the sanity check.

        Returns:
            The voted grade and its feedback record.
        """
        prompt = PromptBuilder.build_validity_prompt(
            problem, candidate, refined_candidate, self._shots
        )
        return self._grade(prompt, num_reruns, confidence)


class QualityStage(GradingStage):
    """Grades how well the solution is written."""

    DISCRIMINANT_KEY = "Quality_Grade"
    FEEDBACK_KEY = "Quality_Feedback"
    VOTES_KEY = "Model_Quality_Grades"
    CONFIDENCE_KEY = "Confidence_In_Quality_Feedback"
    PROTECTED_KEYS = ("Answer Status", "Answer_Status", "Quality Grade", "Quality_Grade")

    def review(
        self,
        problem: Problem,
        candidate: str,
        num_reruns: int,
        confidence: float = 0.95,
    ) -> GradeVerdict:
        """Vote on the quality grade, starting from its own confidence track."""
        prompt = PromptBuilder.build_quality_prompt(problem, candidate, self._shots)
        return self._grade(prompt, num_reruns, confidence)


class RefinementStage(Stage):
    """
    Produces a proofread copy of the candidate solution.

    The copy is only used as context for the validity review. Output that
    grows too long gets one corrective follow-up in the same conversation;
    if that is still too long the candidate is returned unchanged.
    """

    MAX_LENGTH_RATIO = 2.0
    DISCARD_LENGTH_RATIO = 2.5

    def refine(self, problem: Problem, candidate: str) -> str:
        prompt = PromptBuilder.build_refine_prompt(problem, candidate)
        first_pass = self._generate(prompt)

        if _length_ratio(first_pass, candidate) <= self.MAX_LENGTH_RATIO:
            return first_pass

        logger.info("Refined solution too long, requesting a shorter version")
        second_pass = self._llm_client.invoke(
            self._model_id,
            self._instructions,
            [
                ConversationTurn("user", prompt),
                ConversationTurn("assistant", first_pass),
                ConversationTurn("user", PromptBuilder.REFINE_CORRECTION_PROMPT),
            ],
        )

        if _length_ratio(second_pass, candidate) > self.DISCARD_LENGTH_RATIO:
            logger.info("Refined solution still too long, keeping the original")
            return candidate
        return second_pass


class CleanerStage(Stage):
    """Removes references to the correct answer from feedback text."""

    def clean(self, feedback: Any) -> str:
        """Clean a single feedback value with one model call."""
        text = feedback if isinstance(feedback, str) else json.dumps(feedback, ensure_ascii=False)
        return self._generate(PromptBuilder.build_cleaner_prompt(text))

    def scrub(
        self,
        record: dict[str, Any],
        grade_key: str,
        protected_keys: tuple[str, ...],
    ) -> dict[str, Any]:
        """
        Clean every field of a feedback record.

        Fields in `protected_keys` are not sent to the model and are left
        out of the result, except `grade_key` which is copied through.

        Args:
            record: The feedback record to scrub.
            grade_key: Key of the grade, copied unchanged.
            protected_keys: Keys excluded from cleaning.

        Returns:
            A new record with cleaned values.
        """
        keys = [key for key in record if key not in protected_keys]
        cleaned = fan_out(lambda key: self.clean(record[key]), keys, self._max_workers)

        scrubbed = dict(zip(keys, cleaned))
        scrubbed[grade_key] = record[grade_key]
        return scrubbed


def _length_ratio(output: str, original: str) -> float:
    if not original:
        return float("inf") if output else 0.0
    return len(output) / len(original)
