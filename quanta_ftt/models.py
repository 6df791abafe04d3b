"""
Pydantic models for the Quanta feedback grader.

These models define the schemas for:
- Problems supplied to the pipeline
- Stage outcomes (structured or malformed model output)
- Intermediate stage verdicts

Feedback records returned to callers are plain ordered dicts: the model
decides most of their keys, and only the reserved keys below are read by
the pipeline.
"""

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


# ==============================================================================
# Reserved Record Keys
# ==============================================================================

OVERALL_GRADE_KEY = "Overall Grade"
SANITY_STATUS_KEY = "Sanity Status"
SANITY_JUSTIFICATION_KEY = "Sanity Status Justification"
SANITY_CHAIN_OF_THOUGHT_KEY = "Sanity Chain of Thought"
SANITY_CONFIDENCE_KEY = "Confidence In This Status"

# Value voted on when an outcome is malformed or lacks its discriminant.
JSON_ERROR_SENTINEL = "Error_JSON_Formatting"

NO_GRADE = "-"
GRADE_LETTERS = ("A", "B", "E", "F")

FeedbackRecord = dict[str, Any]


# ==============================================================================
# Problem Models
# ==============================================================================


class Problem(BaseModel):
    """
    A problem to grade solutions against.

    Supplied per evaluation call by the caller, already fetched from storage.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    statement: str = Field(
        ...,
        min_length=1,
        description="The problem statement",
    )

    reference_solutions: str = Field(
        ...,
        min_length=1,
        description="One or more correct solutions, as text",
    )

    validity_requirements: str = Field(
        default="",
        description="Optional extra requirements for the validity review",
    )

    quality_requirements: str = Field(
        default="",
        description="Optional extra requirements for the quality review",
    )


# ==============================================================================
# Stage Outcome Models
# ==============================================================================


class Structured(BaseModel):
    """A model response that decoded to a JSON object."""

    model_config = ConfigDict(frozen=True)

    fields: dict[str, Any] = Field(default_factory=dict)


class Malformed(BaseModel):
    """A model response that could not be decoded."""

    model_config = ConfigDict(frozen=True)

    raw_text: str


StageOutcome = Union[Structured, Malformed]


# ==============================================================================
# Verdict Models
# ==============================================================================


class SanityStatus(str, Enum):
    """Resolved status of the sanity stage."""

    PASS = "Pass"
    FAIL = "Fail"
    ERROR = "Error"


class SanityVerdict(BaseModel):
    """
    Result of the voted sanity check.

    Only PASS lets the pipeline continue; FAIL and ERROR are terminal. The
    justification and chain of thought are passed through exactly as the
    model wrote them.
    """

    model_config = ConfigDict(frozen=True)

    status: SanityStatus
    confidence: float = Field(..., ge=0.0, le=1.0)
    justification: Any = NO_GRADE
    chain_of_thought: Any = None

    @property
    def is_terminal(self) -> bool:
        """Whether the pipeline stops at this verdict."""
        return self.status != SanityStatus.PASS


class GradeVerdict(BaseModel):
    """
    Result of a voted grading stage (validity or quality).

    `grade` is the voted value of the grade key. `record` holds the fields
    of the winning response, or a placeholder record when the vote produced
    no usable grade.
    """

    model_config = ConfigDict(frozen=True)

    grade: Any
    record: dict[str, Any]
