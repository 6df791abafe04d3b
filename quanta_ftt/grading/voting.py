"""
Majority voting and confidence arithmetic for repeated stage runs.
"""

import math
from typing import Any, NamedTuple, Sequence


class MajorityVote(NamedTuple):
    """A value that won a strict majority of a vote round."""

    value: Any
    count: int
    index: int


def resolve_majority(values: Sequence[Any]) -> MajorityVote | None:
    """
    Find the first value held by more than half of the votes.

    Positions are scanned in their original order and the first one whose
    value qualifies wins, so results are deterministic for a given order.

    Args:
        values: Discriminant values in issuance order.

    Returns:
        The winning vote, or None when no value has a strict majority.
    """
    total = len(values)
    for index, value in enumerate(values):
        count = sum(1 for other in values if other == value)
        if count > total / 2:
            return MajorityVote(value=value, count=count, index=index)
    return None


def decay_confidence(confidence: float, vote: MajorityVote, total: int) -> float:
    """Scale a confidence level by the share of votes the winner received."""
    return confidence * (vote.count / total)


def confidence_percent(confidence: float) -> int:
    """Floor of the confidence as a percentage, within [0, 100]."""
    return max(0, min(100, math.floor(100 * confidence)))


def format_percent(confidence: float) -> str:
    """Render a confidence level the way feedback records carry it ("57%")."""
    return f"{confidence_percent(confidence)}%"


def parse_percent(value: Any) -> int:
    """
    Read a percentage string back into an integer.

    Raises:
        TypeError: If the value is not a string.
        ValueError: If the string holds no integer.
    """
    if not isinstance(value, str):
        raise TypeError(f"Expected a percentage string, got {type(value).__name__}")
    return int(value.replace("%", "").strip())
