"""
Response parser for structured LLM output.

Decoding never raises: a response that is not a JSON object becomes a
`Malformed` outcome, which voting treats as one more possible value.
"""

import json
import re
from typing import Any

from quanta_ftt.models import JSON_ERROR_SENTINEL, Malformed, StageOutcome, Structured

_FENCE_PATTERN = re.compile(r"^\s*```(?:json)?\s*([\s\S]*?)```\s*$")


class ResponseParser:
    """
    Parses raw model text into stage outcomes.

    Accepts:
    1. A bare JSON object
    2. A JSON object wrapped in a Markdown code block
    """

    def parse(self, response: str) -> StageOutcome:
        """
        Parse an LLM response.

        Args:
            response: Raw LLM response (expected JSON).

        Returns:
            Structured with the decoded fields, or Malformed with the raw text.
        """
        try:
            data = json.loads(self._strip_fence(response))
        except (json.JSONDecodeError, TypeError):
            return Malformed(raw_text=str(response))

        if not isinstance(data, dict):
            return Malformed(raw_text=response)

        return Structured(fields=data)

    def _strip_fence(self, response: str) -> str:
        """Remove a surrounding markdown code block if present."""
        match = _FENCE_PATTERN.match(response)
        if match:
            return match.group(1).strip()
        return response


def discriminant(outcome: StageOutcome, key: str) -> Any:
    """
    Get the value an outcome votes with.

    Args:
        outcome: A parsed stage outcome.
        key: The stage's discriminant field.

    Returns:
        The field value, or the JSON error sentinel when the outcome is
        malformed or the field is absent.
    """
    if isinstance(outcome, Structured):
        return outcome.fields.get(key, JSON_ERROR_SENTINEL)
    return JSON_ERROR_SENTINEL
