"""
LLM Client for the OpenAI chat completions API.

Provides a thin wrapper around the OpenAI SDK. One call to `invoke` is one
outbound request: there is no retry and no parsing here. Transport and
endpoint errors raised by the SDK reach the caller unchanged.
"""

import logging
from typing import Any, NamedTuple, Sequence

from openai import OpenAI

from quanta_ftt.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Raised when the endpoint answers without usable content."""

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)


class ConversationTurn(NamedTuple):
    """A single chat message following the system instructions."""

    role: str
    content: str


class LLMClient:
    """
    Client for interacting with an OpenAI-compatible chat endpoint.

    Model identifiers are supplied per call so one client serves every
    pipeline stage.
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the LLM client.

        Args:
            settings: Configuration settings. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()
        self._client = OpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
        )

    def invoke(
        self,
        model_id: str,
        system_instructions: str,
        turns: Sequence[ConversationTurn],
        require_structured_output: bool = False,
    ) -> str:
        """
        Request one completion and return its raw text.

        Args:
            model_id: Model to query.
            system_instructions: System message defining the model's role.
            turns: Ordered (role, content) messages after the system message.
            require_structured_output: Constrain the output to a JSON object.

        Returns:
            The generated text.

        Raises:
            LLMError: If the endpoint returns no content.
            openai.APIError: On any transport or endpoint failure.
        """
        messages: list[dict[str, str]] = [{"role": "system", "content": system_instructions}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in turns)

        kwargs: dict[str, Any] = {}
        if require_structured_output:
            kwargs["response_format"] = {"type": "json_object"}
        if self._settings.llm_temperature is not None:
            kwargs["temperature"] = self._settings.llm_temperature

        logger.debug("Invoking %s with %d turn(s)", model_id, len(messages) - 1)
        response = self._client.chat.completions.create(
            model=model_id,
            messages=messages,  # type: ignore[arg-type]
            **kwargs,
        )

        if response.choices and response.choices[0].message.content:
            return response.choices[0].message.content

        raise LLMError(f"Empty response from {model_id}")

    def generate(
        self,
        model_id: str,
        system_instructions: str,
        prompt: str,
        require_structured_output: bool = False,
    ) -> str:
        """Single-turn shorthand for `invoke`."""
        return self.invoke(
            model_id,
            system_instructions,
            [ConversationTurn("user", prompt)],
            require_structured_output,
        )

    def health_check(self, model_id: str | None = None) -> bool:
        """
        Check if the API is reachable.

        Returns:
            True if API is healthy, False otherwise.
        """
        try:
            response = self._client.chat.completions.create(
                model=model_id or self._settings.sanity_model,
                messages=[{"role": "user", "content": "ping"}],
                max_tokens=5,
            )
            return bool(response.choices)
        except Exception:
            logger.exception("Health check failed")
            return False
