"""
Feedback Pipeline Module.

Core grading logic using LLM stages with majority voting for consistency.
"""

from quanta_ftt.grading.engine import FeedbackEngine, evaluate_solution, overall_grade
from quanta_ftt.grading.llm_client import ConversationTurn, LLMClient, LLMError
from quanta_ftt.grading.parser import ResponseParser, discriminant
from quanta_ftt.grading.prompt_builder import PromptBuilder
from quanta_ftt.grading.voting import MajorityVote, resolve_majority

__all__ = [
    "ConversationTurn",
    "FeedbackEngine",
    "LLMClient",
    "LLMError",
    "MajorityVote",
    "PromptBuilder",
    "ResponseParser",
    "discriminant",
    "evaluate_solution",
    "overall_grade",
    "resolve_majority",
]
