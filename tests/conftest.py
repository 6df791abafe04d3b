"""
Pytest configuration and fixtures.

Provides common test fixtures for all test modules. The scripted LLM they
wire into the engine lives in `scripted_llm.py`.
"""

from pathlib import Path
from typing import Any, Callable
from unittest.mock import patch

import pytest

from quanta_ftt.config import Settings
from quanta_ftt.grading import FeedbackEngine
from quanta_ftt.instructions import StageInstructions
from quanta_ftt.models import Problem
from scripted_llm import (
    CLEANER_MODEL,
    QUALITY_MODEL,
    REFINER_MODEL,
    SANITY_MODEL,
    VALIDITY_MODEL,
    ScriptedLLM,
)


# ==============================================================================
# Problem Fixtures
# ==============================================================================


@pytest.fixture
def sample_problem() -> Problem:
    """Create a sample problem."""
    return Problem(
        statement="Prove that the sum of two even integers is even.",
        reference_solutions="Write a = 2m and b = 2n. Then a + b = 2(m + n), which is even.",
        validity_requirements="The proof must be general, not by example.",
        quality_requirements="State the definition of an even integer.",
    )


@pytest.fixture
def sample_candidate() -> str:
    """Sample candidate solution text."""
    return "Let a = 2k and b = 2j. Their sum is 2k + 2j = 2(k + j), so it is even."


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with one distinct model per stage."""
    return Settings(
        openai_api_key="test-api-key-for-testing",
        sanity_model=SANITY_MODEL,
        refiner_model=REFINER_MODEL,
        validity_model=VALIDITY_MODEL,
        quality_model=QUALITY_MODEL,
        cleaner_model=CLEANER_MODEL,
        num_reruns=5,
        initial_confidence=0.95,
        hint_free_feedback=True,
        quality_stage_enabled=True,
        max_concurrent_calls=1,
        instructions_dir=None,
        instruction_urls={},
    )


@pytest.fixture
def test_instructions() -> StageInstructions:
    """Built-in default instructions."""
    return StageInstructions()


@pytest.fixture
def make_engine(
    test_settings: Settings, test_instructions: StageInstructions
) -> Callable[..., FeedbackEngine]:
    """Build a FeedbackEngine backed by a scripted LLM, with settings overrides."""

    def _make(llm: ScriptedLLM, **overrides: Any) -> FeedbackEngine:
        settings = test_settings.model_copy(update=overrides)
        with patch("quanta_ftt.grading.engine.LLMClient", return_value=llm):
            return FeedbackEngine(settings, test_instructions)

    return _make


# ==============================================================================
# File Fixtures
# ==============================================================================


@pytest.fixture
def problem_file(tmp_path: Path, sample_problem: Problem) -> Path:
    """Write the sample problem as JSON."""
    file_path = tmp_path / "problem.json"
    file_path.write_text(sample_problem.model_dump_json(), encoding="utf-8")
    return file_path


@pytest.fixture
def answer_file(tmp_path: Path, sample_candidate: str) -> Path:
    """Write the sample candidate solution."""
    file_path = tmp_path / "answer.md"
    file_path.write_text(sample_candidate, encoding="utf-8")
    return file_path
