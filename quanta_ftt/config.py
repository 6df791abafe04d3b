"""
Configuration management for the Quanta feedback grader.

Uses Pydantic Settings for type-safe configuration loading from environment variables.
All configuration is validated at startup to fail fast on misconfiguration.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL = "gpt-4o-2024-08-06"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are validated at startup. Missing required fields
    will raise clear validation errors. Settings are read-only once
    the engine is built; nothing in the pipeline mutates them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # OpenAI API Configuration
    # ==========================================================================
    openai_api_key: str = Field(
        ...,
        description="API key for the OpenAI (or compatible) endpoint",
        min_length=10,
    )

    openai_base_url: str | None = Field(
        default=None,
        description="Base URL override for an OpenAI-compatible endpoint",
    )

    llm_temperature: float | None = Field(
        default=None,
        ge=0.0,
        le=2.0,
        description="Sampling temperature; None leaves the endpoint default",
    )

    # ==========================================================================
    # Per-stage Models
    # ==========================================================================
    sanity_model: str = Field(default=DEFAULT_MODEL, description="Model for the sanity check")
    refiner_model: str = Field(default=DEFAULT_MODEL, description="Model for solution refinement")
    validity_model: str = Field(default=DEFAULT_MODEL, description="Model for validity review")
    quality_model: str = Field(default=DEFAULT_MODEL, description="Model for quality review")
    cleaner_model: str = Field(default=DEFAULT_MODEL, description="Model for hint cleaning")

    # ==========================================================================
    # Voting Configuration
    # ==========================================================================
    num_reruns: int = Field(
        default=5,
        ge=1,
        le=15,
        description="Number of repeated calls per voting stage",
    )

    initial_confidence: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Starting confidence of every voting track",
    )

    validity_confidence_threshold: int = Field(
        default=75,
        ge=0,
        le=100,
        description="Confidence percentage below which an A grade is downgraded to B",
    )

    quality_confidence_threshold: int = Field(
        default=80,
        ge=0,
        le=100,
        description="Quality confidence percentage below which an A grade is downgraded to B",
    )

    # ==========================================================================
    # Pipeline Configuration
    # ==========================================================================
    hint_free_feedback: bool = Field(
        default=True,
        description="Scrub answer hints from validity feedback graded B/E/F",
    )

    quality_stage_enabled: bool = Field(
        default=True,
        description="Run the quality review stage alongside validity",
    )

    max_concurrent_calls: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Worker threads used for independent calls within a stage",
    )

    # ==========================================================================
    # Instruction Sources
    # ==========================================================================
    instructions_dir: Path | None = Field(
        default=None,
        description="Directory holding <name>.md instruction files",
    )

    instruction_urls: dict[str, str] = Field(
        default_factory=dict,
        description="Instruction name to Google Drive share URL",
    )

    @field_validator("openai_base_url")
    @classmethod
    def validate_base_url(cls, v: str | None) -> str | None:
        """Ensure base URL doesn't have trailing slash."""
        return v.rstrip("/") if v else v

    @field_validator("instructions_dir")
    @classmethod
    def validate_instructions_dir(cls, v: Path | None) -> Path | None:
        """Ensure the instructions directory exists when given."""
        if v is not None and not v.is_dir():
            raise ValueError(f"Instructions directory not found: {v}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to ensure settings are only loaded once.
    """
    return Settings()
