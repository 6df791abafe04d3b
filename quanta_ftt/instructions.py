"""
Stage instruction loading.

Each pipeline stage runs under its own system instructions, and the voting
stages append chain-of-thought example shots to their prompts. Texts are
resolved once at start-up from, in order of precedence:

1. A Google Drive share URL listed in `Settings.instruction_urls`
2. A `<name>.md` file in `Settings.instructions_dir`
3. The built-in default below
"""

import logging
import re
from pathlib import Path

import httpx
from pydantic import BaseModel, ConfigDict, Field

from quanta_ftt.config import Settings

logger = logging.getLogger(__name__)

DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={file_id}"

_DRIVE_ID_PATTERN = re.compile(r"[-\w]{25,}")


class InstructionLoadError(Exception):
    """Raised when an instruction text cannot be loaded."""

    def __init__(self, message: str, source: str, cause: Exception | None = None):
        self.source = source
        self.cause = cause
        super().__init__(f"Failed to load instructions from '{source}': {message}")


class StageInstructions(BaseModel):
    """System instructions and example shots for every stage."""

    model_config = ConfigDict(frozen=True)

    sanity: str = Field(
        default=(
            "You check whether a solution is a genuine attempt at the problem. "
            'Answer with a JSON object with keys "Chain_of_Thought", '
            '"Sanity_Status" ("Pass" or "Fail") and "Sanity_Status_Justification".'
        ),
    )
    refiner: str = Field(
        default=(
            "You proofread solutions. Improve readability and grammar only. "
            "Never fix mistakes, never add explanations, never change the final answer."
        ),
    )
    validity: str = Field(
        default=(
            "You review the correctness of a solution against the reference solutions. "
            'Answer with a JSON object with keys "Chain_of_Thought", "Validity_Feedback" '
            'and "Validity_Grade" (one of "A", "B", "E", "F").'
        ),
    )
    quality: str = Field(
        default=(
            "You review the presentation and rigour of a solution. "
            'Answer with a JSON object with keys "Chain_of_Thought", "Quality_Feedback" '
            'and "Quality_Grade" (one of "A", "B", "E", "F").'
        ),
    )
    cleaner: str = Field(
        default=(
            "You rewrite feedback so that it no longer reveals the correct answer "
            "or how to reach it. Keep everything else unchanged. Output only the feedback."
        ),
    )
    sanity_shots: str = ""
    validity_shots: str = ""
    quality_shots: str = ""


def extract_drive_file_id(url: str) -> str:
    """
    Get the file id from a Google Drive share URL.

    Raises:
        InstructionLoadError: If the URL holds no file id.
    """
    match = _DRIVE_ID_PATTERN.search(url)
    if not match:
        raise InstructionLoadError("Invalid Google Drive URL", url)
    return match.group(0)


def fetch_drive_text(url: str, client: httpx.Client | None = None) -> str:
    """
    Download a publicly shared Google Drive text file.

    Args:
        url: Share URL of the file.
        client: HTTP client to use; a short-lived one is created if omitted.

    Returns:
        The file content.

    Raises:
        InstructionLoadError: If the file cannot be downloaded.
    """
    download_url = DRIVE_DOWNLOAD_URL.format(file_id=extract_drive_file_id(url))
    owns_client = client is None
    http = client or httpx.Client(follow_redirects=True, timeout=30.0)

    try:
        response = http.get(download_url)
        response.raise_for_status()
        return response.text
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            raise InstructionLoadError(
                "File not found or not publicly accessible", url, cause=e
            ) from e
        raise InstructionLoadError(f"Failed to read file: {e}", url, cause=e) from e
    except httpx.HTTPError as e:
        raise InstructionLoadError(f"Failed to read file: {e}", url, cause=e) from e
    finally:
        if owns_client:
            http.close()


def _read_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise InstructionLoadError(str(e), str(path), cause=e) from e


def load_instructions(settings: Settings, client: httpx.Client | None = None) -> StageInstructions:
    """
    Resolve every stage instruction text.

    Args:
        settings: Configuration naming the instruction sources.
        client: Optional HTTP client for URL sources.

    Returns:
        The resolved instructions.

    Raises:
        InstructionLoadError: If a configured source cannot be read.
    """
    unknown = set(settings.instruction_urls) - set(StageInstructions.model_fields)
    if unknown:
        raise InstructionLoadError(
            f"Unknown instruction names: {sorted(unknown)}", "instruction_urls"
        )

    values: dict[str, str] = {}
    for name in StageInstructions.model_fields:
        url = settings.instruction_urls.get(name)
        if url:
            logger.info("Loading %s instructions from %s", name, url)
            values[name] = fetch_drive_text(url, client)
            continue

        if settings.instructions_dir is not None:
            path = settings.instructions_dir / f"{name}.md"
            if path.is_file():
                logger.info("Loading %s instructions from %s", name, path)
                values[name] = _read_file(path)

    return StageInstructions(**values)
