"""
Quanta Feedback CLI Application.

Provides a command-line interface for grading a solution to a problem
with the self-consistency feedback pipeline.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from openai import OpenAIError
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from quanta_ftt.config import get_settings
from quanta_ftt.grading import FeedbackEngine, LLMError, overall_grade
from quanta_ftt.instructions import InstructionLoadError
from quanta_ftt.models import OVERALL_GRADE_KEY, FeedbackRecord, Problem

# Create Typer app
app = typer.Typer(
    name="quanta-ftt",
    help="Self-consistency LLM feedback for problem solutions",
    add_completion=False,
)

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@app.command()
def grade(
    problem_file: Annotated[Path, typer.Argument(help="Path to the problem JSON file")],
    answer_file: Annotated[Path, typer.Argument(help="Path to the solution text file")],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Output file path for the JSON feedback"),
    ] = None,
    reruns: Annotated[
        Optional[int],
        typer.Option("--reruns", "-n", min=1, help="Number of calls per voting stage"),
    ] = None,
    no_quality: Annotated[
        bool,
        typer.Option("--no-quality", help="Grade validity only"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show detailed output"),
    ] = False,
) -> None:
    """
    Grade a solution against a problem.

    The problem file is a JSON object with "statement", "reference_solutions"
    and optionally "validity_requirements" and "quality_requirements".
    """
    _configure_logging(verbose)

    try:
        settings = get_settings()
        if no_quality:
            settings = settings.model_copy(update={"quality_stage_enabled": False})

        if not problem_file.exists():
            console.print(f"[red]Error:[/red] Problem file not found: {problem_file}")
            raise typer.Exit(1)

        if not answer_file.exists():
            console.print(f"[red]Error:[/red] Answer file not found: {answer_file}")
            raise typer.Exit(1)

        problem = Problem.model_validate_json(problem_file.read_text(encoding="utf-8"))
        candidate = answer_file.read_text(encoding="utf-8")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Loading instructions...", total=None)
            engine = FeedbackEngine(settings)

            progress.update(task, description="Grading... (this may take a moment)")
            record = engine.evaluate(problem, candidate, num_reruns=reruns)

        _display_record(record, verbose)

        if output:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8")
            console.print(f"\n[green]Feedback saved to:[/green] {output}")

    except ValidationError as e:
        console.print(f"[red]Invalid Input:[/red] {e}")
        raise typer.Exit(1)
    except InstructionLoadError as e:
        console.print(f"[red]Instruction Error:[/red] {e}")
        raise typer.Exit(1)
    except LLMError as e:
        console.print(f"[red]LLM Error:[/red] {e}")
        raise typer.Exit(1)
    except OpenAIError as e:
        console.print(f"[red]API Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def health() -> None:
    """
    Check if the feedback system is operational.

    Verifies API connectivity and configuration.
    """
    _configure_logging(False)

    try:
        settings = get_settings()
        console.print("[bold]Quanta Feedback Health Check[/bold]\n")

        console.print("[dim]Checking configuration...[/dim]")
        console.print(f"  API Base URL: {settings.openai_base_url or 'default'}")
        console.print(f"  Sanity Model: {settings.sanity_model}")
        console.print(f"  Validity Model: {settings.validity_model}")
        console.print(f"  Quality Stage: {'on' if settings.quality_stage_enabled else 'off'}")
        console.print(f"  Reruns: {settings.num_reruns}")

        console.print("\n[dim]Checking API connectivity...[/dim]")
        engine = FeedbackEngine(settings)

        if engine.health_check():
            console.print("[green]✓ API is reachable[/green]")
        else:
            console.print("[red]✗ API is not reachable[/red]")
            raise typer.Exit(1)

        console.print("\n[green]All systems operational[/green]")

    except (ValidationError, InstructionLoadError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _display_record(record: FeedbackRecord, verbose: bool = False) -> None:
    """Display a feedback record as a grade panel and a field table."""
    grade_value = overall_grade(record)
    grade_color = "green" if grade_value.startswith("A") else "red" if grade_value in ("-", "FF") else "yellow"
    console.print(
        Panel(f"[{grade_color}][bold]{grade_value}[/bold][/{grade_color}]", title="Overall Grade")
    )

    table = Table(title="Feedback")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    for key, value in record.items():
        if key == OVERALL_GRADE_KEY:
            continue
        if not verbose and "Chain" in key:
            continue
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        table.add_row(key, text)

    console.print(table)


if __name__ == "__main__":
    app()
