"""Command line interface for Storyfox."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from storyfox.context import get_default_config
from storyfox.enrichment import enrich
from storyfox.error_handling import StoryfoxError
from storyfox.models import BookFormat, IllustrationStyle, StoryBook
from storyfox.pipeline import PipelineResult, StorybookPipeline
from storyfox.prompt_analysis import PromptAnalysisEngine, heuristic_analysis
from storyfox.utils import get_output_directory, save_image_bytes

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )


def build_pipeline() -> StorybookPipeline:
    return StorybookPipeline.from_settings()


def image_filename(index: int) -> str:
    return "cover.png" if index == 0 else f"page_{index:02d}.png"


def save_result(result: PipelineResult, base_dir: Path) -> Path:
    """Write ``book.json`` and every generated image; returns the book directory."""
    output_dir = get_output_directory(result.book.title, base_dir)
    book_data = result.book.model_dump(by_alias=True)
    book_data["missing"] = {str(index): message for index, message in sorted(result.missing.items())}
    (output_dir / "book.json").write_text(json.dumps(book_data, indent=2, ensure_ascii=False), encoding="utf-8")

    for index, outcome in sorted(result.images.items()):
        try:
            save_image_bytes(outcome.image, output_dir / image_filename(index))
        except (OSError, ValueError) as e:
            console.print(f"[red]Could not save image {index}: {e}[/red]")
    return output_dir


def display_missing(result: PipelineResult) -> None:
    table = Table(title="Missing illustrations")
    table.add_column("Index", style="cyan", justify="right")
    table.add_column("Image", style="white")
    table.add_column("Last error", style="yellow")
    for index in result.missing_indices:
        table.add_row(str(index), image_filename(index), result.missing[index])
    console.print(table)


@click.group()
def cli():
    """Storyfox - illustrated children's storybooks from a one-line idea."""
    pass


@cli.command()
@click.argument("concept")
@click.option("--pages", type=click.IntRange(1, 30), default=8, show_default=True, help="Number of story pages")
@click.option(
    "--style",
    type=click.Choice([s.value for s in IllustrationStyle], case_sensitive=False),
    default=IllustrationStyle.ILLUSTRATION.value,
    show_default=True,
)
@click.option(
    "--format",
    "book_format",
    type=click.Choice([f.value for f in BookFormat], case_sensitive=False),
    default=BookFormat.STANDARD.value,
    show_default=True,
)
@click.option(
    "--output",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("illustrated_books"),
    show_default=True,
    help="Directory that receives the book folder",
)
@click.option("--verbose", is_flag=True, help="Show debug logging")
def generate(concept: str, pages: int, style: str, book_format: str, output: Path, verbose: bool):
    """Generate a complete illustrated storybook from CONCEPT."""
    configure_logging(verbose)
    try:
        pipeline = build_pipeline()
    except StoryfoxError as e:
        raise click.ClickException(str(e)) from e

    total_images = pages + 1
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Illustrating", total=total_images)

        def on_progress(completed: int, total: int) -> None:
            progress.update(task, completed=completed, total=total)

        try:
            result = asyncio.run(pipeline.run(
                concept,
                pages,
                style=IllustrationStyle(style.lower()),
                book_format=BookFormat(book_format.lower()),
                progress_callback=on_progress,
            ))
        except StoryfoxError as e:
            raise click.ClickException(str(e)) from e

    output_dir = save_result(result, output)
    console.print(f"[bold green]Saved '{result.book.title}' to {output_dir}[/bold green]")
    if result.repaired_by_model:
        console.print("[cyan]Character descriptions were rebuilt by the local model.[/cyan]")
    if result.missing:
        display_missing(result)
        sys.exit(2)


@cli.command(name="enrich")
@click.argument("book_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def enrich_command(book_json: Path):
    """Print the enriched illustration prompts of a saved BOOK_JSON."""
    try:
        book = StoryBook.model_validate(json.loads(book_json.read_text(encoding="utf-8")))
    except ValueError as e:
        raise click.ClickException(f"Not a valid book file: {e}") from e

    config = get_default_config()
    analyses = asyncio.run(PromptAnalysisEngine(config=config).analyze_pages(book.pages))
    enriched = enrich(book, analyses, config.enrichment_window_chars)

    table = Table(title=book.title)
    table.add_column("Page", style="cyan", justify="right")
    table.add_column("Prompt", style="white")
    table.add_column("Changed", style="green")
    for original, page in zip(book.pages, enriched.pages):
        changed = "yes" if page.image_prompt != original.image_prompt else ""
        table.add_row(str(page.page_number), page.image_prompt, changed)
    console.print(table)


@cli.command()
@click.argument("prompt")
def analyze(prompt: str):
    """Print the heuristic analysis of an illustration PROMPT."""
    analysis = heuristic_analysis(prompt, get_default_config())
    console.print_json(json.dumps(analysis.model_dump(by_alias=True)))


def main():
    """Main entry point for the CLI."""
    cli()
