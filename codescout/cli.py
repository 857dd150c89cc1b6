"""CLI commands for CodeScout."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from codescout import __version__
from codescout.config import CodeScoutConfig, generate_default_config, load_config
from codescout.service import CodeSearchService

MAIN_HELP = """
[bold cyan]CodeScout[/] - Local semantic code search.

Indexes a workspace into a local SQLite vector store and answers
natural-language queries with the most relevant code snippets.

[bold yellow]Common Workflows:[/]
  [dim]Index the current project:[/]   codescout index
  [dim]Ask a question:[/]              codescout search "where is the config parsed"
  [dim]Keep the index fresh:[/]        codescout watch

Run [bold]codescout <command> --help[/] for detailed help on any command.
"""

app = typer.Typer(
    name="codescout",
    help=MAIN_HELP,
    no_args_is_help=True,
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)

PathArgument = typer.Argument(
    Path("."),
    help="Workspace to operate on (defaults to the current directory)",
    file_okay=False,
    resolve_path=True,
    metavar="PATH",
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Show debug logging")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )


def _load(path: Path, verbose: bool) -> CodeScoutConfig:
    """Set up logging and load the workspace configuration."""
    _setup_logging(verbose)
    if not path.is_dir():
        console.print(f"[red]Error:[/red] Workspace not found: {path}")
        raise typer.Exit(1)
    config = load_config(path)
    if verbose:
        config.verbose = True
    return config


def _print_index_report(report: dict[str, Any]) -> None:
    if report.get("skipped"):
        console.print(f"[yellow]Skipped:[/yellow] {report['reason']}")
        return

    table = Table(title="Indexing Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Files processed", str(report["files_processed"]))
    table.add_row("Files unchanged", str(report["files_unchanged"]))
    table.add_row("Files skipped", str(report["files_skipped"]))
    table.add_row("Files failed", str(report["files_failed"]))
    table.add_row("Files pruned", str(report["files_pruned"]))
    table.add_row("Chunks created", str(report["chunks_created"]))
    table.add_row("Chunks failed", str(report["chunks_failed"]))
    table.add_row("Total files", str(report["total_files"]))
    table.add_row("Total chunks", str(report["total_chunks"]))
    table.add_row("Duration", f"{report['duration']}s")
    console.print(table)
    console.print(f"[green]{report['message']}[/green]")


async def _run_index(config: CodeScoutConfig, force: bool) -> dict[str, Any]:
    from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("[cyan]Indexing...", total=100)

        def on_progress(done: int, total: int, message: str) -> None:
            progress.update(task, completed=done, total=total, description=f"[cyan]{message}")

        service = CodeSearchService(config, progress_callback=on_progress)
        try:
            await service.initialize()
            return await service.reindex(force=force)
        finally:
            service.shutdown()


@app.command()
def index(
    path: Path = PathArgument,
    force: bool = typer.Option(
        False, "--force", "-f", help="Clear the index and re-embed every file"
    ),
    verbose: bool = VerboseOption,
) -> None:
    """
    Index a workspace.

    Only files whose content changed since the last run are re-embedded.
    Files that disappeared are dropped from the index.

    [bold yellow]Examples:[/]
      codescout index
      codescout index ./my-project --force
    """
    config = _load(path, verbose)
    try:
        report = asyncio.run(_run_index(config, force))
    except (FileNotFoundError, RuntimeError, ImportError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _print_index_report(report)


async def _run_search(config: CodeScoutConfig, query: str, top_k: int | None) -> dict[str, Any]:
    service = CodeSearchService(config)
    try:
        await service.initialize()
        return await service.search(query, top_k)
    finally:
        service.shutdown()


@app.command()
def search(
    query: str = typer.Argument(..., help="What you are looking for", metavar="QUERY"),
    path: Path = typer.Option(
        Path("."),
        "--path",
        "-p",
        help="Workspace to search",
        file_okay=False,
        resolve_path=True,
    ),
    top_k: int | None = typer.Option(
        None, "--top-k", "-k", min=1, help="Number of results (defaults to max_results)"
    ),
    verbose: bool = VerboseOption,
) -> None:
    """
    Search the index with a natural-language or code query.

    [bold yellow]Examples:[/]
      codescout search "function that parses the config file"
      codescout search "retry with backoff" -k 10
    """
    config = _load(path, verbose)
    try:
        response = asyncio.run(_run_search(config, query, top_k))
    except (FileNotFoundError, RuntimeError, ImportError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if response["partial"]:
        indexing = response["indexing"]
        console.print(
            f"[yellow]Index is still being built ({indexing['percentage']}%), "
            "results may be incomplete[/yellow]"
        )

    results = response["results"]
    if not results:
        console.print("[dim]No results. Run 'codescout index' first if the index is empty.[/dim]")
        return

    for rank, result in enumerate(results, start=1):
        try:
            location = Path(result["file"]).relative_to(config.workspace)
        except ValueError:
            location = Path(result["file"])
        title = (
            f"[bold]{rank}. {location}:{result['start_line']}-{result['end_line']}[/bold] "
            f"[dim](score {result['score']:.3f})[/dim]"
        )
        console.print(Panel(Text(result["content"]), title=title, title_align="left"))


@app.command()
def status(
    path: Path = PathArgument,
    verbose: bool = VerboseOption,
) -> None:
    """
    Show index, cache, and model status for a workspace.

    [bold yellow]Example:[/]
      codescout status
    """
    config = _load(path, verbose)
    service = CodeSearchService(config)
    try:
        service.store.load()
        info = service.get_status()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        service.shutdown()

    model = info["model"]
    index_info = info["index"]
    cache = info["cache"]
    console.print(
        Panel(
            Text.from_markup(
                f"[bold]Workspace:[/bold] {info['workspace']}\n"
                f"[bold]Index:[/bold] {index_info['status']} "
                f"({index_info['files']} files, {index_info['chunks']} chunks)\n"
                f"[bold]Model:[/bold] {model['name']} ({model['dimension']} dimensions)\n"
                f"[bold]Cache:[/bold] {cache['type']} at {cache['path']} "
                f"({cache['size_formatted']})\n"
                f"[bold]Chunking:[/bold] {info['config']['chunking_mode']}\n"
                f"[bold]Throttling:[/bold] {info['throttling']['max_cpu_percent']}% CPU, "
                f"{info['throttling']['batch_delay_ms']}ms delay, "
                f"{info['throttling']['max_workers']} max workers"
            ),
            title=f"[bold cyan]CodeScout v{__version__}[/bold cyan]",
            border_style="cyan",
        )
    )


@app.command()
def clear(
    path: Path = PathArgument,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    verbose: bool = VerboseOption,
) -> None:
    """
    Delete the index of a workspace.

    The configuration file is kept.
    """
    config = _load(path, verbose)
    if not yes and not typer.confirm(f"Delete the index in {config.cache_directory}?"):
        console.print("[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    service = CodeSearchService(config)
    try:
        service.store.load()
        service.store.clear()
    except (RuntimeError, OSError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        service.shutdown()
    console.print(f"[green]Cache cleared:[/green] {config.cache_directory}")


async def _run_watch(config: CodeScoutConfig) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, RuntimeError):
        logging.getLogger(__name__).debug("SIGTERM handler not supported on this platform")

    service = CodeSearchService(config)
    try:
        await service.initialize()
        report = await service.reindex()
        _print_index_report(report)
        service.start_watching()
        console.print(f"[cyan]Watching {config.workspace}[/cyan] [dim](Ctrl+C to stop)[/dim]")
        await stop.wait()
    finally:
        service.shutdown()
        console.print("[dim]Index saved.[/dim]")


@app.command()
def watch(
    path: Path = PathArgument,
    verbose: bool = VerboseOption,
) -> None:
    """
    Index a workspace, then re-index files as they change.

    Runs until interrupted; the index is checkpointed on exit.
    """
    config = _load(path, verbose)
    try:
        asyncio.run(_run_watch(config))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
    except (FileNotFoundError, RuntimeError, ImportError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@app.command(name="init-config")
def init_config(
    path: Path = PathArgument,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
    verbose: bool = VerboseOption,
) -> None:
    """
    Write a commented default config file into the workspace.

    [bold yellow]Example:[/]
      codescout init-config ./my-project
    """
    _setup_logging(verbose)
    config = CodeScoutConfig.default(path)
    if config.config_path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {config.config_path}")
        console.print("[dim]Use --force to overwrite[/dim]")
        raise typer.Exit(1)
    config.cache_directory.mkdir(parents=True, exist_ok=True)
    config.config_path.write_text(generate_default_config(), encoding="utf-8")
    console.print(f"[green]Created config:[/green] {config.config_path}")


@app.command()
def version() -> None:
    """Show version number."""
    console.print(f"CodeScout v{__version__}")


if __name__ == "__main__":
    app()
