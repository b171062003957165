"""Rich output helpers for the CLI."""

from typing import Any

import orjson
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from ..core.models import IndexingSummary, IndexStatus, QueryResponse

console = Console()


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]![/yellow] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def print_json(data: Any, title: str | None = None) -> None:
    """Print data as highlighted JSON."""
    if title:
        console.print(f"[bold blue]{title}[/bold blue]")
    text = orjson.dumps(data, option=orjson.OPT_INDENT_2, default=str).decode()
    console.print(Syntax(text, "json", theme="monokai", background_color="default"))


def print_indexing_summary(summary: IndexingSummary) -> None:
    table = Table(title="Indexing Summary", show_header=True)
    table.add_column("Outcome", style="cyan")
    table.add_column("Chunks", justify="right")
    table.add_row("Added", str(summary.added))
    table.add_row("Updated", str(summary.updated))
    table.add_row("Unchanged", str(summary.unchanged))
    table.add_row("Metadata only", str(summary.metadata_updated))
    table.add_row("Removed", str(summary.removed))
    table.add_row("Errors", str(len(summary.errors)))
    table.add_row("Deferred", str(len(summary.deferred)))
    console.print(table)

    for error in summary.errors:
        print_warning(f"{error.chunk_id or '<no id>'}: [{error.error_type}] {error.message}")
    if summary.deferred:
        print_warning(
            f"{len(summary.deferred)} chunks could not be embedded; "
            f"run index again to retry them"
        )
    if summary.cancelled:
        print_warning("Indexing was cancelled before completion")


def print_search_results(query: str, response: QueryResponse) -> None:
    if response.degraded:
        print_warning("Embedding provider unavailable: results ranked lexically only")

    if not response.results:
        print_info(f"No results for '{query}'")
        return

    console.print(
        f"[bold blue]{len(response.results)} results[/bold blue] "
        f"[dim]({response.search_time_ms:.1f}ms)[/dim]\n"
    )
    for result in response.results:
        chunk = result.chunk
        title = f"{chunk.name} " if chunk.name else ""
        console.print(
            f"[bold]{result.rank}.[/bold] {title}[dim]{chunk.type}[/dim] "
            f"[cyan]{chunk.file_path}:{chunk.start_line}-{chunk.end_line}[/cyan] "
            f"[green]{result.score:.3f}[/green]"
        )
        if result.highlights:
            console.print(f"   [dim]matches:[/dim] {', '.join(result.highlights)}")


def print_status(status: IndexStatus) -> None:
    table = Table(title="Index Status", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Indexed", "yes" if status.indexed else "no")
    table.add_row("Chunks", str(status.total_chunks))
    table.add_row("Files", str(status.total_files))
    table.add_row("Languages", ", ".join(status.languages) or "-")
    table.add_row(
        "Last indexed",
        status.last_indexed.isoformat() if status.last_indexed else "never",
    )
    table.add_row("Embedding model", status.embedding_model or "-")
    table.add_row(
        "Embedding dimension",
        str(status.embedding_dimension) if status.embedding_dimension else "-",
    )
    table.add_row("Embedded chunks", str(status.embedded_chunks))
    table.add_row("Index duration", f"{status.index_duration_ms:.1f}ms")
    console.print(table)
