"""Main CLI application for hybrid code search."""

import asyncio
import sys
from pathlib import Path
from typing import Any

import orjson
import typer
from loguru import logger

from .. import __version__
from ..config.defaults import get_default_config_path, get_default_index_path
from ..config.settings import SearchConfig
from ..core.embeddings import create_embedding_provider
from ..core.exceptions import HybridSearchError
from ..core.models import QueryOptions, SearchFilters
from ..core.search import HybridSearchEngine
from .output import (
    console,
    print_error,
    print_indexing_summary,
    print_info,
    print_json,
    print_search_results,
    print_status,
    print_success,
    print_warning,
)

app = typer.Typer(
    name="hybrid-code-search",
    help="Hybrid lexical + semantic search over code chunks",
    add_completion=False,
    no_args_is_help=True,
)


def _setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "WARNING",
        format="<level>{level: <8}</level> | {message}",
    )


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"hybrid-code-search {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    index_path: Path | None = typer.Option(
        None,
        "--index-path",
        "-i",
        help="Index snapshot file (default: ./.hybrid-code-search/index.snapshot)",
    ),
    config_path: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML configuration file (default: ./.hybrid-code-search/config.yaml)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Hybrid code search CLI."""
    _setup_logging(verbose)
    project_root = Path.cwd()
    ctx.obj = {
        "index_path": index_path or get_default_index_path(project_root),
        "config_path": config_path or get_default_config_path(project_root),
    }


def _load_config(ctx: typer.Context) -> SearchConfig:
    return SearchConfig.load(ctx.obj["config_path"])


async def _open_engine(ctx: typer.Context, config: SearchConfig) -> HybridSearchEngine:
    provider = create_embedding_provider(config.embedding)
    return await HybridSearchEngine.open(provider, ctx.obj["index_path"], config=config)


def read_chunk_records(path: Path) -> list[dict[str, Any]]:
    """Read chunk records from a JSON array, ``{"chunks": [...]}`` or JSON lines.

    Raises:
        ValueError: If the file is neither JSON nor JSON lines of objects
    """
    raw = path.read_bytes()
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        data = [orjson.loads(line) for line in raw.splitlines() if line.strip()]

    if isinstance(data, dict):
        data = data.get("chunks", [data])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of chunk records")
    return data


@app.command()
def index(
    ctx: typer.Context,
    chunks_file: Path = typer.Argument(
        ...,
        help="JSON array or JSON-lines file of chunk records",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
    reconcile: bool = typer.Option(
        False,
        "--reconcile",
        "-r",
        help="Treat the file as the complete chunk set and drop missing chunks",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output summary as JSON"),
) -> None:
    """Index chunk records and save the snapshot.

    [bold cyan]Examples:[/bold cyan]

    [green]Incremental indexing:[/green]
        $ hybrid-code-search index chunks.json

    [green]Full reconciliation:[/green]
        $ hybrid-code-search index chunks.jsonl --reconcile
    """
    try:
        config = _load_config(ctx)
        records = read_chunk_records(chunks_file)

        async def run():
            engine = await _open_engine(ctx, config)
            summary = await engine.index_chunks(records, reconcile=reconcile)
            path = await engine.save()
            return summary, path

        summary, path = asyncio.run(run())
    except (HybridSearchError, ValueError, orjson.JSONDecodeError) as e:
        logger.error(f"Indexing failed: {e}")
        print_error(f"Indexing failed: {e}")
        raise typer.Exit(1)

    if json_output:
        print_json(summary.to_dict(), title="Indexing Summary")
    else:
        print_indexing_summary(summary)
        print_success(f"Saved index to {path}")


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(10, "--limit", "-l", min=1, help="Maximum results"),
    min_score: float | None = typer.Option(
        None, "--min-score", help="Drop results with a fused score below this"
    ),
    languages: list[str] = typer.Option(
        [], "--language", help="Only this language (repeatable)"
    ),
    types: list[str] = typer.Option(
        [], "--type", "-t", help="Only this chunk type (repeatable)"
    ),
    paths: list[str] = typer.Option(
        [], "--path", help="Only files whose path contains this (repeatable)"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Search indexed code."""
    options = QueryOptions(
        limit=limit,
        min_score=min_score,
        filters=SearchFilters(
            languages=list(languages), types=list(types), paths=list(paths)
        ),
    )
    try:
        config = _load_config(ctx)

        async def run():
            engine = await _open_engine(ctx, config)
            if not len(engine):
                return None
            return await engine.query(query, options)

        response = asyncio.run(run())
    except HybridSearchError as e:
        logger.error(f"Search failed: {e}")
        print_error(f"Search failed: {e}")
        raise typer.Exit(1)

    if response is None:
        print_warning("Index is empty. Run 'hybrid-code-search index' first.")
        raise typer.Exit(1)

    if json_output:
        print_json(
            {
                "degraded": response.degraded,
                "search_time_ms": response.search_time_ms,
                "results": [
                    {
                        "rank": r.rank,
                        "score": r.score,
                        "highlights": r.highlights,
                        "chunk": r.chunk.to_record(),
                    }
                    for r in response.results
                ],
            }
        )
    else:
        print_search_results(query, response)


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output status as JSON"),
) -> None:
    """Show what the index holds."""
    try:
        config = _load_config(ctx)
        engine = asyncio.run(_open_engine(ctx, config))
    except HybridSearchError as e:
        print_error(f"Failed to read index: {e}")
        raise typer.Exit(1)

    index_status = engine.get_status()
    if json_output:
        print_json(
            {
                "indexed": index_status.indexed,
                "total_chunks": index_status.total_chunks,
                "total_files": index_status.total_files,
                "languages": index_status.languages,
                "last_indexed": index_status.last_indexed,
                "embedding_model": index_status.embedding_model,
                "embedding_dimension": index_status.embedding_dimension,
                "embedded_chunks": index_status.embedded_chunks,
                "index_duration_ms": index_status.index_duration_ms,
            }
        )
    else:
        console.print(f"[dim]Snapshot: {ctx.obj['index_path']}[/dim]")
        print_status(index_status)


@app.command()
def clear(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete the index snapshot."""
    index_path: Path = ctx.obj["index_path"]
    if not index_path.exists():
        print_info(f"No index at {index_path}")
        return

    if not yes and not typer.confirm(f"Delete index at {index_path}?"):
        print_info("Aborted")
        raise typer.Exit(0)

    index_path.unlink()
    print_success(f"Deleted index at {index_path}")


if __name__ == "__main__":
    app()
