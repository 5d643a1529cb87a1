"""Command line interface for memdex."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from memdex.config import EmbedConfig, parse_kinds
from memdex.errors import ConfigError, IndexNotFoundError, ProviderError
from memdex.index.builder import build_index, is_up_to_date, plan_build
from memdex.index.search import search as run_search
from memdex.index.status import ensure_index, get_status

console = Console()
app = typer.Typer(help="memdex - local semantic index for repository memory notes")

DEFAULTS = EmbedConfig()


def _root_option():
    return typer.Option(Path("."), "--root", help="Workspace root", resolve_path=True)


def _provider_option():
    return typer.Option(DEFAULTS.provider, help="Embedding provider: hash, openai, sentence-transformers")


def _model_option():
    return typer.Option("", help="Provider model name (provider default when empty)")


def _api_key_option():
    return typer.Option("", "--api-key", help="Credential for the openai provider")


def _dim_option():
    return typer.Option(DEFAULTS.dim, help="Vector dimension for the hash provider")


def _kinds_option():
    return typer.Option(",".join(DEFAULTS.kinds), help="Comma separated document kinds")


def _recent_days_option():
    return typer.Option(DEFAULTS.recent_days, "--recent-days", help="Journal recency window in days")


def _max_chunks_per_file_option():
    return typer.Option(DEFAULTS.max_chunks_per_file, "--max-chunks-per-file", help="Chunk cap per document")


def _max_chars_per_chunk_option():
    return typer.Option(DEFAULTS.max_chars_per_chunk, "--max-chars-per-chunk", help="Character budget per chunk")


def _overlap_chars_option():
    return typer.Option(DEFAULTS.overlap_chars, "--overlap-chars", help="Characters carried into the next chunk")


def _max_total_chunks_option():
    return typer.Option(DEFAULTS.max_total_chunks, "--max-total-chunks", help="Chunk cap for the whole index")


def _verbose_option():
    return typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _make_config(
    provider: str,
    model: str,
    api_key: str,
    dim: int,
    kinds: str,
    recent_days: int,
    force: bool = False,
    *,
    max_chunks_per_file: int = DEFAULTS.max_chunks_per_file,
    max_chars_per_chunk: int = DEFAULTS.max_chars_per_chunk,
    overlap_chars: int = DEFAULTS.overlap_chars,
    max_total_chunks: int = DEFAULTS.max_total_chunks,
) -> EmbedConfig:
    try:
        return EmbedConfig(
            provider=provider,
            model=model,
            api_key=api_key,
            dim=dim,
            kinds=parse_kinds(kinds),
            recent_days=recent_days,
            max_chunks_per_file=max_chunks_per_file,
            max_chars_per_chunk=max_chars_per_chunk,
            overlap_chars=overlap_chars,
            max_total_chunks=max_total_chunks,
            force=force,
        )
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _echo_json(payload: object) -> None:
    console.print_json(json.dumps(payload))


@app.command()
def build(
    root: Path = _root_option(),
    provider: str = _provider_option(),
    model: str = _model_option(),
    api_key: str = _api_key_option(),
    dim: int = _dim_option(),
    kinds: str = _kinds_option(),
    recent_days: int = _recent_days_option(),
    max_chunks_per_file: int = _max_chunks_per_file_option(),
    max_chars_per_chunk: int = _max_chars_per_chunk_option(),
    overlap_chars: int = _overlap_chars_option(),
    max_total_chunks: int = _max_total_chunks_option(),
    force: bool = typer.Option(False, "--force", help="Ignore the previous index"),
    check: bool = typer.Option(False, "--check", help="Only check whether the index is up to date"),
    verbose: bool = _verbose_option(),
) -> None:
    """Build or refresh the embeddings index."""
    _setup_logging(verbose)
    config = _make_config(
        provider,
        model,
        api_key,
        dim,
        kinds,
        recent_days,
        force,
        max_chunks_per_file=max_chunks_per_file,
        max_chars_per_chunk=max_chars_per_chunk,
        overlap_chars=overlap_chars,
        max_total_chunks=max_total_chunks,
    )
    try:
        if check:
            verdict = is_up_to_date(root, config)
            if verdict.ok:
                console.print("[green]OK: embeddings index is up to date[/green]")
                return
            detail = f": {verdict.file}" if verdict.file else ""
            console.print(f"[red]FAIL: embeddings index is out of date ({verdict.reason}{detail})[/red]")
            raise typer.Exit(code=1)
        result = build_index(root, config)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except ProviderError as exc:
        console.print(f"[red]Embedding provider failed: {exc}[/red]")
        raise typer.Exit(code=2) from exc

    meta = result.meta
    console.print("[green]OK: embeddings index built[/green]")
    console.print(f"- provider: {meta.provider}")
    console.print(f"- model: {meta.model}")
    console.print(f"- items: {meta.item_count}")
    console.print(f"- reusedFromPreviousIndex: {'yes' if meta.reused_from_previous_index else 'no'}")
    console.print(f"- reusedFiles: {meta.reused_files}")
    console.print(f"- reusedItems: {meta.reused_items}")
    console.print(f"- embeddedItems: {meta.embedded_items}")


@app.command()
def plan(
    root: Path = _root_option(),
    provider: str = _provider_option(),
    model: str = _model_option(),
    api_key: str = _api_key_option(),
    dim: int = _dim_option(),
    kinds: str = _kinds_option(),
    recent_days: int = _recent_days_option(),
    max_chunks_per_file: int = _max_chunks_per_file_option(),
    max_chars_per_chunk: int = _max_chars_per_chunk_option(),
    overlap_chars: int = _overlap_chars_option(),
    max_total_chunks: int = _max_total_chunks_option(),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Show what a build would reuse and what it would embed."""
    config = _make_config(
        provider,
        model,
        api_key,
        dim,
        kinds,
        recent_days,
        max_chunks_per_file=max_chunks_per_file,
        max_chars_per_chunk=max_chars_per_chunk,
        overlap_chars=overlap_chars,
        max_total_chunks=max_total_chunks,
    )
    try:
        result = plan_build(root, config)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if as_json:
        _echo_json(result.to_dict())
        return

    summary = result.summary
    console.print(f"Up to date: {'yes' if summary['upToDate'] else 'no'}")
    console.print(
        f"Files: total={summary['totalFiles']}, reuse={summary['reuseFiles']}, embed={summary['embedFiles']}"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Action")
    table.add_column("File")
    table.add_column("Kind")
    table.add_column("Reason")
    table.add_column("Indexed ids")
    for item in result.files:
        table.add_row(item.action, item.file, item.kind, item.reason, str(item.indexed_chunk_ids))
    console.print(table)
    for stale in result.stale_indexed_files:
        console.print(f"[yellow]stale: {stale}[/yellow]")


@app.command()
def status(
    root: Path = _root_option(),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Report the state of the persisted index."""
    report = get_status(root)
    if as_json:
        _echo_json(report)
        return
    index = report["index"]
    console.print(f"Status: [bold]{report['status']}[/bold]")
    console.print(f"Index: {'present' if index['exists'] else 'missing'} (items={index['itemCount']}, files={index['fileCount']})")
    console.print(f"Provider: {index['provider'] or '-'}  model: {index['model'] or '-'}  dim: {index['dim'] or '-'}")
    up = report["upToDate"]
    if up is not None:
        suffix = f" ({up['reason']}{': ' + up['file'] if up['file'] else ''})" if up["reason"] else ""
        console.print(f"Up to date: {'yes' if up['ok'] else 'no'}{suffix}")
    for error in report["errors"]:
        console.print(f"[red]{error}[/red]")


@app.command()
def auto(
    root: Path = _root_option(),
    provider: str = _provider_option(),
    model: str = _model_option(),
    api_key: str = _api_key_option(),
    dim: int = _dim_option(),
    kinds: str = _kinds_option(),
    recent_days: int = _recent_days_option(),
    max_chunks_per_file: int = _max_chunks_per_file_option(),
    max_chars_per_chunk: int = _max_chars_per_chunk_option(),
    overlap_chars: int = _overlap_chars_option(),
    max_total_chunks: int = _max_total_chunks_option(),
    check: bool = typer.Option(False, "--check", help="Never build, only report"),
    verbose: bool = _verbose_option(),
) -> None:
    """Rebuild the index only when it is out of date."""
    _setup_logging(verbose)
    config = _make_config(
        provider,
        model,
        api_key,
        dim,
        kinds,
        recent_days,
        max_chunks_per_file=max_chunks_per_file,
        max_chars_per_chunk=max_chars_per_chunk,
        overlap_chars=overlap_chars,
        max_total_chunks=max_total_chunks,
    )
    try:
        result = ensure_index(root, config, check_only=check)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except ProviderError as exc:
        console.print(f"[red]Embedding provider failed: {exc}[/red]")
        raise typer.Exit(code=2) from exc
    if result.ok and result.skipped:
        console.print("OK: embeddings are up to date")
    elif result.ok:
        console.print("OK: embeddings rebuilt")
    else:
        detail = f": {result.file}" if result.file else ""
        console.print(f"[red]FAIL: embeddings out of date ({result.reason}{detail})[/red]")
        raise typer.Exit(code=1)


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    root: Path = _root_option(),
    k: int = typer.Option(8, "--k", help="Number of hits to display"),
    min_score: float = typer.Option(0.15, "--min-score", help="Minimum cosine score"),
    api_key: str = _api_key_option(),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Execute a semantic search."""
    try:
        hits = run_search(root, query, k=k, min_score=min_score, api_key=api_key)
    except (IndexNotFoundError, ConfigError, ValueError) as exc:
        raise typer.BadParameter(str(exc)) from exc

    if as_json:
        _echo_json({"q": query, "hits": [hit.to_dict() for hit in hits]})
        return
    if not hits:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Location")
    table.add_column("Kind")
    table.add_column("Snippet")
    for hit in hits:
        snippet = hit.text.replace("\n", " ")
        table.add_row(f"{hit.score:.4f}", f"{hit.file}:{hit.start_line}-{hit.end_line}", hit.kind, snippet[:180])
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    root: Optional[Path] = typer.Option(None, "--root", help="Default workspace root", resolve_path=True),
) -> None:
    """Start the HTTP interface."""
    import uvicorn

    from memdex.web.app import app as web_app

    if root is not None:
        os.environ["MEMDEX_ROOT"] = str(root)
    console.print(f"Starting memdex on http://{host}:{port}")
    uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")
