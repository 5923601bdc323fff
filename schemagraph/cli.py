"""Typer-based CLI for SchemaGraph."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__, config
from .config_manager import load_section, save_section
from .crawler import Crawler
from .diff_engine import format_diff_report
from .errors import SchemaGraphError
from .extractor import default_extractor
from .fingerprints import FingerprintStore
from .git_scanner import SnapshotComparator
from .graph import GraphEngine
from .impact import ImpactAnalyzer
from .intent_drift import format_drift_report
from .locks import RepositoryLock
from .models import ComparisonResult
from .provenance import ProvenanceAnalyzer, format_provenance_report
from .storage import GraphStore

app = typer.Typer(
    help="SchemaGraph: dependency graph, breaking-change and intent-drift analysis for schema artifacts.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)


def _path_option():
    return typer.Option(Path("."), "--path", "-p", file_okay=False, help="Repository root.")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"SchemaGraph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging."),
):
    """SchemaGraph: know what changed, what breaks, and what else is affected."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _fail(exc: Exception) -> None:
    err_console.print(f"[red]❌ {escape(str(exc))}[/red]")
    raise typer.Exit(code=1)


def _open_graph(path: Path) -> Tuple[GraphStore, GraphEngine]:
    state_dir = config.state_dir_for(path)
    if not (state_dir / config.GRAPH_DB_NAME).exists():
        raise typer.BadParameter(f"No graph found under {path.resolve()}. Run 'sg crawl' first.")
    store = GraphStore(state_dir)
    return store, GraphEngine(store)


@app.command("init")
def init(path: Path = _path_option()):
    """Create the .schemagraph state directory and a default config file."""
    state_dir = config.ensure_state_dir(path)
    config_file = state_dir / config.REPO_CONFIG_NAME
    if config_file.exists():
        typer.echo(f"Already initialised: {state_dir}")
        return
    save_section("crawl", load_section("crawl", path), path)
    save_section("drift", load_section("drift", path), path)
    save_section("git", load_section("git", path), path)
    save_section("impact", load_section("impact", path), path)
    typer.echo(f"Initialised {state_dir}")


@app.command("crawl")
def crawl(
    path: Path = _path_option(),
    full: bool = typer.Option(False, "--full", help="Re-extract every file, ignoring fingerprints."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Parallel extraction workers."),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0.1, help="Crawl timeout in seconds."),
):
    """Scan schema files and update the artifact graph incrementally."""
    crawl_cfg = load_section("crawl", path)
    state_dir = config.ensure_state_dir(path)
    store = GraphStore(state_dir)
    try:
        engine = GraphEngine(store)
        crawler = Crawler(
            engine,
            FingerprintStore(store),
            default_extractor(),
            path,
            patterns=crawl_cfg.get("patterns") or None,
            max_workers=workers or int(crawl_cfg.get("max_workers", config.DEFAULT_MAX_WORKERS)),
            lock=RepositoryLock.for_path(path),
        )
        summary = crawler.crawl(incremental=not full, timeout=timeout)
        engine.export_snapshot(state_dir / config.GRAPH_SNAPSHOT_NAME)
    except SchemaGraphError as exc:
        _fail(exc)
    finally:
        store.close()

    table = Table(title="Crawl summary", show_header=False)
    table.add_row("Added", str(len(summary.added)))
    table.add_row("Modified", str(len(summary.modified)))
    table.add_row("Removed", str(len(summary.removed)))
    table.add_row("Unchanged", str(summary.unchanged))
    table.add_row("Failed files", str(len(summary.failed)))
    for status, count in summary.status_counts().items():
        table.add_row(f"Status: {status}", str(count))
    table.add_row("Nodes / edges", f"{summary.node_count} / {summary.edge_count}")
    table.add_row("Dangling edges", str(summary.dangling_count))
    table.add_row("Duration", f"{summary.duration_ms:.0f} ms")
    console.print(table)
    for rel in summary.failed:
        err_console.print(f"[yellow]⚠ Skipped {rel} (extraction failed)[/yellow]")


@app.command("impact")
def impact(
    node_id: str = typer.Argument(..., help="Artifact id, e.g. src/user.dto.ts:UserDto"),
    depth: Optional[int] = typer.Option(
        None, "--depth", "-d", min=1, max=10, help="Traversal depth (default: [impact] max_depth)."
    ),
    path: Path = _path_option(),
):
    """Show which artifacts are affected if NODE_ID changes."""
    depth = depth or int(load_section("impact", path).get("max_depth", config.DEFAULT_MAX_DEPTH))
    store, engine = _open_graph(path)
    try:
        analyzer = ImpactAnalyzer(engine)
        report = analyzer.analyze(node_id, max_depth=depth)
        typer.echo(analyzer.format_report(report))
        typer.echo(f"\n{len(report.downstream)} artifact(s) impacted within {depth} hop(s).")
    except SchemaGraphError as exc:
        _fail(exc)
    finally:
        store.close()


@app.command("why")
def why(
    node_id: str = typer.Argument(..., help="Artifact id to explain."),
    transitive: bool = typer.Option(False, "--transitive", "-t", help="Follow dependencies of dependencies."),
    depth: Optional[int] = typer.Option(None, "--depth", "-d", min=1, help="Hop limit with --transitive."),
    path: Path = _path_option(),
):
    """Explain what NODE_ID depends on and the documented intent behind it."""
    store, engine = _open_graph(path)
    try:
        report = ProvenanceAnalyzer(engine).analyze(node_id, transitive=transitive, max_depth=depth)
        typer.echo(format_provenance_report(report))
    except SchemaGraphError as exc:
        _fail(exc)
    finally:
        store.close()


@app.command("check")
def check(path: Path = _path_option()):
    """List dependencies that point at artifacts missing from the graph."""
    store, engine = _open_graph(path)
    try:
        dangling = engine.dangling_edges()
    finally:
        store.close()

    if not dangling:
        console.print("[green]✅ All dependencies resolve.[/green]")
        return

    table = Table(title=f"Unresolved dependencies ({len(dangling)})")
    table.add_column("Artifact")
    table.add_column("Missing target")
    table.add_column("Confidence", justify="right")
    for edge in dangling:
        table.add_row(edge.source, edge.target, f"{edge.confidence:.2f}")
    console.print(table)
    raise typer.Exit(code=1)


def _run_comparison(path: Path, base: Optional[str], head: Optional[str], threshold: Optional[float]) -> ComparisonResult:
    cfg = config.ComparisonConfig.load(path, drift_threshold=threshold)
    with SnapshotComparator(cfg, default_extractor()) as comparator:
        if base is None:
            return comparator.compare_working_tree()
        return comparator.compare_commits(base, head or "HEAD")


@app.command("diff")
def diff(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base ref. Omit to compare the working tree to HEAD."),
    head: Optional[str] = typer.Option(None, "--head", help="Head ref (default HEAD)."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to write the JSON drift report."),
    path: Path = _path_option(),
):
    """Classify schema changes between two repository states; exit 1 on breaking changes."""
    try:
        result = _run_comparison(path, base, head, None)
    except SchemaGraphError as exc:
        _fail(exc)

    report_file = output or config.ensure_state_dir(path) / config.DRIFT_REPORT_NAME
    report_file.parent.mkdir(parents=True, exist_ok=True)
    report_file.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")

    typer.echo(f"Comparing {result.base_commit[:12]} -> {result.head_commit[:12]}")
    typer.echo(f"Schema files changed: {len(result.files_changed)}")
    typer.echo("")
    typer.echo(format_diff_report(result.diffs))
    if result.intent_drifts:
        typer.echo("")
        typer.echo(format_drift_report(result.intent_drifts))
    typer.echo(f"\nReport written to {report_file}")

    if result.has_breaking:
        err_console.print("[red]Breaking changes detected.[/red]")
        raise typer.Exit(code=1)


@app.command("drift")
def drift(
    base: Optional[str] = typer.Option(None, "--base", "-b", help="Base ref. Omit to compare the working tree to HEAD."),
    head: Optional[str] = typer.Option(None, "--head", help="Head ref (default HEAD)."),
    threshold: Optional[float] = typer.Option(None, "--threshold", min=0.0, max=1.0, help="Similarity below which intent counts as drifted."),
    path: Path = _path_option(),
):
    """Report @intent annotations whose meaning shifted between two states."""
    try:
        result = _run_comparison(path, base, head, threshold)
    except SchemaGraphError as exc:
        _fail(exc)
    typer.echo(format_drift_report(result.intent_drifts))


@app.command("export")
def export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Target JSON file."),
    path: Path = _path_option(),
):
    """Write the artifact graph to a portable JSON file."""
    store, engine = _open_graph(path)
    target = output or config.state_dir_for(path) / config.GRAPH_SNAPSHOT_NAME
    try:
        engine.export_snapshot(target)
        stats = engine.stats()
    finally:
        store.close()
    typer.echo(f"Exported {stats['nodes']} nodes and {stats['edges']} edges to {target}")
