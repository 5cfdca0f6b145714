"""Typer-based CLI for the code knowledge graph engine."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import DATA_DIR, load_settings
from .context import ContextOptions
from .engine import CodeKnowledgeGraph
from .errors import CKGError, IndexCorruption, WatcherDisconnected

console = Console()

app = typer.Typer(
    help="Code knowledge graph: index a repository and pull token-budgeted context out of it.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_state: Dict[str, Any] = {"data_dir": None}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"codegraph-ckg v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-V", help="Show version and exit.",
        callback=version_callback, is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log indexing progress."),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", envvar="CKG_DATA_DIR", file_okay=False,
        help="Where the graph database and vector tables live.",
    ),
):
    """Local code knowledge graph for LLM context retrieval."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    _state["data_dir"] = data_dir


def _engine() -> CodeKnowledgeGraph:
    try:
        return CodeKnowledgeGraph(settings=load_settings(), data_dir=_state["data_dir"] or DATA_DIR)
    except CKGError as exc:
        console.print(f"[red]✗[/red] Cannot open index: {exc}")
        raise typer.Exit(code=1)


def _project(ckg: CodeKnowledgeGraph, project: Optional[str]) -> str:
    if project:
        return project
    known = ckg.projects()
    if len(known) == 1:
        return next(iter(known))
    if not known:
        raise typer.BadParameter("No project indexed yet. Run 'ckg index <path>' first.")
    raise typer.BadParameter(f"Several projects indexed ({', '.join(known)}); pass --project.")


def _project_name_from_path(project_path: Path) -> str:
    return project_path.resolve().name.replace(" ", "_")


ProjectOption = typer.Option(None, "--project", "-p", help="Project id (optional when only one is indexed).")


# ===================================================================
# Indexing
# ===================================================================

@app.command("index")
def index_project(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Path to source project."),
    project_name: Optional[str] = typer.Option(None, "--name", "-n", help="Project id (defaults to the folder name)."),
    full: bool = typer.Option(False, "--full", help="Rebuild from scratch instead of incrementally."),
):
    """Parse and index a project into the knowledge graph."""
    name = project_name or _project_name_from_path(project_path)
    ckg = _engine()
    try:
        report = ckg.build_index(name, project_path, incremental=not full)
    except IndexCorruption as exc:
        console.print(f"[red]✗[/red] Index corrupted, run 'ckg index --full': {exc}")
        raise typer.Exit(code=2)
    except CKGError as exc:
        console.print(f"[red]✗[/red] Indexing failed: {exc}")
        raise typer.Exit(code=1)
    finally:
        ckg.close()

    console.print(f"[green]✓[/green] Indexed '{project_path.resolve()}' as project '{name}'.")
    console.print(
        f"  Updated: {len(report.processed)} | Unchanged: {len(report.unchanged)} | "
        f"Deleted: {len(report.deleted)} | Skipped: {len(report.skipped)} | Failed: {len(report.failed)}"
    )
    for path, error in sorted(report.failed.items()):
        console.print(f"  [red]✗[/red] {path}: {error}")
    for diag in report.diagnostics:
        if diag.severity == "error":
            console.print(f"  [yellow]![/yellow] {diag.file_path}:{diag.line} {diag.message}")


@app.command("watch")
def watch_project(
    project_path: Path = typer.Argument(..., exists=True, file_okay=False, help="Path to watch."),
    project_name: Optional[str] = typer.Option(None, "--name", "-n", help="Project id (defaults to the folder name)."),
):
    """Keep the index in sync with file changes until Ctrl+C."""
    name = project_name or _project_name_from_path(project_path)
    ckg = _engine()
    try:
        ckg.watch(name, project_path)
        console.print(f"\n[bold green]Watching[/bold green] [cyan]{project_path.resolve()}[/cyan] as '{name}'")
        console.print("[dim]  Press Ctrl+C to stop[/dim]\n")
        while True:
            time.sleep(1.0)
            ckg.check_watchers()
    except KeyboardInterrupt:
        console.print("\n[dim]Stopping watcher...[/dim]")
    except (WatcherDisconnected, CKGError) as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1)
    finally:
        ckg.close()


# ===================================================================
# Retrieval
# ===================================================================

@app.command("context")
def context(
    query: str = typer.Argument(..., help="Identifier or natural-language question."),
    project: Optional[str] = ProjectOption,
    max_tokens: int = typer.Option(4000, "--max-tokens", "-t", min=1, help="Token budget."),
    current_file: Optional[str] = typer.Option(None, "--file", "-f", help="File you are working in."),
    deadline: Optional[float] = typer.Option(None, "--deadline", help="Time budget in seconds."),
    as_json: bool = typer.Option(False, "--json", help="Print the payload as JSON."),
):
    """Build a token-budgeted context bundle for a query."""
    ckg = _engine()
    try:
        payload = ckg.build_context(
            query, _project(ckg, project), max_tokens,
            ContextOptions(current_file=current_file, deadline=deadline),
        )
    finally:
        ckg.close()

    if as_json:
        typer.echo(json.dumps(payload.to_dict(), indent=2))
        return
    if payload.empty:
        console.print("[yellow]No matching context.[/yellow]")
    else:
        console.print(payload.content, markup=False, highlight=False)
    flags = []
    if payload.partial:
        flags.append("partial")
    if payload.degraded:
        flags.append("degraded")
    console.print(
        f"\n[dim]{payload.token_count}/{payload.max_tokens} tokens, "
        f"{len(payload.items)} of {payload.candidate_count} candidates"
        f"{' (' + ', '.join(flags) + ')' if flags else ''}[/dim]"
    )
    for reason in payload.reasons:
        console.print(f"[dim]  - {reason}[/dim]")


@app.command("defs")
def definitions(
    symbol: str = typer.Argument(..., help="Symbol name, optionally Class.method."),
    project: Optional[str] = ProjectOption,
    hint_file: Optional[str] = typer.Option(None, "--file", "-f", help="Prefer definitions near this file."),
):
    """Find where a symbol is defined."""
    ckg = _engine()
    try:
        nodes = ckg.find_definitions(symbol, _project(ckg, project), hint_file)
    finally:
        ckg.close()
    if not nodes:
        typer.echo(f"No definition found for '{symbol}'.")
        raise typer.Exit(code=0)

    table = Table(title=f"Definitions of {symbol}", show_header=True)
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Location")
    table.add_column("Exported", justify="center")
    for node in nodes:
        table.add_row(
            node.kind, node.qualname, f"{node.file_path}:{node.start_line}",
            "yes" if node.metadata.get("exported") else "",
        )
    console.print(table)


@app.command("refs")
def references(
    symbol: str = typer.Argument(..., help="Symbol name."),
    project: Optional[str] = ProjectOption,
):
    """List code that references or calls a symbol."""
    ckg = _engine()
    try:
        project_id = _project(ckg, project)
        edges = ckg.find_references(symbol, project_id)
        sources = ckg.graph.get_nodes(e.from_id for e in edges)
    finally:
        ckg.close()
    if not edges:
        typer.echo(f"No references to '{symbol}'.")
        raise typer.Exit(code=0)

    table = Table(title=f"References to {symbol}", show_header=True)
    table.add_column("From", style="bold")
    table.add_column("File")
    table.add_column("Relationship", style="cyan")
    table.add_column("Weight", justify="right")
    for edge in edges:
        source = sources.get(edge.from_id)
        table.add_row(
            source.qualname if source else edge.from_id, edge.file_path,
            edge.relationship, f"{edge.weight:g}",
        )
    console.print(table)


@app.command("impact")
def impact(
    symbol: str = typer.Argument(..., help="Symbol to analyse."),
    project: Optional[str] = ProjectOption,
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
):
    """Estimate the blast radius of changing a symbol."""
    ckg = _engine()
    try:
        report = ckg.analyze_impact(symbol, _project(ckg, project))
    finally:
        ckg.close()
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return
    body = (
        f"References: [bold]{report.reference_count}[/bold]   "
        f"Files: [bold]{report.file_spread}[/bold]\n"
        f"Recommendation: [cyan]{report.recommendation}[/cyan]"
    )
    if report.files:
        body += "\n\n" + "\n".join(f"  {path} ({count})" for path, count in report.files.items())
    console.print(Panel.fit(body, title=f"Impact of {symbol}"))


@app.command("unused")
def unused(project: Optional[str] = ProjectOption):
    """List exported symbols nothing uses."""
    ckg = _engine()
    try:
        nodes = ckg.find_unused_exports(_project(ckg, project))
    finally:
        ckg.close()
    if not nodes:
        typer.echo("No unused exports.")
        return
    for node in nodes:
        typer.echo(f"{node.file_path}:{node.start_line}  {node.kind} {node.qualname}")


@app.command("cycles")
def cycles(project: Optional[str] = ProjectOption):
    """Report circular imports between files."""
    ckg = _engine()
    try:
        found = ckg.find_circular_dependencies(_project(ckg, project))
    finally:
        ckg.close()
    if not found:
        typer.echo("No circular dependencies.")
        return
    for i, members in enumerate(found, start=1):
        paths = [n.file_path for n in members]
        typer.echo(f"Cycle {i}: {' -> '.join(paths + paths[:1])}")


@app.command("missing-imports")
def missing_imports(
    file_path: str = typer.Argument(..., help="Project-relative file to check."),
    project: Optional[str] = ProjectOption,
):
    """List symbols a file uses from other files it never imports."""
    ckg = _engine()
    try:
        nodes = ckg.find_missing_imports(file_path, _project(ckg, project))
    finally:
        ckg.close()
    if not nodes:
        typer.echo("No missing imports.")
        return
    for node in nodes:
        typer.echo(f"{node.qualname}  ({node.file_path}:{node.start_line})")


@app.command("connectivity")
def connectivity(
    project: Optional[str] = ProjectOption,
    as_json: bool = typer.Option(False, "--json", help="Print the analysis as JSON."),
):
    """Summarise how connected the graph is: hubs, orphans and cycles."""
    ckg = _engine()
    try:
        data = ckg.analyze_connectivity(_project(ckg, project))
    finally:
        ckg.close()
    if as_json:
        typer.echo(json.dumps(data, indent=2))
        return

    summary = data["connectivity"]
    console.print(
        f"Average connections: [bold]{summary['average_connections']}[/bold]   "
        f"Orphaned: [bold]{summary['orphaned_percentage']}%[/bold]   "
        f"Cycles: [bold]{summary['cycle_count']}[/bold]"
    )
    table = Table(title="Most connected", show_header=True)
    table.add_column("Symbol", style="cyan")
    table.add_column("Kind")
    table.add_column("File")
    table.add_column("Degree", justify="right")
    for hub in data["hubs"]:
        table.add_row(hub["name"], hub["kind"], hub["file_path"], str(hub["degree"]))
    console.print(table)


@app.command("export")
def export(
    project: Optional[str] = ProjectOption,
    fmt: str = typer.Option("json", "--format", "-f", help="json, cypher, gexf or dot."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout."),
    focus: str = typer.Option("", "--focus", help="Only nodes matching this name and their neighbours."),
):
    """Export the project graph for Neo4j, Gephi or Graphviz."""
    ckg = _engine()
    try:
        text = ckg.export_graph(_project(ckg, project), fmt, focus)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    finally:
        ckg.close()
    if output is None:
        typer.echo(text, nl=False)
        return
    output.write_text(text, encoding="utf-8")
    console.print(f"[green]✓[/green] Exported graph to {output}")


# ===================================================================
# Maintenance
# ===================================================================

@app.command("stats")
def stats(project: Optional[str] = ProjectOption):
    """Show index statistics for a project."""
    ckg = _engine()
    try:
        data = ckg.stats(_project(ckg, project))
    finally:
        ckg.close()

    graph = data["graph"]
    table = Table(title=f"Project {data['project_id']}", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Root", data["root"])
    table.add_row("Files", str(graph["files"]))
    for kind, count in sorted(graph["nodes_by_kind"].items()):
        table.add_row(f"Nodes: {kind}", str(count))
    for rel, count in sorted(graph["edges_by_relationship"].items()):
        table.add_row(f"Edges: {rel}", str(count))
    for chunk_type, count in sorted(data["chunks"]["chunks_by_type"].items()):
        table.add_row(f"Chunks: {chunk_type}", str(count))
    table.add_row("Vectors", str(data["vectors"]))
    table.add_row("Embedding model", data["embedding_model"])
    console.print(table)


@app.command("verify")
def verify(project: Optional[str] = ProjectOption):
    """Check referential integrity of the graph."""
    ckg = _engine()
    try:
        result = ckg.verify(_project(ckg, project))
    except IndexCorruption as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=2)
    finally:
        ckg.close()
    console.print(
        f"[green]✓[/green] No dangling edges. "
        f"Missing embeddings: {result['missing_embeddings']}, "
        f"orphaned symbols: {result['orphaned_nodes']}"
    )


@app.command("projects")
def list_projects():
    """List indexed projects."""
    ckg = _engine()
    try:
        known = ckg.projects()
    finally:
        ckg.close()
    if not known:
        typer.echo("No projects indexed yet.")
        return
    for name, root in known.items():
        typer.echo(f"{name}  {root}")


if __name__ == "__main__":
    app()
