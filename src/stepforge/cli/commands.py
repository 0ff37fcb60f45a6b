"""CLI entry points for stepforge."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from stepforge._version import __version__

app = typer.Typer(
    name="stepforge",
    help="StepForge: declarative workflow runner with suspension and resume.",
    no_args_is_help=True,
)
console = Console()

DEFAULT_FILE = "stepforge.yaml"


def _parse_json_option(value: Optional[str], option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {option} must be valid JSON: {e}")
        raise typer.Exit(code=1)


def _load_project(path: str, store_path: Optional[str]):
    from stepforge.config.loader import ConfigError, ConfigLoader
    from stepforge.core.project import Project
    from stepforge.observe.logs import configure_logging
    from stepforge.store.sqlite import SqliteRunStore

    project_file = Path(path)
    try:
        config = ConfigLoader.load(project_file)
    except ConfigError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        raise typer.Exit(code=1)

    configure_logging(config.observe.log_level, config.observe.log_format)

    # Runs are kept on disk so `resume` works from a later invocation
    base_dir = project_file.resolve().parent
    db_path = Path(store_path or config.store.path)
    store = SqliteRunStore(str(db_path if db_path.is_absolute() else base_dir / db_path))
    try:
        return Project(config, store=store, base_dir=base_dir)
    except (OSError, ImportError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def _subscribe_progress(project):
    from stepforge.observe.tracer import EventType, TraceEvent

    def on_event(event: TraceEvent):
        indent = "  " * (event.path.count("/") + 1)
        if event.event_type == EventType.STEP_START:
            console.print(f"{indent}[bold]▸[/bold] [cyan]{event.step_id}[/cyan] [dim]({event.step_type})[/dim]")
        elif event.event_type == EventType.STEP_END:
            console.print(f"{indent}  [green]✓[/green] [dim]{event.duration_ms / 1000:.2f}s[/dim]")
        elif event.event_type == EventType.STEP_SKIPPED:
            console.print(f"{indent}[dim]↷ {event.step_id} (already completed)[/dim]")
        elif event.event_type == EventType.STEP_FAILED:
            console.print(f"{indent}  [red]✗ {event.data.get('error', 'failed')}[/red]")
        elif event.event_type == EventType.STEP_SUSPENDED:
            console.print(f"{indent}  [yellow]⏸ waiting[/yellow]")

    project.event_bus.subscribe_sync(on_event)


def _report(result, as_json: bool):
    from stepforge.core.result import RunStatus

    if as_json:
        typer.echo(result.to_json())
    elif result.status == RunStatus.SUCCESS:
        console.print()
        console.print(
            Panel(
                json.dumps(result.output, indent=2, default=str),
                title="[bold]Output[/bold]",
                border_style="green",
                expand=True,
            )
        )
    elif result.status == RunStatus.SUSPENDED:
        table = Table(title=f"Run {result.run_id} suspended", show_header=True, header_style="bold yellow")
        table.add_column("Step", style="white")
        table.add_column("Path", style="dim")
        table.add_column("Reason")
        table.add_column("Prompt")
        for entry in result.suspended:
            table.add_row(entry.step, entry.path, entry.reason, entry.prompt or "—")
        console.print()
        console.print(table)
        console.print(
            f"[dim]Resume with: stepforge resume {result.run_id} --step <step> --data '<json>'[/dim]"
        )
    else:
        error = result.error
        console.print(
            f"\n[red]Run {result.run_id} failed[/red] at step [bold]{error.step or '—'}[/bold] "
            f"[dim]({error.kind.value})[/dim]: {error.message}"
        )

    if not as_json:
        console.print(f"\n[dim]⏱️  {result.duration:.2f} seconds[/dim]")
    if result.status == RunStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def run(
    path: str = typer.Argument(DEFAULT_FILE, help="Project or workflow definition file (YAML or JSON)"),
    input_json: Optional[str] = typer.Option(None, "--input", "-i", help="Run input as JSON"),
    run_id: Optional[str] = typer.Option(None, "--run-id", help="Use this run id instead of a generated one"),
    store_path: Optional[str] = typer.Option(None, "--store", help="SQLite file for run state"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Run the workflow defined in a project file."""
    input_data = _parse_json_option(input_json, "--input")
    project = _load_project(path, store_path)

    if not as_json:
        console.print(f"\n[bold]⚡ StepForge[/bold] v{__version__}")
        console.print(
            f"[dim]Project:[/dim] {project.config.name} "
            f"[dim]|[/dim] [dim]Steps:[/dim] {sum(1 for _ in project.workflow.iter_steps())}\n"
        )
        _subscribe_progress(project)

    result = project.run(input_data, run_id=run_id)
    _report(result, as_json)


@app.command()
def resume(
    run_id: str = typer.Argument(..., help="Id of a suspended run"),
    step: str = typer.Option(..., "--step", "-s", help="Step id or scoped path to resume"),
    data_json: Optional[str] = typer.Option(None, "--data", "-d", help="Data for the step, as JSON"),
    path: str = typer.Option(DEFAULT_FILE, "--file", "-f", help="Project file the run was started from"),
    store_path: Optional[str] = typer.Option(None, "--store", help="SQLite file for run state"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Continue a suspended run with data for one of its waiting steps."""
    from stepforge.store.base import RunNotFoundError

    data = _parse_json_option(data_json, "--data")
    project = _load_project(path, store_path)
    if not as_json:
        _subscribe_progress(project)

    try:
        result = project.resume(run_id, step, data)
    except RunNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    _report(result, as_json)


@app.command()
def validate(
    path: str = typer.Argument(DEFAULT_FILE, help="Project or workflow definition file"),
):
    """Validate a project file without executing it."""
    from stepforge.config.loader import ConfigError, ConfigLoader
    from stepforge.core.engine import WorkflowEngine
    from stepforge.core.errors import DefinitionError

    try:
        config = ConfigLoader.load(path)
        engine = WorkflowEngine()
        for definition in (config.workflow, *config.workflows.values()):
            engine.validate(definition)
    except ConfigError as e:
        console.print(f"[red]❌ Validation failed:[/red]\n{e}")
        raise typer.Exit(code=1)
    except DefinitionError as e:
        console.print(f"[red]❌ Validation failed:[/red] step '{e.step_id}': {e.message}")
        raise typer.Exit(code=1)

    counts: dict[str, int] = {}
    for step in config.workflow.iter_steps():
        counts[step.type] = counts.get(step.type, 0) + 1

    console.print(f"[green]✅ {path} is valid![/green]")
    console.print(f"  Project: {config.name}")
    console.print(f"  Steps: {sum(counts.values())} ({', '.join(f'{t}: {n}' for t, n in sorted(counts.items()))})")
    if config.agents:
        console.print(f"  Agents: {', '.join(sorted(config.agents))}")
    if config.workflows:
        console.print(f"  Sub-workflows: {', '.join(sorted(config.workflows))}")


@app.command()
def serve(
    path: str = typer.Argument(DEFAULT_FILE, help="Project file providing agents, tools and workflows"),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8420, "--port", "-p"),
    store_path: Optional[str] = typer.Option(None, "--store", help="SQLite file for run state"),
):
    """Serve the HTTP API."""
    import uvicorn

    from stepforge.api.app import create_app

    project = _load_project(path, store_path)
    console.print(f"[bold]⚡ StepForge API[/bold] — http://{host}:{port}")
    uvicorn.run(create_app(project.engine, project.store), host=host, port=port, log_level="info")


@app.command()
def version():
    """Show StepForge version."""
    console.print(f"⚡ StepForge v{__version__}")


if __name__ == "__main__":
    app()
