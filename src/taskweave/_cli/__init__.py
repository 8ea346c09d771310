"""Taskweave CLI - Command line interface for taskweave.

Usage:
    taskweave run <root> [-f taskfile] [-j concurrency] [--only task ...]
    taskweave watch <root> [-f taskfile] [--debounce-ms ms] [--no-initial-build]
    taskweave list [-f taskfile]
    taskweave order <root> [-f taskfile]
    taskweave version

Configuration:
    Tasks are loaded from ./taskweave.py unless --taskfile is given.
    Set TASKWEAVE_BASE_DIRECTORY, TASKWEAVE_CONCURRENCY_LIMIT,
    TASKWEAVE_WATCH_DEBOUNCE_MS or TASKWEAVE_BUILD_ID, or add a
    .taskweave/config.json, to configure runs.

Exit codes:
    0 success, 1 task failed, 2 usage error, 3 duplicate task,
    4 unknown task, 5 dependency cycle, 6 configuration/taskfile error.
"""

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console

from taskweave._cli._taskfile import DEFAULT_TASKFILE, load_taskfile
from taskweave.build import Reporter, Scheduler, build
from taskweave.config import RunContext, load_run_context
from taskweave.exceptions import TaskweaveError
from taskweave.graph import DependencyGraph
from taskweave.logging_setup import setup_logging
from taskweave.registry import TaskRegistry
from taskweave.watch import WatchController

# Main CLI app
app = typer.Typer(
    name="taskweave",
    help="Taskweave CLI - Dependency-ordered task runner with watch mode",
    no_args_is_help=True,
)

error_console = Console(stderr=True)

_TASKFILE_OPTION = typer.Option(
    DEFAULT_TASKFILE, "--taskfile", "-f", help="Taskfile path or module name"
)
_MODULE_MODE_OPTION = typer.Option(
    False, "-m", help="Interpret the taskfile as a Python module path"
)
_BASE_DIR_OPTION = typer.Option(
    None, "--base-dir", "-C", help="Base directory for relative task paths"
)


@contextmanager
def _handle_errors(reporter: Optional[Reporter] = None) -> Iterator[None]:
    """Print taskweave errors, flush diagnostics and exit with their exit code."""
    try:
        yield
    except TaskweaveError as e:
        error_console.print(f"[bold red]Error:[/bold red] {e}", markup=True)
        (reporter or Reporter()).flush()
        raise typer.Exit(int(e.exit_code))


def _load(
    taskfile: str,
    use_module_mode: bool,
    **overrides,
) -> tuple[RunContext, TaskRegistry]:
    context = load_run_context(**overrides)
    registry = load_taskfile(taskfile, context, use_module_mode)
    return context, registry


@app.command()
def run(
    root: str = typer.Argument(..., help="Task to build"),
    taskfile: str = _TASKFILE_OPTION,
    use_module_mode: bool = _MODULE_MODE_OPTION,
    base_dir: Optional[Path] = _BASE_DIR_OPTION,
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-j", min=1, help="Max concurrently running actions"
    ),
    build_id: Optional[str] = typer.Option(None, "--build-id", help="Build id"),
    only: Optional[list[str]] = typer.Option(
        None, "--only", help="Run only these tasks of the closure (repeatable)"
    ),
) -> None:
    """Run a task and everything it depends on.

    Examples:
        taskweave run dist
        taskweave run test.server -j 2
        taskweave run default --only zip
    """
    reporter = Reporter()
    with _handle_errors(reporter):
        context, registry = _load(
            taskfile,
            use_module_mode,
            base_directory=base_dir,
            concurrency_limit=concurrency,
            build_id=build_id,
        )
        if only:
            scheduler = Scheduler(registry, context, reporter=reporter)
            asyncio.run(scheduler.run(root, only=only))
        else:
            build(registry, root, context, reporter=reporter)

    typer.echo(reporter.summary())
    reporter.flush()
    raise typer.Exit(reporter.exit_code())


@app.command()
def watch(
    root: str = typer.Argument(..., help="Task to build and keep up to date"),
    taskfile: str = _TASKFILE_OPTION,
    use_module_mode: bool = _MODULE_MODE_OPTION,
    base_dir: Optional[Path] = _BASE_DIR_OPTION,
    debounce_ms: Optional[int] = typer.Option(
        None, "--debounce-ms", min=0, help="Change coalescing window"
    ),
    initial_build: bool = typer.Option(
        True, "--initial-build/--no-initial-build", help="Build once before watching"
    ),
) -> None:
    """Build a task, then rebuild the affected tasks whenever sources change.

    Stop with Ctrl+C.
    """
    with _handle_errors():
        context, registry = _load(
            taskfile,
            use_module_mode,
            base_directory=base_dir,
            watch_debounce_ms=debounce_ms,
        )
        controller = WatchController(Scheduler(registry, context), root)
        try:
            asyncio.run(controller.run_forever(initial_build=initial_build))
        except KeyboardInterrupt:
            pass
    typer.echo("Stopped watching")


@app.command("list")
def list_tasks(
    taskfile: str = _TASKFILE_OPTION,
    use_module_mode: bool = _MODULE_MODE_OPTION,
    base_dir: Optional[Path] = _BASE_DIR_OPTION,
) -> None:
    """List registered tasks in registration order."""
    with _handle_errors():
        _, registry = _load(taskfile, use_module_mode, base_directory=base_dir)

    if not len(registry):
        typer.echo("No tasks defined.")
        return
    for task in registry:
        line = f"  {task.name}"
        if task.description:
            line += f" - {task.description}"
        typer.echo(line)
        if task.dependencies:
            typer.echo(f"      depends on: {', '.join(task.dependencies)}")


@app.command()
def order(
    root: str = typer.Argument(..., help="Task whose closure to order"),
    taskfile: str = _TASKFILE_OPTION,
    use_module_mode: bool = _MODULE_MODE_OPTION,
    base_dir: Optional[Path] = _BASE_DIR_OPTION,
) -> None:
    """Show the order in which a task's closure runs when run serially."""
    with _handle_errors():
        context, registry = _load(taskfile, use_module_mode, base_directory=base_dir)
        graph = DependencyGraph(registry, context.sync_groups)
        names = graph.execution_order(root)

    for i, name in enumerate(names, start=1):
        typer.echo(f"{i:>3}. {name}")


@app.command()
def version() -> None:
    """Show the taskweave version."""
    try:
        from importlib.metadata import version as get_version

        ver = get_version("taskweave")
    except Exception:
        ver = "unknown"

    typer.echo(f"taskweave {ver}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Taskweave CLI - Dependency-ordered task runner with watch mode.

    Define tasks in taskweave.py, then use 'taskweave run <task>'.
    Use 'taskweave watch <task>' to rebuild on file changes.
    """
    setup_logging(verbose)


if __name__ == "__main__":
    app()
