# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0

"""CodeLoom CLI entrypoint."""

from __future__ import annotations

import asyncio
import sys

from pathlib import Path
from typing import Annotated

import cyclopts

from cyclopts import App, Parameter
from rich.console import Console
from rich.table import Table

from codeloom import __version__
from codeloom.common.logging import setup_logger
from codeloom.config.settings import get_settings
from codeloom.core.tasks import TaskStatus
from codeloom.exceptions import CodeLoomError
from codeloom.service import IndexingService


CODELOOM_PREFIX = "[bold magenta]codeloom[/bold magenta]"

console = Console(markup=True, emoji=True)
app = App(
    "codeloom",
    help="CodeLoom: background indexing for semantic code search.",
    default_parameter=Parameter(negative=()),
    version=__version__,
    console=console,
)

_STATUS_STYLES = {
    TaskStatus.PENDING: "yellow",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "dim",
}


def _configure_logging(*, verbose: bool = False, debug: bool = False) -> None:
    if debug:
        level: str = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = get_settings().log_level
    setup_logger("codeloom", level=level)


async def _wait_for_task(service: IndexingService, task_id: str, poll_interval: float = 0.5) -> None:
    with console.status("Waiting for task...") as status:
        while True:
            task = await service.get_task(task_id)
            if task is None or task.is_terminal:
                break
            status.update(f"[cyan]{task.progress:>3}%[/cyan] {task.current_file or ''}")
            await asyncio.sleep(poll_interval)
    if task is None:
        console.print(f"{CODELOOM_PREFIX} [red]Task {task_id} disappeared[/red]")
        return
    style = _STATUS_STYLES[task.status]
    console.print(f"{CODELOOM_PREFIX} Task {task.id} [{style}]{task.status}[/{style}]")
    if task.error_message:
        console.print(f"  [red]{task.error_message}[/red]")
    elif task.result:
        for key, value in task.result.items():
            console.print(f"  [dim]{key}:[/dim] {value}")


@app.command
async def serve(
    *,
    project: Annotated[
        Path | None,
        cyclopts.Parameter(name=["--project", "-p"], help="Register and index this directory"),
    ] = None,
    no_watch: Annotated[
        bool, cyclopts.Parameter(name="--no-watch", help="Do not watch libraries for changes")
    ] = False,
    verbose: Annotated[bool, cyclopts.Parameter(name=["--verbose", "-v"])] = False,
    debug: Annotated[bool, cyclopts.Parameter(name=["--debug", "-d"])] = False,
) -> None:
    """Run the indexing service until interrupted.

    Unfinished tasks from a previous run are recovered and re-queued on start.
    """
    _configure_logging(verbose=verbose, debug=debug)
    service = IndexingService()
    recovered = await service.start(watch=not no_watch)
    try:
        if recovered:
            console.print(f"{CODELOOM_PREFIX} Recovered {len(recovered)} unfinished tasks")
        if project is not None:
            library = await service.add_library(project)
            await service.queue_indexing_task(library.id)
            console.print(f"{CODELOOM_PREFIX} Indexing [cyan]{library.codebase_path}[/cyan]")
        console.print(f"{CODELOOM_PREFIX} [green]Service running.[/green] Press Ctrl+C to stop.")
        await asyncio.Event().wait()
    finally:
        await service.stop()


@app.command
async def add(
    path: Path,
    *,
    name: Annotated[str | None, cyclopts.Parameter(name=["--name", "-n"])] = None,
    index: Annotated[
        bool, cyclopts.Parameter(name=["--index", "-i"], help="Index the library and wait")
    ] = False,
) -> None:
    """Register a directory as a library."""
    _configure_logging()
    service = IndexingService()
    library = await service.add_library(path, name=name)
    console.print(
        f"{CODELOOM_PREFIX} Library [cyan]{library.name}[/cyan] ({library.id}) "
        f"at {library.codebase_path}"
    )
    if not index:
        return
    await service.start(watch=False)
    try:
        task_id = await service.queue_indexing_task(library.id)
        await _wait_for_task(service, task_id)
    finally:
        await service.stop()


@app.command
async def libraries() -> None:
    """List registered libraries."""
    service = IndexingService()
    table = Table(show_header=True, header_style="bold blue", title="Libraries")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Path")
    table.add_column("Status")
    table.add_column("Files", justify="right")
    table.add_column("Snippets", justify="right")
    table.add_column("Last indexed")
    for library in await service.list_libraries():
        table.add_row(
            library.id,
            library.name,
            str(library.codebase_path),
            str(library.status),
            str(library.total_files),
            str(library.indexed_snippets),
            library.last_indexed_at.isoformat(timespec="seconds") if library.last_indexed_at else "-",
        )
    console.print(table)


@app.command
async def tasks(
    *,
    status: Annotated[
        TaskStatus | None, cyclopts.Parameter(name=["--status", "-s"], help="Filter by status")
    ] = None,
) -> None:
    """List background tasks."""
    service = IndexingService()
    table = Table(show_header=True, header_style="bold blue", title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Progress", justify="right")
    table.add_column("Detail")
    for task in await service.list_tasks(status):
        style = _STATUS_STYLES[task.status]
        table.add_row(
            task.id,
            str(task.type),
            f"[{style}]{task.status}[/{style}]",
            task.priority.name.lower(),
            f"{task.progress}%",
            task.error_message or task.file_path or task.current_file or "",
        )
    console.print(table)


@app.command
async def cancel(task_id: str) -> None:
    """Cancel a task. Running tasks can only be cancelled by the process running them."""
    service = IndexingService()
    if await service.cancel_task(task_id):
        console.print(f"{CODELOOM_PREFIX} Cancelled task {task_id}")
    else:
        console.print(f"{CODELOOM_PREFIX} [yellow]Task {task_id} is not pending[/yellow]")


@app.command
async def search(
    library_id: str,
    query: str,
    *,
    limit: Annotated[int, cyclopts.Parameter(name=["--limit", "-l"])] = 10,
) -> None:
    """Search a library's index."""
    _configure_logging()
    service = IndexingService()
    try:
        hits = await service.search(library_id, query, limit)
    finally:
        await service.store.close()
    if not hits:
        console.print(f"{CODELOOM_PREFIX} [yellow]No results[/yellow]")
        return
    for rank, hit in enumerate(hits, start=1):
        lines = f"{hit.payload.get('start_line', '?')}-{hit.payload.get('end_line', '?')}"
        console.print(
            f"[bold]{rank}.[/bold] [cyan]{hit.file_path}[/cyan]:{lines} [dim]({hit.score:.3f})[/dim]"
        )


def main() -> None:
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print(f"\n{CODELOOM_PREFIX} [yellow]Interrupted, shutting down.[/yellow]")
        sys.exit(0)
    except CodeLoomError as e:
        console.print(f"{CODELOOM_PREFIX} [bold red]{e}[/bold red]")
        for suggestion in e.suggestions:
            console.print(f"  [dim]- {suggestion}[/dim]")
        sys.exit(1)
    except Exception as e:
        console.print(f"{CODELOOM_PREFIX} [bold red]Fatal error: {e}[/bold red]")
        console.print("\n[red]Traceback:[/red]")
        console.print_exception(max_frames=10)
        sys.exit(1)


if __name__ == "__main__":
    main()


__all__ = ("app", "console", "main")
