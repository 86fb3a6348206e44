"""Command-line interface for todo-sync.

Every command works offline against the local store. ``sync`` runs one
reconciliation pass against the configured Supabase project.
"""

import asyncio
from pathlib import Path
from typing import Iterable, List, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import BackendSettings, ConfigModel, load_config
from .logging_setup import configure_logging
from .repository import TaskRepository
from .sync.engine import SyncEngine
from .sync.errors import SyncError
from .sync.gateway import RemoteGateway
from .sync.local_store import LocalStore
from .sync.models import ConflictWinner, ResultStatus, SyncResult
from .sync.supabase_gateway import SupabaseGateway
from .task import Priority, Tag, Task, TaskFilter

console = Console()

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M"]

PRIORITY_STYLES = {
    Priority.HIGH: "bold red",
    Priority.MEDIUM: "yellow",
    Priority.LOW: "dim",
}


def make_gateway(config: ConfigModel) -> Optional[RemoteGateway]:
    """Gateway for the configured backend, or None when running offline."""
    backend = BackendSettings()
    if not backend.configured:
        return None
    return SupabaseGateway.from_settings(
        backend, user_id=config.user_id, timeout=config.sync.request_timeout
    )


class AppContext:
    """Objects shared by the commands of one invocation."""

    def __init__(self, config: ConfigModel):
        self.config = config
        self.store = LocalStore(config.get_db_path())
        self.repo = TaskRepository(self.store, config.user_id)

    def find_task(self, prefix: str) -> Task:
        """Find a task by id or unique id prefix."""
        matches = [t for t in self.repo.list_tasks() if t.id.startswith(prefix)]
        if not matches:
            raise click.ClickException(f"No task matches '{prefix}'")
        if len(matches) > 1:
            raise click.ClickException(f"'{prefix}' matches {len(matches)} tasks; use a longer id")
        return matches[0]

    def resolve_tags(self, names: Iterable[str]) -> List[Tag]:
        """Map tag names to tags, reusing ids of tags already in use."""
        known = {}
        for task in self.repo.list_tasks():
            for tag in task.tags:
                known.setdefault(tag.name, tag)
        next_id = max((tag.id for tag in known.values()), default=0) + 1
        tags = []
        for name in names:
            if name not in known:
                known[name] = Tag(next_id, name)
                next_id += 1
            tags.append(known[name])
        return tags


pass_app = click.make_pass_decorator(AppContext)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path),
              help="Path to config.yaml (default: $TODO_SYNC_HOME/config.yaml)")
@click.option("-v", "--verbose", count=True, help="Increase log verbosity")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], verbose: int):
    """Offline-first task list synchronized with a hosted backend."""
    config = load_config(config_path)
    level = {0: config.log_level, 1: "INFO"}.get(verbose, "DEBUG")
    configure_logging(level)
    try:
        app = AppContext(config)
    except SyncError as e:
        raise click.ClickException(str(e))
    ctx.obj = app
    ctx.call_on_close(app.store.close)


@main.command("add")
@click.argument("title")
@click.option("-d", "--description", help="Task description")
@click.option("-p", "--priority", type=click.Choice([p.value for p in Priority]),
              default=Priority.MEDIUM.value, show_default=True)
@click.option("--due", type=click.DateTime(formats=DATE_FORMATS), help="Due date")
@click.option("-t", "--tag", "tags", multiple=True, help="Tag (repeatable)")
@pass_app
def add_task(app: AppContext, title: str, description: Optional[str], priority: str,
             due, tags: List[str]):
    """Add a new task."""
    try:
        task = app.repo.create_task(
            title,
            description=description,
            priority=Priority(priority),
            due_date=due,
            tags=app.resolve_tags(tags),
        )
    except ValueError as e:
        raise click.ClickException(str(e))
    console.print(f"[green]Added[/green] {task.id[:8]} {task.title}")


@main.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include completed tasks")
@click.option("-p", "--priority", type=click.Choice([p.value for p in Priority]))
@click.option("-t", "--tag", help="Only tasks with this tag")
@click.option("-s", "--search", help="Text to search in title and description")
@pass_app
def list_tasks(app: AppContext, show_all: bool, priority: Optional[str],
               tag: Optional[str], search: Optional[str]):
    """List tasks."""
    task_filter = TaskFilter(
        completed=None if show_all else False,
        priority=Priority(priority) if priority else None,
        tag=tag,
        search=search,
    )
    tasks = app.repo.list_tasks(task_filter)
    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    pending_ids = {c.task_id for c in app.repo.pending_changes()}
    failed_ids = {c.task_id for c in app.repo.failed_changes()}

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("", justify="center")
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("Due")
    table.add_column("Tags")
    table.add_column("Sync", justify="center")

    for task in tasks:
        if task.id in failed_ids:
            sync_mark = "[red]failed[/red]"
        elif task.id in pending_ids:
            sync_mark = "[yellow]pending[/yellow]"
        else:
            sync_mark = "[green]synced[/green]"
        due = task.due_date.strftime("%Y-%m-%d") if task.due_date else ""
        if task.is_overdue():
            due = f"[red]{due}[/red]"
        table.add_row(
            task.id[:8],
            "✔" if task.is_completed else "",
            task.title,
            f"[{PRIORITY_STYLES[task.priority]}]{task.priority.value}[/]",
            due,
            ", ".join(task.tag_names()),
            sync_mark,
        )
    console.print(table)


@main.command("edit")
@click.argument("task_id")
@click.option("--title", help="New title")
@click.option("-d", "--description", help="New description")
@click.option("-p", "--priority", type=click.Choice([p.value for p in Priority]))
@click.option("--due", type=click.DateTime(formats=DATE_FORMATS), help="New due date")
@click.option("-t", "--tag", "tags", multiple=True, help="Replace tags (repeatable)")
@pass_app
def edit_task(app: AppContext, task_id: str, title: Optional[str], description: Optional[str],
              priority: Optional[str], due, tags: List[str]):
    """Edit a task."""
    task = app.find_task(task_id)
    fields = {}
    if title is not None:
        fields["title"] = title
    if description is not None:
        fields["description"] = description
    if priority is not None:
        fields["priority"] = Priority(priority)
    if due is not None:
        fields["due_date"] = due
    if tags:
        fields["tags"] = app.resolve_tags(tags)
    if not fields:
        raise click.UsageError("Nothing to change")

    try:
        task = app.repo.update_task(task.id, **fields)
    except ValueError as e:
        raise click.ClickException(str(e))
    console.print(f"[green]Updated[/green] {task.id[:8]} {task.title}")


@main.command("done")
@click.argument("task_id")
@click.option("--undo", is_flag=True, help="Mark as not completed")
@pass_app
def complete_task(app: AppContext, task_id: str, undo: bool):
    """Mark a task as completed."""
    task = app.repo.complete_task(app.find_task(task_id).id, completed=not undo)
    state = "reopened" if undo else "completed"
    console.print(f"[green]Task {state}:[/green] {task.title}")


@main.command("rm")
@click.argument("task_id")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@pass_app
def remove_task(app: AppContext, task_id: str, yes: bool):
    """Delete a task."""
    task = app.find_task(task_id)
    if not yes and not click.confirm(f"Delete '{task.title}'?"):
        console.print("[yellow]Cancelled[/yellow]")
        return
    app.repo.delete_task(task.id)
    console.print(f"[green]Deleted[/green] {task.title}")


def _require_gateway(app: AppContext) -> RemoteGateway:
    gateway = make_gateway(app.config)
    if gateway is None:
        raise click.ClickException(
            "No backend configured; set SUPABASE_URL and SUPABASE_ANON_KEY"
        )
    return gateway


def _print_result(result: SyncResult):
    table = Table(title="Sync Results")
    table.add_column("Status", justify="center")
    table.add_column("Pulled", justify="right")
    table.add_column("Applied", justify="right")
    table.add_column("Pushed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Duration", justify="right")

    if result.status in (ResultStatus.SUCCESS, ResultStatus.NO_CHANGES):
        status_text = f"[green]{result.status.value}[/green]"
    elif result.status == ResultStatus.ERROR:
        status_text = f"[red]{result.status.value}[/red]"
    else:
        status_text = f"[yellow]{result.status.value}[/yellow]"

    table.add_row(
        status_text,
        str(result.items_pulled),
        str(result.items_applied),
        str(result.items_pushed),
        str(result.items_failed),
        str(result.conflicts_detected),
        f"{result.duration_seconds:.1f}s",
    )
    console.print(table)

    for error in result.errors:
        console.print(f"[red]  • {error}[/red]")
    for warning in result.warnings:
        console.print(f"[yellow]  • {warning}[/yellow]")


async def _run_sync(app: AppContext, gateway: RemoteGateway) -> SyncResult:
    engine = SyncEngine(app.store, gateway, app.config.sync, user_id=app.config.user_id)
    try:
        return await engine.run("cli")
    finally:
        await engine.stop()
        await gateway.close()


@main.command("sync")
@pass_app
def sync_command(app: AppContext):
    """Run one sync pass against the backend."""
    gateway = _require_gateway(app)
    try:
        result = asyncio.run(_run_sync(app, gateway))
    except KeyboardInterrupt:
        console.print("\n[yellow]Sync cancelled[/yellow]")
        return
    _print_result(result)
    if result.status == ResultStatus.ERROR:
        raise SystemExit(1)


@main.command("status")
@pass_app
def show_status(app: AppContext):
    """Show pending changes, failures and conflicts."""
    stats = app.store.stats()
    backend = BackendSettings()

    table = Table(show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Backend", backend.url if backend.configured else "[yellow]not configured[/yellow]")
    table.add_row("User", app.config.user_id)
    table.add_row("Tasks", str(stats["tasks"]))
    table.add_row("Pending changes", str(stats["pending_changes"]))
    table.add_row("Failed changes", str(stats["failed_changes"]))
    table.add_row("Unresolved conflicts", str(stats["unresolved_conflicts"]))
    table.add_row("Last synced", stats["last_synced_at"] or "never")
    table.add_row("Conflict strategy", app.config.sync.conflict_strategy.value)
    console.print(table)

    failed = app.repo.failed_changes()
    if failed:
        console.print("\n[red]Failed changes:[/red]")
        for change in failed:
            console.print(f"  • #{change.change_id} {change.operation.value} "
                          f"{change.task_id[:8]}: {change.error}")


@main.command("conflicts")
@click.option("--all", "show_all", is_flag=True, help="Include resolved conflicts")
@pass_app
def list_conflicts(app: AppContext, show_all: bool):
    """List sync conflicts."""
    conflicts = app.repo.conflicts(resolved=None if show_all else False)
    if not conflicts:
        console.print("[green]No conflicts[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Task", style="cyan")
    table.add_column("Description")
    table.add_column("Local updated")
    table.add_column("Remote updated")
    table.add_column("Winner")
    for conflict in conflicts:
        table.add_row(
            conflict.task_id[:8],
            conflict.describe(),
            conflict.local.updated_at.isoformat() if conflict.local else "deleted",
            conflict.remote.updated_at.isoformat() if conflict.remote else "deleted",
            conflict.winner.value if conflict.winner else "[yellow]unresolved[/yellow]",
        )
    console.print(table)


async def _resolve(app: AppContext, gateway: RemoteGateway, task_id: str,
                   winner: ConflictWinner) -> Task:
    engine = SyncEngine(app.store, gateway, app.config.sync, user_id=app.config.user_id)
    try:
        return await engine.resolve_conflict(task_id, winner)
    finally:
        await engine.stop()
        await gateway.close()


@main.command("resolve")
@click.argument("task_id")
@click.option("--keep", type=click.Choice(["local", "remote"]), required=True,
              help="Which version survives")
@pass_app
def resolve_conflict(app: AppContext, task_id: str, keep: str):
    """Resolve a conflict held for manual resolution."""
    matches = [c for c in app.repo.conflicts() if c.task_id.startswith(task_id)]
    if len(matches) != 1:
        raise click.ClickException(f"No single unresolved conflict matches '{task_id}'")

    gateway = _require_gateway(app)
    try:
        task = asyncio.run(_resolve(app, gateway, matches[0].task_id, ConflictWinner(keep)))
    except (KeyError, SyncError) as e:
        raise click.ClickException(str(e))
    console.print(f"[green]Kept {keep} version of[/green] {task.title}; "
                  "run 'todo-sync sync' to push it")


@main.command("retry")
@click.argument("task_id", required=False)
@pass_app
def retry_failed(app: AppContext, task_id: Optional[str]):
    """Requeue failed changes (all, or those of one task)."""
    full_id = None
    if task_id:
        failed = {c.task_id for c in app.repo.failed_changes() if c.task_id.startswith(task_id)}
        if len(failed) != 1:
            raise click.ClickException(f"No single failed task matches '{task_id}'")
        full_id = failed.pop()
    count = app.repo.retry_failed(full_id)
    console.print(f"[green]Requeued {count} change(s)[/green]")


if __name__ == "__main__":
    main()
