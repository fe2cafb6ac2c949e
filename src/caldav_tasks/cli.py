"""
Command-line interface for CalDAV Tasks.
"""

import logging
from configparser import ConfigParser
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import timezone
from enum import Enum
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from caldav_tasks.db import TaskStore
from caldav_tasks.export import export_task_and_children
from caldav_tasks.export import export_tasks_as_csv
from caldav_tasks.export import export_tasks_as_ics
from caldav_tasks.export import export_tasks_as_json
from caldav_tasks.export import export_tasks_as_markdown
from caldav_tasks.export import import_tasks_from_ics
from caldav_tasks.hierarchy import flatten_tree
from caldav_tasks.hierarchy import reorder_task
from caldav_tasks.hierarchy import set_task_parent
from caldav_tasks.migrations import applied_migrations
from caldav_tasks.migrations import current_version
from caldav_tasks.models import DEFAULT_CONFIG
from caldav_tasks.models import DEFAULT_STORE_DB
from caldav_tasks.models import Priority
from caldav_tasks.models import SchemaMigrationFailure
from caldav_tasks.models import SortConfig
from caldav_tasks.models import SortDirection
from caldav_tasks.models import SortMode
from caldav_tasks.models import StoreConfig
from caldav_tasks.models import SyncState
from caldav_tasks.models import Task
from caldav_tasks.models import TaskQuery
from caldav_tasks.models import TaskStoreError
from caldav_tasks.sync.state import build_summary
from caldav_tasks.sync.state import classify_task
from caldav_tasks.sync.state import count_by_state
from caldav_tasks.sync.utils import resolve_category_tags
from caldav_tasks.verify import run_verify

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Offline-first CalDAV task store.",
)

console = Console()

CONFIG_SECTION = "caldav-tasks"


class ExportFormat(str, Enum):
    ICS = "ics"
    JSON = "json"
    MARKDOWN = "markdown"
    CSV = "csv"


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    store_path: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    store: Annotated[
        Path | None,
        typer.Option("--store", help=f"Task store path (default: {DEFAULT_STORE_DB})"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.store_path = store
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "yes", "true", "on")


def _build_config() -> StoreConfig:
    config_file = _load_config_file(state.config_path)

    store_path = state.store_path
    if store_path is None and config_file.get("store_path"):
        store_path = Path(config_file["store_path"]).expanduser()

    try:
        default_priority = Priority(config_file.get("default_priority", "none"))
        default_sort = SortConfig(
            mode=SortMode(config_file.get("sort_mode", "manual")),
            direction=SortDirection(config_file.get("sort_direction", "asc")),
        )
    except ValueError as e:
        console.print(f"[bold red]Error:[/] Invalid value in {state.config_path}: {e}")
        raise typer.Exit(1) from None

    return StoreConfig(
        store_path=store_path or DEFAULT_STORE_DB,
        verbose=state.verbose,
        default_priority=default_priority,
        default_calendar_id=config_file.get("default_calendar_id"),
        default_sort=default_sort,
        show_completed=_truthy(config_file.get("show_completed", "yes")),
    )


@contextmanager
def _open_store(cfg: StoreConfig):
    """Open (and migrate) the store; store errors become exit code 1."""
    store = TaskStore(cfg.store_path)
    try:
        store.connect()
    except SchemaMigrationFailure as e:
        console.print(f"[bold red]Schema migration failed:[/] {e}")
        raise typer.Exit(1) from None
    try:
        yield store
    except TaskStoreError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    finally:
        store.close()


def _find_task(store: TaskStore, ref: str) -> Task:
    """Resolve a task by id or uid."""
    task = store.get_task(ref) or store.get_task_by_uid(ref)
    if task is None:
        console.print(f"[bold red]Error:[/] Task [cyan]{ref}[/] not found.")
        raise typer.Exit(1)
    return task


def _parse_when(value: str) -> tuple[datetime, bool]:
    """Parse YYYY-MM-DD (all-day) or an ISO date-time (UTC if naive)."""
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime(day.year, day.month, day.day, tzinfo=timezone.utc), True
        moment = datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[bold red]Error:[/] Invalid date: {value!r}")
        raise typer.Exit(1) from None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc), False


def _fmt_time(value: datetime | None) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S") if value else "—"


_STATE_STYLES = {
    SyncState.LOCAL_ONLY: "dim",
    SyncState.PENDING_CREATE: "yellow",
    SyncState.SYNCED: "green",
    SyncState.DIRTY: "bold yellow",
    SyncState.PENDING_DELETE: "red",
}

_PRIORITY_STYLES = {
    Priority.HIGH: "bold red",
    Priority.MEDIUM: "yellow",
    Priority.LOW: "cyan",
    Priority.NONE: "dim",
}

_CALENDAR_OPT = Annotated[
    str | None,
    typer.Option("--calendar", help="Calendar id (overrides default_calendar_id)"),
]


# ---------------------------------------------------------------------------
# Subcommand: migrate
# ---------------------------------------------------------------------------


@app.command()
def migrate() -> None:
    """Bring the store schema up to date and show the migration history."""
    cfg = _build_config()
    with _open_store(cfg) as store:
        conn = store.conn
        history = applied_migrations(conn)
        version = current_version(conn)

    info = Text()
    info.append("  Store:   ", style="bold")
    info.append(f"{cfg.store_path}\n")
    info.append("  Version: ", style="bold")
    info.append(str(version), style="green")
    console.print(Panel(info, title="[bold]Schema[/bold]"))

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Version", justify="right")
    table.add_column("Description")
    table.add_column("Applied")
    table.add_column("Checksum", style="dim")
    for row in history:
        table.add_row(
            str(row["version"]), row["description"], row["applied_at"], row["checksum"][:12]
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show accounts, calendars and pending sync work."""
    cfg = _build_config()
    config_exists = state.config_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config: ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "yellow"
    )
    cfg_info.append("\n  Store:  ", style="bold")
    cfg_info.append(str(cfg.store_path))

    with _open_store(cfg) as store:
        accounts = store.list_accounts()
        calendars = store.list_calendars()
        counts = count_by_state(store)
        summary = build_summary(store)
        tasks_per_calendar: dict[str | None, int] = {}
        for task in store.list_tasks():
            tasks_per_calendar[task.calendar_id] = tasks_per_calendar.get(task.calendar_id, 0) + 1

    cfg_info.append("\n  Last sync: ", style="bold")
    cfg_info.append(_fmt_time(summary.last_sync_at))
    console.print(Panel(cfg_info, title="[bold]CalDAV Tasks: Status[/bold]"))

    if not accounts:
        console.print("[yellow]No accounts configured yet.[/]")
    else:
        account_names = {a.id: a.name for a in accounts}
        table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        table.add_column("Account")
        table.add_column("Server", overflow="fold")
        table.add_column("Active")
        table.add_column("Last sync")
        for account in accounts:
            table.add_row(
                account.name,
                account.server_url,
                Text("✓", style="green") if account.is_active else Text("✗", style="red"),
                _fmt_time(account.last_sync),
            )
        console.print(Panel(table, title="[bold]Accounts[/bold]", expand=False))

        cal_table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
        cal_table.add_column("Calendar")
        cal_table.add_column("Account")
        cal_table.add_column("Tasks", justify="right")
        cal_table.add_column("Id", style="dim")
        for calendar in calendars:
            cal_table.add_row(
                calendar.display_name,
                account_names.get(calendar.account_id, "—"),
                str(tasks_per_calendar.get(calendar.id, 0)),
                calendar.id,
            )
        console.print(Panel(cal_table, title="[bold]Calendars[/bold]", expand=False))

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    for sync_state in SyncState:
        results.add_row(
            sync_state.value, Text(str(counts[sync_state]), style=_STATE_STYLES[sync_state])
        )
    results.add_row("Pending push", str(summary.pending_push))
    console.print(Panel(results, title="[bold]Sync state[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommand: verify
# ---------------------------------------------------------------------------


@app.command()
def verify() -> None:
    """Audit the store for invariant violations.

    Reports problems without repairing them.  Exits with code 1 if any
    issues are found.
    """
    with _open_store(_build_config()) as store:
        ok = run_verify(store, console)
    if not ok:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommands: tasks / add / done / move
# ---------------------------------------------------------------------------


@app.command()
def tasks(
    calendar: _CALENDAR_OPT = None,
    tag: Annotated[str | None, typer.Option("--tag", help="Only tasks with this tag")] = None,
    search: Annotated[
        str | None, typer.Option("--search", "-s", help="Substring of title or description")
    ] = None,
    sort: Annotated[SortMode | None, typer.Option("--sort", help="Sort mode")] = None,
    desc: Annotated[bool, typer.Option("--desc", help="Sort descending")] = False,
    show_completed: Annotated[
        bool | None,
        typer.Option("--completed/--open", help="Include completed tasks (default: config)"),
    ] = None,
    expand: Annotated[
        bool, typer.Option("--expand", help="Show children of collapsed tasks")
    ] = False,
) -> None:
    """List tasks as a tree."""
    cfg = _build_config()
    include_completed = cfg.show_completed if show_completed is None else show_completed
    sort_config = cfg.default_sort
    if sort is not None:
        sort_config = SortConfig(mode=sort, direction=SortDirection.ASC)
    if desc:
        sort_config = SortConfig(mode=sort_config.mode, direction=SortDirection.DESC)

    with _open_store(cfg) as store:
        tag_id = None
        if tag is not None:
            found = store.find_tag_by_name(tag)
            if found is None:
                console.print(f"[yellow]No tag named {tag!r}.[/]")
                return
            tag_id = found.id
        query = TaskQuery(
            calendar_id=calendar or cfg.default_calendar_id,
            tag_id=tag_id,
            completed=None if include_completed else False,
            search=search,
            sort=sort_config,
        )
        rows = flatten_tree(store.query_tasks(query), include_collapsed=expand)

    if not rows:
        console.print("[dim]No tasks.[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Task", min_width=30, overflow="fold")
    table.add_column("Priority")
    table.add_column("Due")
    table.add_column("State")
    table.add_column("UID", style="dim", overflow="fold")
    for flat in rows:
        task = flat.task
        title = Text("  " * flat.depth)
        if flat.has_children:
            title.append("▸ " if task.is_collapsed and not expand else "▾ ", style="dim")
        title.append("[x] " if task.completed else "[ ] ")
        title.append(task.title, style="dim strike" if task.completed else "")
        sync_state = classify_task(task)
        table.add_row(
            title,
            Text(task.priority.value, style=_PRIORITY_STYLES[task.priority]),
            task.due_date.date().isoformat() if task.due_date else "",
            Text(sync_state.value, style=_STATE_STYLES[sync_state]),
            task.uid,
        )
    console.print(table)


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Task title")],
    calendar: _CALENDAR_OPT = None,
    parent: Annotated[str | None, typer.Option("--parent", help="Parent task id or uid")] = None,
    description: Annotated[str, typer.Option("--description", "-d")] = "",
    priority: Annotated[Priority | None, typer.Option("--priority", "-p")] = None,
    due: Annotated[
        str | None, typer.Option("--due", help="YYYY-MM-DD or ISO date-time")
    ] = None,
    start: Annotated[
        str | None, typer.Option("--start", help="YYYY-MM-DD or ISO date-time")
    ] = None,
    tag: Annotated[
        list[str] | None, typer.Option("--tag", "-t", help="Tag name (repeatable)")
    ] = None,
    local: Annotated[bool, typer.Option("--local", help="Never sync this task")] = False,
) -> None:
    """Create a task."""
    cfg = _build_config()
    due_date, due_all_day = _parse_when(due) if due else (None, False)
    start_date, start_all_day = _parse_when(start) if start else (None, False)

    with _open_store(cfg) as store:
        parent_uid = None
        calendar_id = calendar or cfg.default_calendar_id
        if parent is not None:
            parent_task = _find_task(store, parent)
            parent_uid = parent_task.uid
            calendar_id = parent_task.calendar_id
        if local:
            calendar_id = None
        task = store.create_task(
            title,
            calendar_id=calendar_id,
            description=description,
            priority=priority or cfg.default_priority,
            tags=resolve_category_tags(store, tag or []),
            parent_uid=parent_uid,
            start_date=start_date,
            start_date_all_day=start_all_day,
            due_date=due_date,
            due_date_all_day=due_all_day,
        )

    console.print(
        f"[green]Created[/] {task.title!r} [dim]({task.uid})[/dim] "
        f"as [bold]{classify_task(task).value}[/bold]"
    )


@app.command()
def done(
    task_ref: Annotated[str, typer.Argument(help="Task id or uid")],
    undo: Annotated[bool, typer.Option("--undo", help="Mark as not completed")] = False,
) -> None:
    """Mark a task completed."""
    with _open_store(_build_config()) as store:
        task = _find_task(store, task_ref)
        task = store.set_task_completed(task.id, not undo)
    label = "reopened" if undo else "completed"
    console.print(f"[green]Task {label}:[/] {task.title!r} [dim]({task.uid})[/dim]")


@app.command()
def move(
    task_ref: Annotated[str, typer.Argument(help="Task id or uid")],
    parent: Annotated[
        str | None, typer.Option("--parent", help="New parent id or uid")
    ] = None,
    top_level: Annotated[
        bool, typer.Option("--top-level", help="Detach from the current parent")
    ] = False,
    index: Annotated[
        int | None, typer.Option("--index", help="New position among siblings (0-based)")
    ] = None,
) -> None:
    """Reparent and/or reorder a task."""
    if parent is not None and top_level:
        raise typer.BadParameter("--parent and --top-level are mutually exclusive")

    with _open_store(_build_config()) as store:
        task = _find_task(store, task_ref)
        if parent is not None:
            task = set_task_parent(store, task.id, _find_task(store, parent).uid)
        elif top_level:
            task = set_task_parent(store, task.id, None)
        if index is not None:
            changed = reorder_task(store, task.id, index)
            console.print(f"[dim]Rewrote sort order of {len(changed)} task(s)[/dim]")
    console.print(f"[green]Moved[/] {task.title!r} [dim]({task.uid})[/dim]")


# ---------------------------------------------------------------------------
# Subcommands: export / import
# ---------------------------------------------------------------------------


@app.command()
def export(
    fmt: Annotated[ExportFormat, typer.Option("--format", "-f")] = ExportFormat.ICS,
    calendar: _CALENDAR_OPT = None,
    task_ref: Annotated[
        str | None, typer.Option("--task", help="Export one task and its subtasks (ICS)")
    ] = None,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write to file instead of stdout")
    ] = None,
) -> None:
    """Export tasks as ICS, JSON, Markdown or CSV."""
    cfg = _build_config()
    with _open_store(cfg) as store:
        if task_ref is not None:
            if fmt != ExportFormat.ICS:
                raise typer.BadParameter("--task only supports the ics format")
            body = export_task_and_children(store, _find_task(store, task_ref).id)
        else:
            selected = store.query_tasks(
                TaskQuery(calendar_id=calendar or cfg.default_calendar_id)
            )
            if fmt == ExportFormat.ICS:
                body = export_tasks_as_ics(store, selected)
            elif fmt == ExportFormat.JSON:
                body = export_tasks_as_json(selected)
            elif fmt == ExportFormat.MARKDOWN:
                body = export_tasks_as_markdown(selected)
            else:
                body = export_tasks_as_csv(selected)

    if output is None:
        console.out(body, highlight=False)
    else:
        output.write_text(body, encoding="utf-8")
        console.print(f"[green]Wrote[/] {output}")


@app.command("import")
def import_(
    path: Annotated[Path, typer.Argument(help=".ics file to import", exists=True)],
    calendar: _CALENDAR_OPT = None,
) -> None:
    """Import the VTODOs of an .ics file as new tasks."""
    cfg = _build_config()
    with _open_store(cfg) as store:
        imported = import_tasks_from_ics(
            store, path.read_text(encoding="utf-8"), calendar or cfg.default_calendar_id
        )
    console.print(f"[green]Imported[/] [bold]{len(imported)}[/bold] task(s) from {path}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
