"""
Read-side integrity audit of a task store.

Reports every invariant violation it finds and never repairs anything;
repair is left to the explicit store operations.
"""

import logging
from dataclasses import dataclass

from rich.console import Console
from rich.table import Table

from caldav_tasks.db import TaskStore
from caldav_tasks.hierarchy import would_create_cycle

_logger = logging.getLogger(__name__)

COMPLETED_MISMATCH = "completed-mismatch"
CALENDAR_MISSING = "calendar-missing"
CALENDAR_ACCOUNT_MISMATCH = "calendar-account-mismatch"
SELF_PARENT = "self-parent"
DANGLING_PARENT = "dangling-parent"
PARENT_CYCLE = "parent-cycle"
SUBTASK_INDEX_DRIFT = "subtask-index-drift"
TOMBSTONE_LIVE_UID = "tombstone-live-uid"
SYNCED_WITHOUT_HREF = "synced-without-href"
LOCAL_ONLY_WITH_HREF = "local-only-with-href"

_STYLES = {
    COMPLETED_MISMATCH: "bold red",
    CALENDAR_MISSING: "bold red",
    CALENDAR_ACCOUNT_MISMATCH: "bold red",
    SELF_PARENT: "bold yellow",
    DANGLING_PARENT: "bold yellow",
    PARENT_CYCLE: "bold yellow",
    SUBTASK_INDEX_DRIFT: "cyan",
    TOMBSTONE_LIVE_UID: "bold magenta",
    SYNCED_WITHOUT_HREF: "magenta",
    LOCAL_ONLY_WITH_HREF: "magenta",
}


@dataclass
class IntegrityIssue:
    kind: str
    uid: str
    detail: str


def find_integrity_issues(store: TaskStore) -> list[IntegrityIssue]:
    """Collect every invariant violation currently in the store."""
    issues: list[IntegrityIssue] = []
    tasks = store.list_tasks()
    by_uid = {t.uid: t for t in tasks}
    calendars = {c.id: c for c in store.list_calendars()}

    for task in tasks:
        if task.completed != (task.completed_at is not None):
            issues.append(
                IntegrityIssue(
                    COMPLETED_MISMATCH,
                    task.uid,
                    f"completed={task.completed} but completed_at={task.completed_at}",
                )
            )

        if task.calendar_id is not None:
            calendar = calendars.get(task.calendar_id)
            if calendar is None:
                issues.append(
                    IntegrityIssue(
                        CALENDAR_MISSING, task.uid, f"unknown calendar {task.calendar_id}"
                    )
                )
            elif task.account_id is not None and calendar.account_id != task.account_id:
                issues.append(
                    IntegrityIssue(
                        CALENDAR_ACCOUNT_MISMATCH,
                        task.uid,
                        f"calendar {calendar.id} belongs to {calendar.account_id}, "
                        f"task says {task.account_id}",
                    )
                )
        elif task.account_id is not None:
            issues.append(
                IntegrityIssue(
                    CALENDAR_MISSING, task.uid, f"account {task.account_id} set without calendar"
                )
            )

        if task.parent_uid is not None:
            if task.parent_uid == task.uid:
                issues.append(IntegrityIssue(SELF_PARENT, task.uid, "task is its own parent"))
            elif task.parent_uid not in by_uid:
                issues.append(
                    IntegrityIssue(
                        DANGLING_PARENT, task.uid, f"parent {task.parent_uid} does not exist"
                    )
                )
            elif would_create_cycle(store, task.uid, task.parent_uid):
                issues.append(
                    IntegrityIssue(
                        PARENT_CYCLE, task.uid, f"parent chain via {task.parent_uid} loops"
                    )
                )

        children = {c.uid for c in tasks if c.parent_uid == task.uid}
        if set(task.subtasks) != children:
            issues.append(
                IntegrityIssue(
                    SUBTASK_INDEX_DRIFT,
                    task.uid,
                    f"index lists {sorted(task.subtasks)}, children are {sorted(children)}",
                )
            )

        if task.local_only and task.href is not None:
            issues.append(
                IntegrityIssue(LOCAL_ONLY_WITH_HREF, task.uid, f"local-only task has {task.href}")
            )
        elif task.synced and task.href is None and not task.local_only:
            issues.append(
                IntegrityIssue(SYNCED_WITHOUT_HREF, task.uid, "marked synced but never pushed")
            )

    # A moved task legitimately has a tombstone for its old calendar.
    for pending in store.list_pending_deletions():
        live = by_uid.get(pending.uid)
        if live is not None and live.calendar_id == pending.calendar_id:
            issues.append(
                IntegrityIssue(
                    TOMBSTONE_LIVE_UID,
                    pending.uid,
                    f"tombstone for {pending.href} while the task still exists",
                )
            )

    _logger.debug(f"Integrity audit: {len(tasks)} task(s), {len(issues)} issue(s)")
    return issues


def run_verify(store: TaskStore, console: Console) -> bool:
    """Print an audit report.  Returns True when the store is clean."""
    task_count = len(store.list_tasks())
    issues = find_integrity_issues(store)

    if not issues:
        console.print(f"[bold green]✓[/] All [bold]{task_count}[/bold] task(s) consistent.")
        return True

    t = Table(
        title="[bold red]INTEGRITY[/]: invariant violations",
        show_header=True,
        header_style="bold",
    )
    t.add_column("Kind", no_wrap=True)
    t.add_column("Task UID", overflow="fold")
    t.add_column("Detail", overflow="fold", min_width=30)
    for issue in sorted(issues, key=lambda i: (i.kind, i.uid)):
        t.add_row(f"[{_STYLES.get(issue.kind, 'bold')}]{issue.kind}[/]", issue.uid, issue.detail)
    console.print(t)

    console.print(f"\n[bold red]{len(issues)}[/bold red] issue(s) found in {task_count} task(s).")
    return False
