"""
Export task trees as ICS, JSON, Markdown or CSV, and import .ics files.
"""

import csv
import io
import json
import logging
from dataclasses import asdict
from dataclasses import replace
from datetime import datetime
from enum import Enum

from caldav_tasks.db import TaskStore
from caldav_tasks.db import new_id
from caldav_tasks.db import new_uid
from caldav_tasks.db import utc_now
from caldav_tasks.hierarchy import flatten_tree
from caldav_tasks.hierarchy import rebuild_subtask_index
from caldav_tasks.ical import parse_ics
from caldav_tasks.ical import tasks_to_vcalendar
from caldav_tasks.models import ConstraintViolation
from caldav_tasks.models import Priority
from caldav_tasks.models import Task
from caldav_tasks.sync.utils import category_names
from caldav_tasks.sync.utils import resolve_category_tags

logger = logging.getLogger(__name__)

CSV_HEADERS = (
    "Title",
    "Description",
    "Status",
    "Priority",
    "Due Date",
    "Start Date",
    "Category",
    "Created",
    "Modified",
)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _date_str(value: datetime | None) -> str:
    return value.date().isoformat() if value else ""


def export_tasks_as_ics(store: TaskStore, tasks: list[Task]) -> str:
    """One VCALENDAR holding a VTODO per task, with tag names as CATEGORIES."""
    return tasks_to_vcalendar([(task, category_names(store, task)) for task in tasks])


def export_task_and_children(store: TaskStore, task_id: str) -> str:
    """ICS export of a task followed by all of its descendants."""
    task = store.get_task(task_id)
    if task is None:
        raise ConstraintViolation(f"Task {task_id} does not exist")
    return export_tasks_as_ics(store, [task] + store.get_descendants(task.uid))


def export_tasks_as_json(tasks: list[Task]) -> str:
    return json.dumps([asdict(t) for t in tasks], indent=2, default=_json_default)


def export_tasks_as_markdown(tasks: list[Task]) -> str:
    """Markdown checklist, children indented under their parent.

    Collapsed subtrees are included.
    """
    lines = []
    for flat in flatten_tree(tasks, include_collapsed=True):
        task = flat.task
        indent = "  " * flat.depth
        checkbox = "[x]" if task.completed else "[ ]"
        line = f"{indent}- {checkbox} {task.title}"

        metadata = []
        if task.priority != Priority.NONE:
            metadata.append(f"Priority: {task.priority.value}")
        if task.due_date:
            metadata.append(f"Due: {_date_str(task.due_date)}")
        if task.category_id:
            metadata.append(f"Category: {task.category_id}")
        if metadata:
            line += f" ({', '.join(metadata)})"
        lines.append(line)

        if task.description:
            for desc_line in task.description.splitlines():
                lines.append(f"{indent}  > {desc_line}")
    return "\n".join(lines) + "\n" if lines else ""


def export_tasks_as_csv(tasks: list[Task]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for task in tasks:
        writer.writerow(
            [
                task.title,
                task.description,
                "Completed" if task.completed else "Pending",
                task.priority.value,
                _date_str(task.due_date),
                _date_str(task.start_date),
                task.category_id or "",
                _date_str(task.created_at),
                _date_str(task.modified_at),
            ]
        )
    return buf.getvalue()


def import_tasks_from_ics(store: TaskStore, body: str, calendar_id: str | None) -> list[Task]:
    """Create local copies of every VTODO in ``body``.

    Each imported task gets a fresh uid so re-importing a file never
    collides with existing rows; parent links inside the file are rewritten
    to the new uids and links to tasks outside it are dropped.  Imported
    tasks are PendingCreate in ``calendar_id``, or LocalOnly without one.
    """
    parsed = parse_ics(body)
    uid_map = {p.task.uid: new_uid() for p in parsed}

    account_id = None
    if calendar_id is not None:
        calendar = store.get_calendar(calendar_id)
        if calendar is None:
            raise ConstraintViolation(f"Calendar {calendar_id} does not exist")
        account_id = calendar.account_id

    imported: list[Task] = []
    now = utc_now()
    with store.transaction():
        for item in parsed:
            source = item.task
            parent_uid = None
            if source.parent_uid is not None and source.parent_uid != source.uid:
                parent_uid = uid_map.get(source.parent_uid)
            task = replace(
                source,
                id=new_id(),
                uid=uid_map[source.uid],
                parent_uid=parent_uid,
                tags=resolve_category_tags(store, item.categories),
                subtasks=[],
                modified_at=now,
                href=None,
                etag=None,
                synced=False,
                account_id=account_id,
                calendar_id=calendar_id,
                local_only=calendar_id is None,
            )
            store.save_task(task, check_parent=False)
            imported.append(task)
        rebuild_subtask_index(store)

    logger.info(f"Imported {len(imported)} task(s) from ICS")
    return imported
