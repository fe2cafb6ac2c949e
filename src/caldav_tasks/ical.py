"""
VTODO parser/serializer.

Maps Task rows to iCalendar text and back with the ``icalendar`` library.
Only the fields the store owns are mapped.  Server-side extras are dropped
on parse; the raw body is never stored.
"""

import logging
import uuid
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone

from icalendar import Alarm
from icalendar import Calendar as ICalendar
from icalendar import Todo

from caldav_tasks.db import new_id
from caldav_tasks.db import new_uid
from caldav_tasks.db import utc_now
from caldav_tasks.models import Priority
from caldav_tasks.models import Reminder
from caldav_tasks.models import Task
from caldav_tasks.models import TaskStoreError

logger = logging.getLogger(__name__)

PRODID = "-//CalDAV Tasks//EN"
DEFAULT_TITLE = "Untitled Task"

# X-APPLE-SORT-ORDER counts seconds from 2001-01-01T00:00:00Z.
APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)

_PRIORITY_TO_ICAL = {
    Priority.HIGH: 1,
    Priority.MEDIUM: 5,
    Priority.LOW: 9,
    Priority.NONE: 0,
}


class VTodoParseError(TaskStoreError):
    """A remote body could not be read as a VTODO."""

    pass


@dataclass
class ParsedTodo:
    """A task read from iCalendar text plus its raw CATEGORIES names.

    ``task.tags`` is empty: category names are resolved to tag ids by the
    caller, which owns the tag table.
    """

    task: Task
    categories: list[str] = field(default_factory=list)


def to_apple_epoch(value: datetime) -> int:
    return int((value - APPLE_EPOCH).total_seconds())


def from_apple_epoch(seconds: int) -> datetime:
    return APPLE_EPOCH + timedelta(seconds=seconds)


def priority_from_ical(value: int) -> Priority:
    if value <= 0:
        return Priority.NONE
    if value <= 4:
        return Priority.HIGH
    if value == 5:
        return Priority.MEDIUM
    return Priority.LOW


def priority_to_ical(priority: Priority) -> int:
    return _PRIORITY_TO_ICAL[Priority(priority)]


# --------------------------------------------------------------------------- #
# Serialize                                                                    #
# --------------------------------------------------------------------------- #


def _date_value(value: datetime, all_day: bool) -> date | datetime:
    if all_day:
        return value.date()
    return value.astimezone(timezone.utc)


def build_vtodo(task: Task, categories: list[str] | None = None) -> Todo:
    """Build the VTODO component for ``task``.

    ``categories`` are the tag names to publish; without them the raw
    ``category_id`` read from the server is written back unchanged.
    """
    todo = Todo()
    todo.add("uid", task.uid)
    todo.add("dtstamp", utc_now())
    todo.add("created", task.created_at.astimezone(timezone.utc))
    todo.add("last-modified", task.modified_at.astimezone(timezone.utc))
    todo.add("summary", task.title)
    if task.description:
        todo.add("description", task.description)

    todo.add("status", "COMPLETED" if task.completed else "NEEDS-ACTION")
    if task.completed and task.completed_at:
        todo.add("completed", task.completed_at.astimezone(timezone.utc))

    todo.add("priority", priority_to_ical(task.priority))

    if task.start_date:
        todo.add("dtstart", _date_value(task.start_date, task.start_date_all_day))
    if task.due_date:
        todo.add("due", _date_value(task.due_date, task.due_date_all_day))

    todo.add("x-apple-sort-order", str(task.sort_order))

    if categories:
        todo.add("categories", categories)
    elif task.category_id:
        raw = [name.strip() for name in task.category_id.split(",") if name.strip()]
        if raw:
            todo.add("categories", raw)

    if task.parent_uid:
        todo.add("related-to", task.parent_uid, parameters={"RELTYPE": "PARENT"})
    if task.is_collapsed:
        todo.add("x-apple-collapsed", "1")
    if task.url:
        todo.add("url", task.url)

    for reminder in task.reminders:
        alarm = Alarm()
        alarm.add("uid", reminder.id)
        alarm.add("action", "DISPLAY")
        alarm.add("description", task.title)
        alarm.add(
            "trigger",
            reminder.trigger.astimezone(timezone.utc),
            parameters={"VALUE": "DATE-TIME"},
        )
        todo.add_component(alarm)
    return todo


def _wrap(components) -> str:
    cal = ICalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    for component in components:
        cal.add_component(component)
    return cal.to_ical().decode("utf-8")


def task_to_vtodo(task: Task, categories: list[str] | None = None) -> str:
    """Serialize one task as a complete VCALENDAR object."""
    return _wrap([build_vtodo(task, categories)])


def tasks_to_vcalendar(tasks: list[tuple[Task, list[str]]]) -> str:
    """Serialize several ``(task, category names)`` pairs into one VCALENDAR."""
    return _wrap(build_vtodo(task, categories) for task, categories in tasks)


# --------------------------------------------------------------------------- #
# Parse                                                                        #
# --------------------------------------------------------------------------- #


def _to_utc(value: date | datetime) -> tuple[datetime, bool]:
    """Normalize a DATE or DATE-TIME to aware UTC; returns (value, all_day)."""
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc), True
    if value.tzinfo is None:
        # Floating time: read as UTC
        return value.replace(tzinfo=timezone.utc), False
    return value.astimezone(timezone.utc), False


def _get_date(todo: Todo, name: str) -> tuple[datetime | None, bool]:
    prop = todo.get(name)
    if prop is None:
        return None, False
    return _to_utc(prop.dt)


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _categories(todo: Todo) -> list[str]:
    names: list[str] = []
    for prop in _as_list(todo.get("categories")):
        for name in getattr(prop, "cats", [prop]):
            name = str(name).strip()
            if name and name not in names:
                names.append(name)
    return names


def _parent_uid(todo: Todo) -> str | None:
    # RELATED-TO without RELTYPE defaults to PARENT
    for prop in _as_list(todo.get("related-to")):
        reltype = prop.params.get("RELTYPE", "PARENT") if hasattr(prop, "params") else "PARENT"
        if str(reltype).upper() == "PARENT":
            return str(prop)
    return None


def _priority(todo: Todo) -> Priority:
    raw = todo.get("priority")
    if raw is None:
        return Priority.NONE
    try:
        return priority_from_ical(int(raw))
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid PRIORITY {raw!r}")
        return Priority.NONE


def _reminders(todo: Todo, start: datetime | None, due: datetime | None) -> list[Reminder]:
    reminders = []
    for alarm in todo.walk("VALARM"):
        trigger = alarm.get("trigger")
        if trigger is None:
            continue
        value = trigger.dt
        if isinstance(value, timedelta):
            related = str(trigger.params.get("RELATED", "START")).upper()
            anchor = due if related == "END" else (start or due)
            if anchor is None:
                logger.debug("Skipping relative VALARM trigger without an anchor date")
                continue
            fires_at = anchor + value
        else:
            fires_at, _ = _to_utc(value)
        alarm_uid = alarm.get("uid")
        reminders.append(Reminder(id=str(alarm_uid) if alarm_uid else new_id(), trigger=fires_at))
    return reminders


def _todo_to_parsed(
    todo: Todo,
    account_id: str | None,
    calendar_id: str | None,
    href: str | None,
    etag: str | None,
    synced: bool,
) -> ParsedTodo:
    uid = todo.get("uid")
    if uid:
        uid = str(uid)
    elif href:
        # Stable across passes so the same resource maps to the same row
        uid = str(uuid.uuid5(uuid.NAMESPACE_URL, href))
    else:
        uid = new_uid()

    now = utc_now()
    created, _ = _get_date(todo, "created")
    created = created or now
    modified, _ = _get_date(todo, "last-modified")
    start, start_all_day = _get_date(todo, "dtstart")
    due, due_all_day = _get_date(todo, "due")

    completed = str(todo.get("status", "")).upper() == "COMPLETED"
    completed_at = None
    if completed:
        completed_at, _ = _get_date(todo, "completed")
        completed_at = completed_at or modified or now

    sort_order = None
    raw_sort = todo.get("x-apple-sort-order")
    if raw_sort is not None:
        try:
            sort_order = int(str(raw_sort))
        except ValueError:
            logger.debug(f"Ignoring non-numeric X-APPLE-SORT-ORDER {raw_sort!r}")
    if sort_order is None:
        sort_order = to_apple_epoch(created)

    categories = _categories(todo)
    url = todo.get("url")
    task = Task(
        id=new_id(),
        uid=uid,
        etag=etag,
        href=href,
        title=str(todo.get("summary", "")) or DEFAULT_TITLE,
        description=str(todo.get("description", "")),
        completed=completed,
        completed_at=completed_at,
        category_id=",".join(categories) if categories else None,
        priority=_priority(todo),
        start_date=start,
        start_date_all_day=start_all_day,
        due_date=due,
        due_date_all_day=due_all_day,
        created_at=created,
        modified_at=modified or now,
        reminders=_reminders(todo, start, due),
        parent_uid=_parent_uid(todo),
        is_collapsed=str(todo.get("x-apple-collapsed", "")).upper() in ("1", "TRUE"),
        sort_order=sort_order,
        account_id=account_id,
        calendar_id=calendar_id,
        synced=synced,
        url=str(url) if url else None,
    )
    return ParsedTodo(task=task, categories=categories)


def _parse_components(body: str) -> list[Todo]:
    try:
        component = ICalendar.from_ical(body)
    except ValueError as e:
        raise VTodoParseError(f"Invalid iCalendar data: {e}") from e
    return component.walk("VTODO")


def vtodo_to_task(
    body: str,
    account_id: str | None = None,
    calendar_id: str | None = None,
    href: str | None = None,
    etag: str | None = None,
) -> ParsedTodo:
    """Parse the first VTODO of a remote resource as a Synced task.

    Raises:
        VTodoParseError: the body is not iCalendar or holds no VTODO.
    """
    todos = _parse_components(body)
    if not todos:
        raise VTodoParseError(f"No VTODO component in resource {href or '<inline>'}")
    return _todo_to_parsed(todos[0], account_id, calendar_id, href, etag, synced=True)


def parse_ics(body: str) -> list[ParsedTodo]:
    """Parse every VTODO of an .ics file for import (unassigned, unsynced)."""
    return [
        _todo_to_parsed(todo, None, None, None, None, synced=False)
        for todo in _parse_components(body)
    ]
