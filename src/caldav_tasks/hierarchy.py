"""
Subtask hierarchy and manual sibling ordering.

``parent_uid`` is the source of truth for the tree.  Each task's ``subtasks``
list is a derived index rebuilt from it and is never consulted for structure.
Siblings are tasks sharing a ``parent_uid``, or top-level tasks of the same
calendar; ``sort_order`` orders them with gaps of SORT_ORDER_GAP so a move
normally rewrites a single row.
"""

import logging
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace

from caldav_tasks.db import TaskStore
from caldav_tasks.models import SORT_ORDER_GAP
from caldav_tasks.models import ConstraintViolation
from caldav_tasks.models import Task

logger = logging.getLogger(__name__)


@dataclass
class FlatTask:
    """A task positioned in a depth-first rendering of the tree."""

    task: Task
    depth: int
    ancestor_ids: list[str] = field(default_factory=list)
    has_children: bool = False


def ancestors(store: TaskStore, uid: str) -> list[str]:
    """UIDs above ``uid``, nearest parent first.

    Stops at a missing parent or at a repeated uid, so a corrupt chain never
    loops.
    """
    chain: list[str] = []
    seen = {uid}
    task = store.get_task_by_uid(uid)
    current = task.parent_uid if task else None
    while current is not None and current not in seen:
        chain.append(current)
        seen.add(current)
        parent = store.get_task_by_uid(current)
        current = parent.parent_uid if parent else None
    return chain


def would_create_cycle(store: TaskStore, task_uid: str, new_parent_uid: str | None) -> bool:
    """True if making ``new_parent_uid`` the parent of ``task_uid`` closes a loop.

    Walks up from the proposed parent; the move is rejected if the task
    being moved appears on that chain.  An already corrupt chain counts as a
    cycle.
    """
    current = new_parent_uid
    seen: set[str] = set()
    while current is not None:
        if current == task_uid or current in seen:
            return True
        seen.add(current)
        parent = store.get_task_by_uid(current)
        current = parent.parent_uid if parent else None
    return False


def sibling_scope(task: Task) -> tuple[str, str | None]:
    if task.parent_uid is not None:
        return ("parent", task.parent_uid)
    return ("calendar", task.calendar_id)


def list_siblings(store: TaskStore, parent_uid: str | None, calendar_id: str | None) -> list[Task]:
    """Siblings in manual order."""
    if parent_uid is not None:
        return store.get_child_tasks(parent_uid)
    return store.get_top_level_tasks(calendar_id)


def next_sort_order(store: TaskStore, parent_uid: str | None, calendar_id: str | None) -> int:
    return store.next_sort_order(parent_uid, calendar_id)


def set_task_parent(store: TaskStore, task_id: str, parent_uid: str | None) -> Task:
    """Move a task under ``parent_uid`` (or to the top level with None).

    The task and its descendants adopt the parent's calendar, and the task is
    placed last among its new siblings.

    Raises:
        ConstraintViolation: unknown task or parent, or the move would make the
            task its own ancestor.  Nothing is changed in that case.
    """
    with store.transaction():
        task = store.get_task(task_id)
        if task is None:
            raise ConstraintViolation(f"Task {task_id} does not exist")
        if task.parent_uid == parent_uid:
            return task

        if parent_uid is not None:
            parent = store.get_task_by_uid(parent_uid)
            if parent is None:
                raise ConstraintViolation(f"Parent task {parent_uid} does not exist")
            if would_create_cycle(store, task.uid, parent_uid):
                raise ConstraintViolation(
                    f"Cannot move {task.uid} under {parent_uid}: "
                    f"{task.uid} is already an ancestor of {parent_uid}"
                )
            if parent.calendar_id != task.calendar_id:
                store.move_task_to_calendar(task.id, parent.calendar_id)
                task = store.get_task(task.id)

        old_parent_uid = task.parent_uid
        updated = store.edited(
            task,
            parent_uid=parent_uid,
            sort_order=store.next_sort_order(parent_uid, task.calendar_id),
        )
        store.save_task(updated)

        if old_parent_uid is not None:
            store.refresh_subtask_index(old_parent_uid)
        if parent_uid is not None:
            store.refresh_subtask_index(parent_uid)
        updated = store.get_task(task.id)

    logger.debug(f"Moved task {task.uid} from parent {old_parent_uid} to {parent_uid}")
    return updated


def reorder_task(store: TaskStore, task_id: str, new_index: int) -> list[Task]:
    """Move a task to position ``new_index`` among its siblings.

    Takes the midpoint of the neighbours' sort orders when there is room
    between them, otherwise renumbers the sibling set as 100, 200, ...
    Every task whose sort order changed becomes Dirty.  Returns those tasks.
    """
    with store.transaction():
        task = store.get_task(task_id)
        if task is None:
            raise ConstraintViolation(f"Task {task_id} does not exist")

        siblings = [
            s for s in list_siblings(store, task.parent_uid, task.calendar_id) if s.id != task.id
        ]
        new_index = max(0, min(new_index, len(siblings)))
        lower = siblings[new_index - 1].sort_order if new_index > 0 else None
        upper = siblings[new_index].sort_order if new_index < len(siblings) else None

        if (lower is None or task.sort_order > lower) and (
            upper is None or task.sort_order < upper
        ):
            return []

        if upper is None:
            candidate = (lower or 0) + SORT_ORDER_GAP
        else:
            floor = lower if lower is not None else 0
            candidate = (floor + upper) // 2 if upper - floor > 1 else None

        changed: list[Task] = []
        if candidate is not None:
            updated = store.edited(task, sort_order=candidate)
            store.save_task(updated)
            changed.append(updated)
        else:
            ordered = siblings[:new_index] + [task] + siblings[new_index:]
            for position, sibling in enumerate(ordered):
                target = (position + 1) * SORT_ORDER_GAP
                if sibling.sort_order != target:
                    updated = store.edited(sibling, sort_order=target)
                    store.save_task(updated)
                    changed.append(updated)
            logger.debug(f"Renumbered {len(ordered)} sibling(s) of task {task.uid}")

        if task.parent_uid is not None:
            store.refresh_subtask_index(task.parent_uid)
    return changed


def flatten_tree(tasks: list[Task], include_collapsed: bool = False) -> list[FlatTask]:
    """Depth-first flattening of ``tasks`` for display.

    Sibling order follows the input order.  Tasks whose parent is not in
    ``tasks`` are treated as roots.  Children of a collapsed task are left
    out unless ``include_collapsed`` is set.
    """
    by_uid = {t.uid: t for t in tasks}
    children: dict[str, list[Task]] = {}
    roots: list[Task] = []
    for t in tasks:
        if t.parent_uid is not None and t.parent_uid in by_uid and t.parent_uid != t.uid:
            children.setdefault(t.parent_uid, []).append(t)
        else:
            roots.append(t)

    result: list[FlatTask] = []
    visited: set[str] = set()

    def visit(task: Task, depth: int, path: list[str]):
        if task.uid in visited:
            return
        visited.add(task.uid)
        kids = children.get(task.uid, [])
        result.append(
            FlatTask(task=task, depth=depth, ancestor_ids=list(path), has_children=bool(kids))
        )
        if task.is_collapsed and not include_collapsed:
            return
        for child in kids:
            visit(child, depth + 1, path + [task.id])

    for root in roots:
        visit(root, 0, [])
    return result


def rebuild_subtask_index(store: TaskStore, parent_uid: str | None = None) -> int:
    """Recompute the derived ``subtasks`` lists from ``parent_uid``.

    Rebuilds one parent, or every task when ``parent_uid`` is None.
    Returns the number of rows whose stored index was out of date.
    """
    with store.transaction():
        tasks = [store.get_task_by_uid(parent_uid)] if parent_uid else store.list_tasks()
        stale = 0
        for task in tasks:
            if task is None:
                continue
            expected = [c.uid for c in store.get_child_tasks(task.uid)]
            if task.subtasks != expected:
                store.refresh_subtask_index(task.uid)
                stale += 1
    if stale:
        logger.debug(f"Rebuilt {stale} stale subtask index(es)")
    return stale


def detach_invalid_parents(store: TaskStore, uids: list[str]) -> list[str]:
    """Clear remote ``parent_uid`` links that dangle or close a cycle.

    Used after merging server data, which the store cannot reject.  The
    detached tasks keep their sync state: the server copy is left as is.
    Returns the uids that were detached.
    """
    detached = []
    with store.transaction():
        for uid in uids:
            task = store.get_task_by_uid(uid)
            if task is None or task.parent_uid is None:
                continue
            if store.get_task_by_uid(task.parent_uid) is None:
                reason = "parent does not exist locally"
            elif would_create_cycle(store, task.uid, task.parent_uid):
                reason = "parent chain forms a cycle"
            else:
                continue
            logger.warning(f"Detaching task {task.uid} from parent {task.parent_uid}: {reason}")
            store.save_task(replace(task, parent_uid=None), check_parent=False)
            detached.append(uid)
    return detached
