"""
Per-task sync-state classification and push bookkeeping.

The state is not stored as such; it is derived from ``local_only``, ``href``
and ``synced`` on the task row, plus the pending_deletions table:

    LocalOnly       local_only is set (never pushed)
    PendingCreate   no href yet
    Synced          href set, synced
    Dirty           href set, local edits since the last fetch
    PendingDelete   row gone, tombstone awaiting remote confirmation
"""

import logging
from dataclasses import replace
from datetime import datetime

from caldav_tasks.db import TaskStore
from caldav_tasks.models import Calendar
from caldav_tasks.models import PendingDeletion
from caldav_tasks.models import SyncState
from caldav_tasks.models import SyncStats
from caldav_tasks.models import Task
from caldav_tasks.notify import SyncSummary

logger = logging.getLogger(__name__)

PUSHABLE_STATES = (SyncState.PENDING_CREATE, SyncState.DIRTY)


def classify_task(task: Task) -> SyncState:
    if task.local_only:
        return SyncState.LOCAL_ONLY
    if task.href is None:
        return SyncState.PENDING_CREATE
    if task.synced:
        return SyncState.SYNCED
    return SyncState.DIRTY


def classify_uid(store: TaskStore, uid: str) -> SyncState | None:
    """State of ``uid``; PendingDelete when only a tombstone remains, None if unknown."""
    task = store.get_task_by_uid(uid)
    if task is not None:
        return classify_task(task)
    if store.get_pending_deletion(uid) is not None:
        return SyncState.PENDING_DELETE
    return None


def is_pushable(task: Task) -> bool:
    return task.calendar_id is not None and classify_task(task) in PUSHABLE_STATES


def count_by_state(store: TaskStore) -> dict[SyncState, int]:
    counts = {state: 0 for state in SyncState}
    for task in store.list_tasks():
        counts[classify_task(task)] += 1
    # Tombstones of deleted accounts can no longer reach a server
    accounts = {a.id for a in store.list_accounts()}
    counts[SyncState.PENDING_DELETE] = sum(
        1 for p in store.list_pending_deletions() if p.account_id in accounts
    )
    return counts


def mark_pushed(
    store: TaskStore,
    uid: str,
    href: str,
    etag: str,
    pushed_modified_at: datetime,
    calendar: Calendar | None = None,
) -> Task | None:
    """Record a successful PUT for ``uid``.

    The task becomes Synced with the server-issued href/etag, unless it was
    edited while the request was in flight (``modified_at`` moved): then it
    keeps the new href/etag but stays Dirty for the next push.  If the task
    was deleted meanwhile, the freshly created remote copy is tombstoned.
    """
    with store.transaction():
        task = store.get_task_by_uid(uid)
        if task is None:
            logger.info(f"Task {uid} was deleted during its push; scheduling remote deletion")
            store.record_pending_deletion(
                PendingDeletion(
                    uid=uid,
                    href=href,
                    account_id=calendar.account_id if calendar else None,
                    calendar_id=calendar.id if calendar else None,
                )
            )
            return None

        still_current = task.modified_at == pushed_modified_at
        if not still_current:
            logger.debug(f"Task {uid} changed during push; keeping it dirty")
        updated = replace(task, href=href, etag=etag, synced=still_current)
        store.save_task(updated)
    return updated


def build_summary(store: TaskStore, stats: SyncStats | None = None) -> SyncSummary:
    """Snapshot of pending work for a status listener."""
    counts = count_by_state(store)
    last_syncs = [a.last_sync for a in store.list_accounts() if a.last_sync is not None]
    return SyncSummary(
        last_sync_at=max(last_syncs) if last_syncs else None,
        pending_push=counts[SyncState.PENDING_CREATE] + counts[SyncState.DIRTY],
        pending_deletions=counts[SyncState.PENDING_DELETE],
        conflicts=len(stats.conflicts) if stats else 0,
        errors=stats.errors if stats else 0,
    )
