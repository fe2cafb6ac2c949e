"""
Merge remote calendar state into the store.

Every merge for one calendar runs in a single store transaction.  A remote
copy only replaces a local row that is Synced; when the local row carries
unpushed edits the collision is reported as a Conflict and both sides are
left as they are.  The calendar's ctag and sync token advance only when a
merge found no conflict, so unresolved conflicts show up again on the next
pass.
"""

import logging
from dataclasses import replace

from caldav_tasks.db import TaskStore
from caldav_tasks.hierarchy import detach_invalid_parents
from caldav_tasks.hierarchy import rebuild_subtask_index
from caldav_tasks.ical import ParsedTodo
from caldav_tasks.ical import VTodoParseError
from caldav_tasks.ical import vtodo_to_task
from caldav_tasks.models import Account
from caldav_tasks.models import Calendar
from caldav_tasks.models import Conflict
from caldav_tasks.models import ConstraintViolation
from caldav_tasks.models import SyncConfig
from caldav_tasks.models import SyncConflict
from caldav_tasks.models import SyncState
from caldav_tasks.models import SyncStats
from caldav_tasks.models import Task
from caldav_tasks.sync.state import classify_task
from caldav_tasks.sync.utils import resolve_category_tags
from caldav_tasks.transport import RemoteCalendar
from caldav_tasks.transport import RemoteDelta
from caldav_tasks.transport import RemoteListing
from caldav_tasks.transport import RemoteResource

ADDED = "added"
MODIFIED = "modified"
UNCHANGED = "unchanged"
SKIPPED = "skipped"

_logger = logging.getLogger(__name__)


class _DryRunRollback(Exception):
    """Raised at the end of a dry-run merge to discard its writes."""


def apply_remote_copy(
    store: TaskStore, calendar: Calendar, parsed: ParsedTodo, local: Task | None = None
) -> Task:
    """Write the remote version of a task as a Synced row.

    The local row id and the derived subtask index are kept; everything the
    server owns is replaced.  Parent links are validated afterwards by the
    caller (the parent may arrive later in the same listing).
    """
    remote = parsed.task
    task = replace(
        remote,
        tags=resolve_category_tags(store, parsed.categories),
        account_id=calendar.account_id,
        calendar_id=calendar.id,
        synced=True,
        local_only=False,
    )
    if task.parent_uid == task.uid:
        _logger.warning(f"Detaching task {task.uid} from parent {task.parent_uid}: self-reference")
        task = replace(task, parent_uid=None)
    if local is not None:
        task = replace(task, id=local.id, subtasks=local.subtasks)
    store.save_task(task, check_parent=False)
    return task


def reconcile_remote_task(store: TaskStore, calendar: Calendar, resource: RemoteResource) -> str:
    """Apply the per-task etag rule to one remote resource.

    Returns one of ADDED, MODIFIED, UNCHANGED or SKIPPED.

    Raises:
        VTodoParseError: the resource body is not a VTODO.
        SyncConflict: the local copy has unpushed changes and the remote etag
            differs.  Nothing was written.
    """
    parsed = vtodo_to_task(
        resource.body,
        account_id=calendar.account_id,
        calendar_id=calendar.id,
        href=resource.href,
        etag=resource.etag,
    )
    uid = parsed.task.uid

    with store.transaction():
        pending = store.get_pending_deletion(uid)
        if pending is not None and pending.href == resource.href:
            # Deleted locally; the tombstone push will remove it remotely
            return SKIPPED

        local = store.get_task_by_uid(uid)
        if local is None:
            apply_remote_copy(store, calendar, parsed)
            return ADDED

        state = classify_task(local)
        if local.etag == resource.etag and local.href == resource.href:
            if state == SyncState.SYNCED:
                tags = resolve_category_tags(store, parsed.categories)
                if sorted(tags) != sorted(local.tags):
                    store.save_task(replace(local, tags=tags))
                    return MODIFIED
            return UNCHANGED

        if state == SyncState.SYNCED:
            apply_remote_copy(store, calendar, parsed, local)
            return MODIFIED

        raise SyncConflict(
            [
                Conflict(
                    uid=uid,
                    calendar_id=calendar.id,
                    href=resource.href,
                    local_etag=local.etag,
                    remote_etag=resource.etag,
                    remote_body=resource.body,
                )
            ]
        )


def _remove_remotely_deleted(
    stats: SyncStats, logger, store: TaskStore, calendar: Calendar, tasks: list[Task]
) -> list[Conflict]:
    """Drop rows whose remote copy is gone; Dirty rows become conflicts."""
    conflicts = []
    doomed = []
    for task in tasks:
        state = classify_task(task)
        if state == SyncState.SYNCED:
            doomed.append(task)
        elif state == SyncState.DIRTY:
            logger.warning(f"Task {task.uid} was deleted on the server but has local edits")
            conflicts.append(
                Conflict(
                    uid=task.uid,
                    calendar_id=calendar.id,
                    href=task.href,
                    local_etag=task.etag,
                    remote_etag=None,
                )
            )

    doomed_uids = {t.uid for t in doomed}
    for task in doomed:
        # Surviving children lose the link but keep their sync state
        for child in store.get_child_tasks(task.uid):
            if child.uid not in doomed_uids:
                store.save_task(replace(child, parent_uid=None))
        store.delete_task(task.id, delete_children=False, tombstone=False)
        stats.deleted += 1
        logger.debug(f"Removed task {task.uid}: deleted on the server")
    return conflicts


def _reconcile_all(
    stats: SyncStats,
    logger,
    store: TaskStore,
    calendar: Calendar,
    resources: list[RemoteResource],
    conflicts: list[Conflict],
) -> list[str]:
    touched = []
    for resource in resources:
        try:
            outcome = reconcile_remote_task(store, calendar, resource)
        except SyncConflict as e:
            logger.warning(f"Conflict on {resource.href}: local edits and a newer remote copy")
            conflicts.extend(e.conflicts)
            continue
        except VTodoParseError as e:
            logger.error(f"Skipping unreadable resource {resource.href}: {e}")
            stats.errors += 1
            continue
        except ConstraintViolation as e:
            logger.error(f"Skipping resource {resource.href}: {e}")
            stats.errors += 1
            continue

        if outcome == ADDED:
            stats.added += 1
        elif outcome == MODIFIED:
            stats.modified += 1
        if outcome in (ADDED, MODIFIED):
            task = store.get_task_by_href(calendar.id, resource.href)
            if task is not None:
                touched.append(task.uid)
    return touched


def _finish_merge(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    calendar: Calendar,
    touched: list[str],
    conflicts: list[Conflict],
    ctag: str | None,
    sync_token: str | None,
):
    detach_invalid_parents(store, touched)
    rebuild_subtask_index(store)

    if conflicts:
        logger.warning(
            f"{len(conflicts)} conflict(s) in calendar {calendar.display_name}; "
            f"keeping ctag/sync token so they are fetched again"
        )
        stats.conflicts.extend(conflicts)
    else:
        store.update_calendar_sync_state(calendar.id, ctag, sync_token)

    if config.dry_run:
        raise _DryRunRollback()


def merge_full_listing(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    calendar: Calendar,
    listing: RemoteListing,
    ctag: str | None,
) -> list[Conflict]:
    """Reconcile a complete listing of ``calendar`` with the store.

    Local rows whose href is missing from the listing were deleted on the
    server, and so were the remote copies of tombstones whose href is
    missing, so those tombstones are cleared.
    """
    conflicts: list[Conflict] = []
    try:
        with store.transaction():
            touched = _reconcile_all(stats, logger, store, calendar, listing.resources, conflicts)

            remote_hrefs = {r.href for r in listing.resources}
            gone = [
                t
                for t in store.list_tasks(calendar.id)
                if t.href is not None and t.href not in remote_hrefs
            ]
            conflicts.extend(_remove_remotely_deleted(stats, logger, store, calendar, gone))

            for pending in store.list_pending_deletions(calendar.id):
                if pending.href not in remote_hrefs:
                    logger.debug(f"Remote copy of {pending.uid} already gone; clearing tombstone")
                    store.clear_pending_deletion(pending.uid)

            _finish_merge(
                config,
                stats,
                logger,
                store,
                calendar,
                touched,
                conflicts,
                ctag,
                listing.sync_token,
            )
    except _DryRunRollback:
        logger.info(f"[DRY RUN] Discarded merge of calendar {calendar.display_name}")
    return conflicts


def merge_delta(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    calendar: Calendar,
    delta: RemoteDelta,
    ctag: str | None,
) -> list[Conflict]:
    """Reconcile an incremental sync-collection delta for ``calendar``."""
    conflicts: list[Conflict] = []
    try:
        with store.transaction():
            touched = _reconcile_all(stats, logger, store, calendar, delta.changed, conflicts)

            deleted = set(delta.deleted_hrefs)
            for pending in store.list_pending_deletions(calendar.id):
                if pending.href in deleted:
                    store.clear_pending_deletion(pending.uid)

            gone = [
                task
                for task in (store.get_task_by_href(calendar.id, href) for href in sorted(deleted))
                if task is not None
            ]
            conflicts.extend(_remove_remotely_deleted(stats, logger, store, calendar, gone))

            _finish_merge(
                config,
                stats,
                logger,
                store,
                calendar,
                touched,
                conflicts,
                ctag,
                delta.sync_token,
            )
    except _DryRunRollback:
        logger.info(f"[DRY RUN] Discarded delta merge of calendar {calendar.display_name}")
    return conflicts


def resolve_conflict(store: TaskStore, conflict: Conflict, keep_local: bool, logger) -> Task | None:
    """Settle a surfaced conflict explicitly.

    keep_local: adopt the remote etag so the next push overwrites the server
        copy (or, if the server copy was deleted, re-create it).
    keep remote: replace the local row with the remote copy as Synced (or
        delete it, if the server copy was deleted).

    Returns the resulting task, or None when it was deleted.
    """
    with store.transaction():
        local = store.get_task_by_uid(conflict.uid)
        if local is None:
            logger.info(f"Conflict for {conflict.uid} is moot: task no longer exists")
            return None

        if keep_local:
            if conflict.remote_etag is None:
                resolved = replace(local, href=None, etag=None, synced=False)
            else:
                resolved = replace(
                    local, href=conflict.href or local.href, etag=conflict.remote_etag, synced=False
                )
            store.save_task(resolved)
            logger.info(f"Conflict for {conflict.uid} resolved: keeping local changes")
            return resolved

        if conflict.remote_etag is None:
            store.delete_task(local.id, delete_children=False, tombstone=False)
            logger.info(f"Conflict for {conflict.uid} resolved: accepted remote deletion")
            return None

        calendar = store.get_calendar(conflict.calendar_id)
        parsed = vtodo_to_task(
            conflict.remote_body,
            account_id=calendar.account_id,
            calendar_id=calendar.id,
            href=conflict.href,
            etag=conflict.remote_etag,
        )
        resolved = apply_remote_copy(store, calendar, parsed, local)
        detach_invalid_parents(store, [resolved.uid])
        rebuild_subtask_index(store)
        logger.info(f"Conflict for {conflict.uid} resolved: accepted remote version")
        return store.get_task_by_uid(conflict.uid)


def merge_calendar_list(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    account: Account,
    remote_calendars: list[RemoteCalendar],
) -> list[Calendar]:
    """Mirror the server's task collections for ``account`` into the store.

    Collections that cannot hold VTODOs are ignored.  New collections are
    added without ctag/sync token so their first pass is a full listing.
    Local calendars absent from the server are removed with their tasks.
    Returns the account's calendars after the merge.
    """
    task_collections = [
        rc
        for rc in remote_calendars
        if not rc.supported_components
        or "VTODO" in {c.upper() for c in rc.supported_components}
    ]
    remote_urls = {rc.url for rc in task_collections}

    if config.dry_run:
        local_urls = {c.url for c in store.list_calendars(account.id)}
        for rc in task_collections:
            if rc.url not in local_urls:
                logger.info(f"[DRY RUN] Would ADD calendar {rc.display_name}")
        for url in local_urls - remote_urls:
            logger.info(f"[DRY RUN] Would REMOVE calendar {url}")
        return store.list_calendars(account.id)

    with store.transaction():
        for rc in task_collections:
            local = store.get_calendar_by_url(account.id, rc.url)
            if local is None:
                store.add_calendar(
                    account.id,
                    rc.display_name,
                    rc.url,
                    color=rc.color,
                    supported_components=rc.supported_components,
                )
                logger.info(f"Added calendar {rc.display_name}")
                continue
            changes = {}
            if rc.display_name and rc.display_name != local.display_name:
                changes["display_name"] = rc.display_name
            if rc.color and rc.color != local.color:
                changes["color"] = rc.color
            if rc.supported_components and rc.supported_components != local.supported_components:
                changes["supported_components"] = rc.supported_components
            if changes:
                store.update_calendar(local.id, **changes)

        for local in store.list_calendars(account.id):
            if local.url in remote_urls:
                continue
            unsynced = [
                t for t in store.list_tasks(local.id) if classify_task(t) != SyncState.SYNCED
            ]
            if unsynced:
                logger.warning(
                    f"Calendar {local.display_name} was removed on the server; "
                    f"discarding {len(unsynced)} unsynced task(s)"
                )
            store.delete_calendar(local.id, tombstone=False)
            logger.info(f"Removed calendar {local.display_name}: deleted on the server")

    return store.list_calendars(account.id)
