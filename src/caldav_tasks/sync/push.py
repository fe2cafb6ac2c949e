"""
Push local state to the server: tombstoned deletions first, then local
creates and edits, then fetch and merge the remote side.
"""

from caldav_tasks.db import TaskStore
from caldav_tasks.ical import task_to_vtodo
from caldav_tasks.models import Calendar
from caldav_tasks.models import Conflict
from caldav_tasks.models import PendingDeletion
from caldav_tasks.models import PreconditionFailed
from caldav_tasks.models import RemoteNotFound
from caldav_tasks.models import SyncConfig
from caldav_tasks.models import SyncStats
from caldav_tasks.models import SyncTokenExpired
from caldav_tasks.models import TransientFetchFailure
from caldav_tasks.sync.merge import merge_delta
from caldav_tasks.sync.merge import merge_full_listing
from caldav_tasks.sync.state import is_pushable
from caldav_tasks.sync.state import mark_pushed
from caldav_tasks.sync.utils import category_names
from caldav_tasks.transport import CalDAVTransport


def push_pending_deletions(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    transport: CalDAVTransport,
    pending: list[PendingDeletion],
):
    """DELETE the remote copy of every tombstone in ``pending``.

    A 404 confirms the deletion as well.  A transient failure keeps the
    tombstone for the next pass.
    """
    for tombstone in pending:
        if config.dry_run:
            logger.info(f"[DRY RUN] Would DELETE remote {tombstone.href} ({tombstone.uid})")
            continue
        try:
            transport.delete(tombstone.href, None)
        except RemoteNotFound:
            logger.debug(f"Remote {tombstone.href} already gone")
        except TransientFetchFailure as e:
            logger.warning(f"Failed to delete remote {tombstone.href}, will retry: {e}")
            stats.errors += 1
            continue
        store.clear_pending_deletion(tombstone.uid)
        stats.deleted += 1
        logger.debug(f"Deleted remote {tombstone.href} ({tombstone.uid})")


def push_local_changes(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    transport: CalDAVTransport,
    calendar: Calendar,
):
    """PUT every PendingCreate and Dirty task of ``calendar``.

    Updates are conditional on the stored etag.  A 412 or 404 means the
    server copy changed or vanished since the last fetch; the task stays
    Dirty and the following merge reports the conflict.
    """
    for task in store.list_tasks(calendar.id):
        if not is_pushable(task):
            continue
        action = "UPDATE" if task.href else "CREATE"
        if config.dry_run:
            logger.info(f"[DRY RUN] Would {action} remote task {task.uid} ({task.title!r})")
            stats.pushed += 1
            continue

        body = task_to_vtodo(task, category_names(store, task))
        if config.verbose:
            logger.debug(f"Outgoing VTODO for {task.uid}:\n{body}")
        try:
            result = transport.put(calendar, task.href, body, task.etag)
        except (PreconditionFailed, RemoteNotFound) as e:
            logger.warning(f"Remote copy of {task.uid} changed since last fetch: {e}")
            continue
        except TransientFetchFailure as e:
            logger.warning(f"Failed to push {task.uid}, will retry: {e}")
            stats.errors += 1
            continue

        mark_pushed(store, task.uid, result.href, result.etag, task.modified_at, calendar)
        stats.pushed += 1
        logger.debug(f"Pushed ({action}) {task.uid} -> {result.href} [{result.etag}]")


def pull_calendar(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    transport: CalDAVTransport,
    calendar: Calendar,
) -> list[Conflict]:
    """Fetch remote changes for ``calendar`` and merge them.

    An unchanged ctag ends the pass without per-task work.  With a stored
    sync token only the delta is fetched; an expired token falls back to a
    full listing.  On a transient failure nothing local changes and the
    stored token is reused next time.
    """
    calendar = store.get_calendar(calendar.id)
    try:
        remote_ctag = transport.get_ctag(calendar)
        if remote_ctag is not None and remote_ctag == calendar.ctag:
            logger.debug(f"Calendar {calendar.display_name} unchanged (ctag {remote_ctag})")
            return []

        if calendar.sync_token:
            try:
                delta = transport.fetch_changes(calendar, calendar.sync_token)
            except SyncTokenExpired:
                logger.info(
                    f"Sync token for {calendar.display_name} expired; fetching full listing"
                )
            else:
                return merge_delta(config, stats, logger, store, calendar, delta, remote_ctag)

        listing = transport.list_resources(calendar)
    except TransientFetchFailure as e:
        logger.warning(f"Failed to fetch {calendar.display_name}, will retry: {e}")
        stats.errors += 1
        return []

    return merge_full_listing(config, stats, logger, store, calendar, listing, remote_ctag)


def sync_calendar(
    config: SyncConfig,
    stats: SyncStats,
    logger,
    store: TaskStore,
    transport: CalDAVTransport,
    calendar: Calendar,
) -> list[Conflict]:
    """One full pass for a calendar: deletions, pushes, then fetch and merge."""
    logger.info(f"Syncing calendar {calendar.display_name}")
    push_pending_deletions(
        config, stats, logger, store, transport, store.list_pending_deletions(calendar.id)
    )
    push_local_changes(config, stats, logger, store, transport, calendar)
    return pull_calendar(config, stats, logger, store, transport, calendar)
