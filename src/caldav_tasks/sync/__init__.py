"""
TaskSynchronizer: thin orchestrator that delegates to sync submodules.
"""

import logging
from collections.abc import Callable

from caldav_tasks.db import TaskStore
from caldav_tasks.models import Account
from caldav_tasks.models import SyncConfig
from caldav_tasks.models import SyncConflict
from caldav_tasks.models import SyncStats
from caldav_tasks.models import TransientFetchFailure
from caldav_tasks.notify import SyncStatusListener
from caldav_tasks.sync.merge import merge_calendar_list
from caldav_tasks.sync.push import push_pending_deletions
from caldav_tasks.sync.push import sync_calendar
from caldav_tasks.sync.state import build_summary
from caldav_tasks.transport import CalDAVTransport


class TaskSynchronizer:
    """Syncs every active account against its CalDAV server."""

    def __init__(
        self,
        config: SyncConfig,
        store: TaskStore,
        transport_factory: Callable[[Account], CalDAVTransport],
        status_listener: SyncStatusListener | None = None,
    ):
        self.config = config
        self.store = store
        self.transport_factory = transport_factory
        self.status_listener = status_listener
        self.logger = logging.getLogger(__name__)
        self.stats = SyncStats()

    def run(self) -> SyncStats:
        """Execute one sync pass over all active accounts."""
        accounts = self.store.list_accounts(active_only=True)
        self.logger.info(f"Syncing {len(accounts)} active account(s)")
        for account in accounts:
            self.sync_account(account)
        self.discard_unreachable_deletions()

        if self.status_listener is not None:
            self.status_listener.on_sync_status(build_summary(self.store, self.stats))

        if self.config.raise_on_conflict and self.stats.conflicts:
            raise SyncConflict(self.stats.conflicts)
        return self.stats

    def discard_unreachable_deletions(self) -> int:
        """Drop tombstones whose account was deleted; no transport can push them."""
        known = {a.id for a in self.store.list_accounts()}
        unreachable = [p for p in self.store.list_pending_deletions() if p.account_id not in known]
        for tombstone in unreachable:
            if self.config.dry_run:
                self.logger.info(f"[DRY RUN] Would discard tombstone {tombstone.uid}")
                continue
            self.logger.warning(
                f"Discarding tombstone {tombstone.uid} ({tombstone.href}): "
                f"account {tombstone.account_id} no longer exists"
            )
            self.store.clear_pending_deletion(tombstone.uid)
        return len(unreachable)

    def sync_account(self, account: Account):
        args = (self.config, self.stats, self.logger)
        errors_before = self.stats.errors
        transport = self.transport_factory(account)

        try:
            remote_calendars = transport.list_calendars(account)
        except TransientFetchFailure as e:
            self.logger.error(f"Cannot list calendars for {account.name}: {e}")
            self.stats.errors += 1
            return
        calendars = merge_calendar_list(*args, self.store, account, remote_calendars)

        # Tombstones left behind by calendars that no longer exist locally
        known = {c.id for c in calendars}
        orphaned = [
            p
            for p in self.store.list_pending_deletions()
            if p.account_id == account.id and p.calendar_id not in known
        ]
        push_pending_deletions(*args, self.store, transport, orphaned)

        for calendar in calendars:
            sync_calendar(*args, self.store, transport, calendar)

        if self.stats.errors == errors_before and not self.config.dry_run:
            self.store.record_account_sync(account.id)
        self.logger.info(
            f"Account {account.name}: {self.stats.added} added, {self.stats.modified} modified, "
            f"{self.stats.deleted} deleted, {self.stats.pushed} pushed, "
            f"{len(self.stats.conflicts)} conflict(s)"
        )
