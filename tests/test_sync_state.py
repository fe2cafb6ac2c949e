"""
Tests for the sync-state tracker: push bookkeeping, the etag rule, ctag and
sync-token handling, tombstones and the TaskSynchronizer pass, all against
the in-memory FakeCalDAVTransport.
"""

from datetime import timedelta

import pytest

from caldav_tasks.models import Conflict
from caldav_tasks.models import ConstraintViolation
from caldav_tasks.models import PendingDeletion
from caldav_tasks.models import SyncConfig
from caldav_tasks.models import SyncConflict
from caldav_tasks.models import SyncState
from caldav_tasks.models import TransientFetchFailure
from caldav_tasks.sync import TaskSynchronizer
from caldav_tasks.sync import merge
from caldav_tasks.sync.merge import SKIPPED
from caldav_tasks.sync.merge import reconcile_remote_task
from caldav_tasks.sync.merge import resolve_conflict
from caldav_tasks.sync.push import pull_calendar
from caldav_tasks.sync.push import push_local_changes
from caldav_tasks.sync.push import push_pending_deletions
from caldav_tasks.sync.state import build_summary
from caldav_tasks.sync.state import classify_task
from caldav_tasks.sync.state import classify_uid
from caldav_tasks.sync.state import count_by_state
from caldav_tasks.sync.state import mark_pushed
from caldav_tasks.transport import RemoteCalendar
from tests.conftest import CAL_URL
from tests.conftest import make_vtodo
from tests.fake_transport import FakeCalDAVTransport


@pytest.fixture
def fake():
    return FakeCalDAVTransport(
        [RemoteCalendar(url=CAL_URL, display_name="Tasks", supported_components=["VTODO"])]
    )


@pytest.fixture
def sync(sync_config, sync_stats, sync_logger, store, fake):
    """Bind the common leading arguments of the sync functions."""

    class _Sync:
        def push(self, calendar):
            push_local_changes(sync_config, sync_stats, sync_logger, store, fake, calendar)

        def pull(self, calendar):
            return pull_calendar(sync_config, sync_stats, sync_logger, store, fake, calendar)

        def push_deletions(self):
            push_pending_deletions(
                sync_config, sync_stats, sync_logger, store, fake, store.list_pending_deletions()
            )

    return _Sync()


@pytest.fixture
def pushed(store, calendar, sync):
    """A task pushed once: Synced at /cal/1.ics with etag e1."""
    task = store.create_task("Buy milk", calendar_id=calendar.id)
    sync.push(calendar)
    return store.get_task(task.id)


class _RecordingListener:
    def __init__(self):
        self.summaries = []

    def on_sync_status(self, summary):
        self.summaries.append(summary)


# --------------------------------------------------------------------------- #
# Push and the etag rule                                                       #
# --------------------------------------------------------------------------- #


class TestPushLifecycle:
    def test_push_assigns_href_and_etag(self, pushed, fake, sync_stats):
        assert pushed.href == "/cal/1.ics"
        assert pushed.etag == "e1"
        assert classify_task(pushed) == SyncState.SYNCED
        assert sync_stats.pushed == 1
        assert "SUMMARY:Buy milk" in fake.resource("/cal/1.ics").body

    def test_unchanged_ctag_skips_reconciliation(self, store, calendar, pushed, fake, sync):
        store.update_task(pushed.id, title="Buy oat milk")
        assert classify_uid(store, pushed.uid) == SyncState.DIRTY

        fake.ctags[CAL_URL] = 1
        store.update_calendar_sync_state(calendar.id, "1", None)
        fake.reset_calls()

        assert sync.pull(calendar) == []
        assert not fake.called("list_resources")
        assert not fake.called("fetch_changes")

    def test_remote_change_of_dirty_task_conflicts(
        self, store, calendar, pushed, fake, sync, sync_stats
    ):
        store.update_task(pushed.id, title="Buy oat milk")
        store.update_calendar_sync_state(calendar.id, "1", None)
        remote = fake.edit_remote(pushed.href, make_vtodo(pushed.uid, "Buy soy milk"))
        assert remote.etag == "e2"

        with pytest.raises(SyncConflict) as excinfo:
            reconcile_remote_task(store, calendar, remote)
        assert excinfo.value.conflicts[0].remote_etag == "e2"
        assert store.get_task(pushed.id).title == "Buy oat milk"

        conflicts = sync.pull(calendar)

        assert [c.uid for c in conflicts] == [pushed.uid]
        assert conflicts[0].local_etag == "e1"
        assert sync_stats.conflicts == conflicts
        local = store.get_task(pushed.id)
        assert local.title == "Buy oat milk"
        assert classify_task(local) == SyncState.DIRTY
        assert store.get_calendar(calendar.id).ctag == "1"

    def test_stale_etag_on_push_is_left_dirty(self, store, calendar, pushed, fake, sync):
        store.update_task(pushed.id, title="Local")
        fake.edit_remote(pushed.href, make_vtodo(pushed.uid, "Remote"))

        sync.push(calendar)

        assert "Remote" in fake.resource(pushed.href).body
        assert classify_uid(store, pushed.uid) == SyncState.DIRTY
        assert [c.uid for c in sync.pull(calendar)] == [pushed.uid]

    def test_local_only_tasks_are_never_pushed(self, store, calendar, fake, sync):
        store.create_task("Private")
        sync.push(calendar)
        assert fake.puts == []

    def test_transient_push_failure_counts_error(
        self, store, calendar, fake, sync, sync_stats
    ):
        task = store.create_task("A", calendar_id=calendar.id)
        fake.fail("put", TransientFetchFailure("connection reset"))

        sync.push(calendar)

        assert sync_stats.errors == 1
        assert classify_uid(store, task.uid) == SyncState.PENDING_CREATE


class TestMarkPushed:
    def test_edit_during_push_stays_dirty(self, store, calendar):
        task = store.create_task("A", calendar_id=calendar.id)
        store.update_task(task.id, title="B")

        updated = mark_pushed(store, task.uid, "/cal/a.ics", "e7", task.modified_at, calendar)

        assert updated.href == "/cal/a.ics"
        assert updated.etag == "e7"
        assert classify_task(updated) == SyncState.DIRTY

    def test_delete_during_push_tombstones_new_copy(self, store, account, calendar):
        task = store.create_task("A", calendar_id=calendar.id)
        store.delete_task(task.id)

        assert mark_pushed(store, task.uid, "/cal/a.ics", "e7", task.modified_at, calendar) is None
        assert store.get_pending_deletion(task.uid) == PendingDeletion(
            uid=task.uid, href="/cal/a.ics", account_id=account.id, calendar_id=calendar.id
        )


# --------------------------------------------------------------------------- #
# Deletions                                                                    #
# --------------------------------------------------------------------------- #


class TestDeletion:
    def test_delete_then_confirmed_remote_delete(
        self, store, account, calendar, pushed, fake, sync
    ):
        other = store.create_task("Keep me", calendar_id=calendar.id)

        store.delete_task(pushed.id)

        assert store.get_task(pushed.id) is None
        assert store.list_pending_deletions() == [
            PendingDeletion(
                uid=pushed.uid, href=pushed.href, account_id=account.id, calendar_id=calendar.id
            )
        ]
        assert classify_uid(store, pushed.uid) == SyncState.PENDING_DELETE

        sync.push_deletions()

        assert fake.deletes == [pushed.href]
        assert store.list_pending_deletions() == []
        assert store.list_tasks() == [store.get_task(other.id)]
        assert classify_uid(store, pushed.uid) is None

    def test_missing_remote_confirms_deletion(self, store, pushed, fake, sync):
        store.delete_task(pushed.id)
        fake.delete_remote(pushed.href)
        sync.push_deletions()
        assert store.list_pending_deletions() == []

    def test_transient_failure_keeps_tombstone(self, store, pushed, fake, sync, sync_stats):
        store.delete_task(pushed.id)
        fake.fail("delete", TransientFetchFailure("timeout"))
        sync.push_deletions()
        assert sync_stats.errors == 1
        assert [p.uid for p in store.list_pending_deletions()] == [pushed.uid]

    def test_tombstoned_resource_is_not_resurrected(self, store, calendar, pushed, fake, sync):
        store.delete_task(pushed.id)
        assert reconcile_remote_task(store, calendar, fake.resource(pushed.href)) == SKIPPED

        fake.add_remote(CAL_URL, make_vtodo("other@x", "Other"))
        sync.pull(calendar)

        assert store.get_task_by_uid(pushed.uid) is None
        assert store.get_pending_deletion(pushed.uid) is not None


# --------------------------------------------------------------------------- #
# Merging remote state                                                         #
# --------------------------------------------------------------------------- #


class TestMerge:
    def test_remote_add_creates_synced_task_and_tags(
        self, store, calendar, fake, sync, sync_stats
    ):
        res = fake.add_remote(CAL_URL, make_vtodo("r1@x", "Remote", categories="Work,Home"))

        sync.pull(calendar)

        task = store.get_task_by_uid("r1@x")
        assert task.href == res.href
        assert task.etag == res.etag
        assert classify_task(task) == SyncState.SYNCED
        assert sorted(store.get_tag(t).name for t in task.tags) == ["Home", "Work"]
        assert sync_stats.added == 1
        cal = store.get_calendar(calendar.id)
        assert cal.ctag == "1"
        assert cal.sync_token == "tok-1"

    def test_remote_edit_overwrites_synced_task(self, store, calendar, fake, sync, sync_stats):
        res = fake.add_remote(CAL_URL, make_vtodo("r1@x", "Before"))
        sync.pull(calendar)
        before = store.get_task_by_uid("r1@x")

        fake.edit_remote(res.href, make_vtodo("r1@x", "After", priority=1))
        sync.pull(calendar)

        after = store.get_task_by_uid("r1@x")
        assert after.id == before.id
        assert after.title == "After"
        assert after.etag == "e2"
        assert classify_task(after) == SyncState.SYNCED
        assert sync_stats.modified == 1

    def test_remote_delete_removes_synced_task_and_detaches_child(
        self, store, calendar, fake, sync
    ):
        parent = fake.add_remote(CAL_URL, make_vtodo("p@x", "Parent"))
        fake.add_remote(CAL_URL, make_vtodo("c@x", "Child", parent="p@x"))
        sync.pull(calendar)
        assert store.get_task_by_uid("p@x").subtasks == ["c@x"]

        fake.delete_remote(parent.href)
        fake.expire_tokens = True
        sync.pull(calendar)

        assert store.get_task_by_uid("p@x") is None
        assert store.list_pending_deletions() == []
        child = store.get_task_by_uid("c@x")
        assert child.parent_uid is None
        assert classify_task(child) == SyncState.SYNCED

    def test_remote_delete_of_dirty_task_conflicts(self, store, calendar, fake, sync):
        res = fake.add_remote(CAL_URL, make_vtodo("r1@x", "Remote"))
        sync.pull(calendar)
        task = store.get_task_by_uid("r1@x")
        store.update_task(task.id, title="Edited")
        ctag_before = store.get_calendar(calendar.id).ctag

        fake.delete_remote(res.href)
        conflicts = sync.pull(calendar)

        assert conflicts == [
            Conflict(
                uid="r1@x",
                calendar_id=calendar.id,
                href=res.href,
                local_etag=res.etag,
                remote_etag=None,
            )
        ]
        assert store.get_task(task.id).title == "Edited"
        assert store.get_calendar(calendar.id).ctag == ctag_before

    def test_dangling_remote_parent_is_detached(self, store, calendar, fake, sync):
        fake.add_remote(CAL_URL, make_vtodo("c@x", "Child", parent="ghost@x"))
        sync.pull(calendar)
        child = store.get_task_by_uid("c@x")
        assert child.parent_uid is None
        assert classify_task(child) == SyncState.SYNCED

    def test_self_parent_link_is_detached(self, store, calendar, fake, sync, sync_stats):
        fake.add_remote(CAL_URL, make_vtodo("good@x", "Good"))
        fake.add_remote(CAL_URL, make_vtodo("loop@x", "Loop", parent="loop@x"))

        sync.pull(calendar)

        loop = store.get_task_by_uid("loop@x")
        assert loop.parent_uid is None
        assert classify_task(loop) == SyncState.SYNCED
        assert store.get_task_by_uid("good@x") is not None
        assert sync_stats.errors == 0
        assert store.get_calendar(calendar.id).ctag is not None

    def test_rejected_resource_does_not_block_the_rest(
        self, store, calendar, fake, sync, sync_stats, monkeypatch
    ):
        original = merge.apply_remote_copy

        def reject_bad(store, calendar, parsed, local=None):
            if parsed.task.uid == "bad@x":
                raise ConstraintViolation("Task bad@x: rejected")
            return original(store, calendar, parsed, local)

        monkeypatch.setattr(merge, "apply_remote_copy", reject_bad)
        fake.add_remote(CAL_URL, make_vtodo("bad@x", "Bad"))
        fake.add_remote(CAL_URL, make_vtodo("ok@x", "Fine"))

        sync.pull(calendar)

        assert sync_stats.errors == 1
        assert store.get_task_by_uid("bad@x") is None
        assert store.get_task_by_uid("ok@x") is not None

    def test_unreadable_resource_is_skipped(self, store, calendar, fake, sync, sync_stats):
        fake.add_remote(CAL_URL, "not an icalendar body")
        fake.add_remote(CAL_URL, make_vtodo("ok@x", "Fine"))
        sync.pull(calendar)
        assert sync_stats.errors == 1
        assert store.get_task_by_uid("ok@x") is not None

    def test_dry_run_changes_nothing(self, store, calendar, fake, sync_stats, sync_logger):
        fake.add_remote(CAL_URL, make_vtodo("r1@x", "Remote"))
        config = SyncConfig(dry_run=True)

        pull_calendar(config, sync_stats, sync_logger, store, fake, calendar)

        assert sync_stats.added == 1
        assert store.list_tasks() == []
        assert store.get_calendar(calendar.id).ctag is None


class TestTokens:
    def test_delta_used_when_token_is_stored(self, store, calendar, fake, sync):
        fake.add_remote(CAL_URL, make_vtodo("r1@x", "One"))
        sync.pull(calendar)
        fake.add_remote(CAL_URL, make_vtodo("r2@x", "Two"))
        fake.reset_calls()

        sync.pull(calendar)

        assert fake.called("fetch_changes")
        assert not fake.called("list_resources")
        assert store.get_task_by_uid("r2@x") is not None
        assert store.get_calendar(calendar.id).sync_token == "tok-2"

    def test_expired_token_falls_back_to_full_listing(self, store, calendar, fake, sync):
        fake.add_remote(CAL_URL, make_vtodo("r1@x", "One"))
        sync.pull(calendar)
        fake.add_remote(CAL_URL, make_vtodo("r2@x", "Two"))
        fake.expire_tokens = True
        fake.reset_calls()

        sync.pull(calendar)

        assert fake.called("fetch_changes")
        assert fake.called("list_resources")
        assert store.get_task_by_uid("r2@x") is not None

    def test_transient_fetch_failure_changes_nothing(
        self, store, calendar, fake, sync, sync_stats
    ):
        fake.add_remote(CAL_URL, make_vtodo("r1@x", "One"))
        fake.fail("list_resources", TransientFetchFailure("503"))

        assert sync.pull(calendar) == []

        assert sync_stats.errors == 1
        assert store.list_tasks() == []
        cal = store.get_calendar(calendar.id)
        assert cal.ctag is None and cal.sync_token is None


# --------------------------------------------------------------------------- #
# Conflict resolution                                                          #
# --------------------------------------------------------------------------- #


@pytest.fixture
def conflict(store, calendar, pushed, fake, sync):
    store.update_task(pushed.id, title="Local title")
    fake.edit_remote(pushed.href, make_vtodo(pushed.uid, "Remote title"))
    (found,) = sync.pull(calendar)
    return found


class TestResolveConflict:
    def test_keep_local_pushes_over_remote(
        self, store, calendar, conflict, fake, sync, sync_logger
    ):
        resolved = resolve_conflict(store, conflict, True, sync_logger)
        assert resolved.etag == "e2"
        assert classify_task(resolved) == SyncState.DIRTY

        sync.push(calendar)

        assert "Local title" in fake.resource(conflict.href).body
        assert classify_uid(store, conflict.uid) == SyncState.SYNCED
        assert sync.pull(calendar) == []

    def test_keep_remote_replaces_local(self, store, calendar, conflict, sync_logger):
        resolved = resolve_conflict(store, conflict, False, sync_logger)
        assert resolved.title == "Remote title"
        assert resolved.etag == "e2"
        assert classify_task(resolved) == SyncState.SYNCED

    def test_accepting_remote_deletion(self, store, calendar, pushed, sync_logger):
        store.update_task(pushed.id, title="Edited")
        gone = Conflict(pushed.uid, calendar.id, pushed.href, pushed.etag, None)

        assert resolve_conflict(store, gone, False, sync_logger) is None
        assert store.get_task(pushed.id) is None
        assert store.list_pending_deletions() == []

    def test_keeping_local_after_remote_deletion_recreates(
        self, store, calendar, pushed, sync_logger
    ):
        store.update_task(pushed.id, title="Edited")
        gone = Conflict(pushed.uid, calendar.id, pushed.href, pushed.etag, None)

        resolved = resolve_conflict(store, gone, True, sync_logger)

        assert classify_task(resolved) == SyncState.PENDING_CREATE


# --------------------------------------------------------------------------- #
# Summary and orchestration                                                    #
# --------------------------------------------------------------------------- #


class TestSummary:
    def test_counts_pending_work(self, store, account, calendar, pushed):
        store.create_task("New", calendar_id=calendar.id)
        store.create_task("Local")
        store.update_task(pushed.id, title="Edited")
        gone = store.create_task("Gone", calendar_id=calendar.id)
        store.save_task(store.edited(gone, href="/cal/g.ics", etag="e9"))
        store.delete_task(gone.id)
        when = pushed.created_at + timedelta(hours=1)
        store.record_account_sync(account.id, when)

        counts = count_by_state(store)
        summary = build_summary(store)

        assert counts[SyncState.LOCAL_ONLY] == 1
        assert counts[SyncState.PENDING_DELETE] == 1
        assert summary.pending_push == 2
        assert summary.pending_deletions == 1
        assert summary.last_sync_at == when


class TestTaskSynchronizer:
    def test_pass_pushes_and_reports(self, store, account, calendar, fake):
        store.create_task("A", calendar_id=calendar.id)
        listener = _RecordingListener()
        synchronizer = TaskSynchronizer(SyncConfig(), store, lambda _: fake, listener)

        stats = synchronizer.run()

        assert stats.pushed == 1
        assert stats.conflicts == []
        (summary,) = listener.summaries
        assert summary.pending_push == 0
        assert summary.last_sync_at is not None
        assert store.get_account(account.id).last_sync is not None

    def test_calendar_list_is_mirrored(self, store, account, calendar, fake):
        stale = store.add_calendar(account.id, "Old", "/old/")
        fake.calendars.extend(
            [
                RemoteCalendar(url="/errands/", display_name="Errands"),
                RemoteCalendar(
                    url="/events/", display_name="Events", supported_components=["VEVENT"]
                ),
            ]
        )

        TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()

        urls = sorted(c.url for c in store.list_calendars(account.id))
        assert urls == ["/cal/", "/errands/"]
        assert store.get_calendar(stale.id) is None

    def test_raise_on_conflict(self, store, account, calendar, fake):
        task = store.create_task("A", calendar_id=calendar.id)
        TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()
        pushed = store.get_task(task.id)
        store.update_task(task.id, title="Local")
        fake.edit_remote(pushed.href, make_vtodo(pushed.uid, "Remote"))
        listener = _RecordingListener()

        with pytest.raises(SyncConflict) as excinfo:
            TaskSynchronizer(
                SyncConfig(raise_on_conflict=True), store, lambda _: fake, listener
            ).run()

        assert [c.uid for c in excinfo.value.conflicts] == [task.uid]
        assert listener.summaries[0].conflicts == 1

    def test_unreachable_server_is_counted(self, store, account, calendar, fake):
        fake.fail("list_calendars", TransientFetchFailure("DNS failure"))
        stats = TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()
        assert stats.errors == 1
        assert store.get_account(account.id).last_sync is None

    def test_inactive_accounts_are_skipped(self, store, account, calendar, fake):
        store.set_account_active(account.id, False)
        TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()
        assert fake.calls == []


    def test_tombstones_of_deleted_calendar_are_pushed(self, store, account, calendar, fake):
        task = store.create_task("A", calendar_id=calendar.id)
        TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()
        href = store.get_task(task.id).href

        (tombstone,) = store.delete_calendar(calendar.id)
        assert tombstone.href == href
        assert store.list_pending_deletions() == [tombstone]

        TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()

        assert fake.deletes == [href]
        assert store.list_pending_deletions() == []
        # The collection still exists on the server, so it is mirrored back
        (readded,) = store.list_calendars(account.id)
        assert readded.url == CAL_URL
        assert readded.id != calendar.id
        assert store.list_tasks() == []

    def test_tombstones_of_deleted_account_are_discarded(self, store, account, calendar, fake):
        task = store.create_task("A", calendar_id=calendar.id)
        TaskSynchronizer(SyncConfig(), store, lambda _: fake).run()
        store.delete_account(account.id)
        assert [p.uid for p in store.list_pending_deletions()] == [task.uid]
        assert build_summary(store).pending_deletions == 0
        listener = _RecordingListener()

        TaskSynchronizer(SyncConfig(), store, lambda _: fake, listener).run()

        assert store.list_pending_deletions() == []
        assert fake.deletes == []
        assert listener.summaries[0].pending_deletions == 0
