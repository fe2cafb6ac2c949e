"""
Shared pytest fixtures and VTODO helpers.
"""

import logging
from dataclasses import replace

import pytest

from caldav_tasks.db import TaskStore
from caldav_tasks.models import SyncConfig
from caldav_tasks.models import SyncStats
from caldav_tasks.models import Task

CAL_URL = "/cal/"


def make_vtodo(
    uid: str,
    summary: str = "Test Task",
    *,
    parent: str | None = None,
    status: str | None = None,
    priority: int | None = None,
    categories: str | None = None,
    sort_order: int | None = None,
    extra: tuple[str, ...] = (),
) -> str:
    """Return a minimal, valid VCALENDAR holding one VTODO."""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Test//EN",
        "BEGIN:VTODO",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        "DTSTAMP:20260224T000000Z",
        "CREATED:20260101T090000Z",
        "LAST-MODIFIED:20260102T090000Z",
    ]
    if parent is not None:
        lines.append(f"RELATED-TO;RELTYPE=PARENT:{parent}")
    if status is not None:
        lines.append(f"STATUS:{status}")
    if priority is not None:
        lines.append(f"PRIORITY:{priority}")
    if categories is not None:
        lines.append(f"CATEGORIES:{categories}")
    if sort_order is not None:
        lines.append(f"X-APPLE-SORT-ORDER:{sort_order}")
    lines.extend(extra)
    lines.extend(["END:VTODO", "END:VCALENDAR"])
    return "\r\n".join(lines) + "\r\n"


def make_synced(store: TaskStore, task: Task, href: str, etag: str) -> Task:
    """Put ``task`` into the Synced state as if it had been pushed."""
    synced = replace(task, href=href, etag=etag, synced=True)
    store.save_task(synced)
    return store.get_task(task.id)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "test_tasks.db"


@pytest.fixture
def store(store_path):
    with TaskStore(store_path) as s:
        yield s


@pytest.fixture
def account(store):
    return store.create_account("Home", "https://dav.example.com", "alice", "secret")


@pytest.fixture
def calendar(store, account):
    return store.add_calendar(account.id, "Tasks", CAL_URL, supported_components=["VTODO"])


@pytest.fixture
def sync_config():
    return SyncConfig(dry_run=False, verbose=False)


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_stats():
    return SyncStats()
