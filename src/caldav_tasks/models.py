"""
Pure data models, free of sqlite and transport imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_STORE_DB = Path.home() / ".local/share/caldav-tasks/caldav-tasks.db"
DEFAULT_CONFIG = Path.home() / ".config/caldav-tasks.conf"

# Default gap between manually ordered siblings.
SORT_ORDER_GAP = 100


class Priority(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SortMode(str, Enum):
    MANUAL = "manual"
    DUE_DATE = "due-date"
    START_DATE = "start-date"
    PRIORITY = "priority"
    TITLE = "title"
    MODIFIED = "modified"
    CREATED = "created"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class ServerType(str, Enum):
    RUSTICAL = "rustical"
    RADICALE = "radicale"
    BAIKAL = "baikal"
    NEXTCLOUD = "nextcloud"
    GENERIC = "generic"


class SyncState(str, Enum):
    """Reconciliation status of a task against its remote copy."""

    LOCAL_ONLY = "local-only"
    PENDING_CREATE = "pending-create"
    SYNCED = "synced"
    DIRTY = "dirty"
    PENDING_DELETE = "pending-delete"


# --------------------------------------------------------------------------- #
# Errors                                                                       #
# --------------------------------------------------------------------------- #


class TaskStoreError(Exception):
    """Base exception for task store errors."""

    pass


class SchemaMigrationFailure(TaskStoreError):
    """The schema could not be brought up to date; the store is unusable."""

    def __init__(self, message: str, version: int | None = None):
        super().__init__(message)
        self.version = version


class ConstraintViolation(TaskStoreError):
    """An operation was rejected at the store boundary and had no effect."""

    pass


@dataclass
class Conflict:
    """A local Dirty task whose remote copy changed (or vanished) meanwhile.

    ``remote_etag`` and ``remote_body`` are None when the remote resource
    was deleted on the server.
    """

    uid: str
    calendar_id: str | None
    href: str | None
    local_etag: str | None
    remote_etag: str | None
    remote_body: str | None = None


class SyncConflict(TaskStoreError):
    """Local edits collided with a remote change; nothing was overwritten."""

    def __init__(self, conflicts: list[Conflict]):
        uids = ", ".join(c.uid for c in conflicts)
        super().__init__(f"Unresolved sync conflict(s) for: {uids}")
        self.conflicts = conflicts


class TransientFetchFailure(TaskStoreError):
    """Network/transport failure; retried later with the unchanged sync token."""

    pass


class RemoteNotFound(TaskStoreError):
    """The remote resource does not exist (HTTP 404)."""

    pass


class PreconditionFailed(TaskStoreError):
    """The remote etag no longer matches (HTTP 412)."""

    pass


class SyncTokenExpired(TaskStoreError):
    """The server rejected the stored sync token; a full listing is required."""

    pass


# --------------------------------------------------------------------------- #
# Entities                                                                     #
# --------------------------------------------------------------------------- #


@dataclass
class Account:
    id: str
    name: str
    server_url: str
    username: str
    password: str
    server_type: ServerType | None = None
    last_sync: datetime | None = None
    is_active: bool = True


@dataclass
class Calendar:
    id: str
    account_id: str | None
    display_name: str
    url: str
    ctag: str | None = None
    sync_token: str | None = None
    color: str | None = None
    icon: str | None = None
    supported_components: list[str] | None = None


@dataclass
class Reminder:
    id: str
    trigger: datetime  # absolute time the reminder fires


@dataclass
class Task:
    id: str
    uid: str
    title: str
    created_at: datetime
    modified_at: datetime
    description: str = ""
    etag: str | None = None
    href: str | None = None
    completed: bool = False
    completed_at: datetime | None = None
    tags: list[str] = field(default_factory=list)  # tag ids
    category_id: str | None = None  # raw CATEGORIES value from the server
    priority: Priority = Priority.NONE
    start_date: datetime | None = None
    start_date_all_day: bool = False
    due_date: datetime | None = None
    due_date_all_day: bool = False
    reminders: list[Reminder] = field(default_factory=list)
    subtasks: list[str] = field(default_factory=list)  # derived child-uid index
    parent_uid: str | None = None
    is_collapsed: bool = False
    sort_order: int = 0
    account_id: str | None = None
    calendar_id: str | None = None
    synced: bool = False
    local_only: bool = False
    url: str | None = None


@dataclass
class Tag:
    id: str
    name: str
    color: str
    icon: str | None = None


@dataclass
class PendingDeletion:
    uid: str
    href: str
    account_id: str | None
    calendar_id: str | None


@dataclass
class SortConfig:
    mode: SortMode = SortMode.MANUAL
    direction: SortDirection = SortDirection.ASC


@dataclass
class UiState:
    active_account_id: str | None = None
    active_calendar_id: str | None = None
    active_tag_id: str | None = None
    selected_task_id: str | None = None
    search_query: str = ""
    sort_config: SortConfig = field(default_factory=SortConfig)
    show_completed_tasks: bool = True
    is_editor_open: bool = False


@dataclass
class TaskQuery:
    """Filter and ordering for task listings."""

    calendar_id: str | None = None
    account_id: str | None = None
    tag_id: str | None = None
    completed: bool | None = None  # None = both
    search: str | None = None
    parent_uid: str | None = None
    top_level_only: bool = False
    sort: SortConfig = field(default_factory=SortConfig)


# --------------------------------------------------------------------------- #
# Configuration and statistics                                                 #
# --------------------------------------------------------------------------- #


@dataclass
class StoreConfig:
    """Configuration for the task store and CLI."""

    store_path: Path = field(default_factory=lambda: DEFAULT_STORE_DB)
    verbose: bool = False
    default_priority: Priority = Priority.NONE
    default_calendar_id: str | None = None
    default_sort: SortConfig = field(default_factory=SortConfig)
    show_completed: bool = True


@dataclass
class SyncConfig:
    """Configuration for a sync pass."""

    dry_run: bool = False
    verbose: bool = False
    raise_on_conflict: bool = False


@dataclass
class SyncStats:
    """Statistics for a sync pass."""

    added: int = 0
    modified: int = 0
    deleted: int = 0
    pushed: int = 0
    conflicts: list[Conflict] = field(default_factory=list)
    errors: int = 0
