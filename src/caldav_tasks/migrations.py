"""
Forward-only, versioned schema migrations for the task store.

Shipped migrations are never edited or reordered.  A behavioural change is
always a new version appended to ``MIGRATIONS``, even when it rewrites a
table introduced earlier (version 2 rebuilds ``tasks`` instead of editing
version 1).  Each recorded version carries a checksum of its statements so a
mutated history is detected at startup.
"""

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone

from caldav_tasks.models import SchemaMigrationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: tuple[str, ...]

    @property
    def checksum(self) -> str:
        """SHA-256 over the migration statements."""
        digest = hashlib.sha256()
        for statement in self.statements:
            digest.update(statement.strip().encode("utf-8"))
            digest.update(b"\x00")
        return digest.hexdigest()


_TASK_COLUMNS = (
    "id, uid, etag, href, title, description, completed, completed_at, "
    "tags, category_id, priority, start_date, start_date_all_day, "
    "due_date, due_date_all_day, created_at, modified_at, reminders, "
    "subtasks, parent_uid, is_collapsed, sort_order, account_id, "
    "calendar_id, synced, local_only"
)

_V1_CREATE = (
    """
    CREATE TABLE accounts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        server_url TEXT NOT NULL,
        username TEXT NOT NULL,
        password TEXT NOT NULL,
        server_type TEXT,
        last_sync TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE calendars (
        id TEXT PRIMARY KEY,
        account_id TEXT REFERENCES accounts(id) ON DELETE CASCADE,
        display_name TEXT NOT NULL,
        url TEXT NOT NULL,
        ctag TEXT,
        sync_token TEXT,
        color TEXT,
        icon TEXT,
        supported_components TEXT
    )
    """,
    """
    CREATE TABLE tasks (
        id TEXT PRIMARY KEY,
        uid TEXT NOT NULL UNIQUE,
        etag TEXT,
        href TEXT,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        completed INTEGER NOT NULL DEFAULT 0,
        completed_at TEXT,
        tags TEXT,
        category_id TEXT,
        priority TEXT NOT NULL DEFAULT 'none',
        start_date TEXT,
        start_date_all_day INTEGER NOT NULL DEFAULT 0,
        due_date TEXT,
        due_date_all_day INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        modified_at TEXT NOT NULL,
        reminders TEXT,
        subtasks TEXT NOT NULL DEFAULT '[]',
        parent_uid TEXT,
        is_collapsed INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL DEFAULT 0,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
        synced INTEGER NOT NULL DEFAULT 0,
        local_only INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX idx_tasks_calendar_id ON tasks(calendar_id)",
    "CREATE INDEX idx_tasks_parent_uid ON tasks(parent_uid)",
    "CREATE INDEX idx_calendars_account_id ON calendars(account_id)",
    """
    CREATE TABLE tags (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        color TEXT NOT NULL,
        icon TEXT
    )
    """,
    """
    CREATE TABLE pending_deletions (
        uid TEXT PRIMARY KEY,
        href TEXT NOT NULL,
        account_id TEXT,
        calendar_id TEXT
    )
    """,
    """
    CREATE TABLE ui_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        active_account_id TEXT,
        active_calendar_id TEXT,
        active_tag_id TEXT,
        selected_task_id TEXT,
        search_query TEXT NOT NULL DEFAULT '',
        sort_mode TEXT NOT NULL DEFAULT 'manual',
        sort_direction TEXT NOT NULL DEFAULT 'asc',
        show_completed_tasks INTEGER NOT NULL DEFAULT 1,
        is_editor_open INTEGER NOT NULL DEFAULT 0
    )
    """,
    "INSERT INTO ui_state (id) VALUES (1)",
)

# SQLite cannot drop a NOT NULL constraint in place, so the table is rebuilt.
_V2_RELAX_TASK_OWNERSHIP = (
    """
    CREATE TABLE tasks_new (
        id TEXT PRIMARY KEY,
        uid TEXT NOT NULL UNIQUE,
        etag TEXT,
        href TEXT,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        completed INTEGER NOT NULL DEFAULT 0,
        completed_at TEXT,
        tags TEXT,
        category_id TEXT,
        priority TEXT NOT NULL DEFAULT 'none',
        start_date TEXT,
        start_date_all_day INTEGER NOT NULL DEFAULT 0,
        due_date TEXT,
        due_date_all_day INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        modified_at TEXT NOT NULL,
        reminders TEXT,
        subtasks TEXT NOT NULL DEFAULT '[]',
        parent_uid TEXT,
        is_collapsed INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL DEFAULT 0,
        account_id TEXT REFERENCES accounts(id) ON DELETE CASCADE,
        calendar_id TEXT REFERENCES calendars(id) ON DELETE CASCADE,
        synced INTEGER NOT NULL DEFAULT 0,
        local_only INTEGER NOT NULL DEFAULT 0
    )
    """,
    f"INSERT INTO tasks_new ({_TASK_COLUMNS}) SELECT {_TASK_COLUMNS} FROM tasks",
    "DROP TABLE tasks",
    "ALTER TABLE tasks_new RENAME TO tasks",
    "CREATE INDEX idx_tasks_calendar_id ON tasks(calendar_id)",
    "CREATE INDEX idx_tasks_parent_uid ON tasks(parent_uid)",
)

_V3_ADD_TASK_URL = ("ALTER TABLE tasks ADD COLUMN url TEXT",)

MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "create_initial_tables", _V1_CREATE),
    Migration(2, "make_task_account_and_calendar_nullable", _V2_RELAX_TASK_OWNERSHIP),
    Migration(3, "add_task_url", _V3_ADD_TASK_URL),
)

_HISTORY_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        description TEXT NOT NULL,
        checksum TEXT NOT NULL,
        applied_at TEXT NOT NULL
    )
"""


def validate_migrations(migrations) -> None:
    """Reject a migration list whose versions are not strictly increasing."""
    previous = 0
    for migration in migrations:
        if migration.version <= previous:
            raise SchemaMigrationFailure(
                f"Migration versions must be strictly increasing: "
                f"{migration.version} follows {previous}",
                version=migration.version,
            )
        previous = migration.version


def _has_history_table(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_migrations'"
    ).fetchone()
    return row is not None


def applied_migrations(conn: sqlite3.Connection) -> list:
    """Return the recorded migration history, oldest first."""
    if not _has_history_table(conn):
        return []
    cursor = conn.execute(
        "SELECT version, description, checksum, applied_at "
        "FROM schema_migrations ORDER BY version"
    )
    return cursor.fetchall()


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version (0 for an empty store)."""
    if not _has_history_table(conn):
        return 0
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return row[0] or 0


def _check_history(history, known: dict[int, Migration]) -> None:
    for row in history:
        version, checksum = row[0], row[2]
        migration = known.get(version)
        if migration is None:
            raise SchemaMigrationFailure(
                f"Store records schema version {version}, which this build does not know. "
                f"Refusing to open a store written by a newer version.",
                version=version,
            )
        if migration.checksum != checksum:
            raise SchemaMigrationFailure(
                f"Migration {version} ({migration.description}) differs from the one "
                f"applied to this store; shipped migrations must never change.",
                version=version,
            )


def apply_migrations(
    conn: sqlite3.Connection, migrations: tuple[Migration, ...] = MIGRATIONS
) -> list[int]:
    """
    Bring the schema up to date.

    Every pending migration is applied in ascending order inside a single
    transaction: either the store reaches the latest version or it is left
    exactly as it was.  Running against an up-to-date store is a no-op.

    The connection must be in autocommit mode (``isolation_level=None``) so
    the explicit BEGIN/COMMIT below is the only transaction boundary.

    Returns the list of versions applied by this call.

    Raises:
        SchemaMigrationFailure: on an invalid migration list, an unknown or
            mutated recorded version, or any error while applying.
    """
    validate_migrations(migrations)
    known = {m.version: m for m in migrations}

    try:
        history = applied_migrations(conn)
    except sqlite3.Error as e:
        raise SchemaMigrationFailure(f"Cannot read migration history: {e}") from e
    _check_history(history, known)

    applied_versions = {row[0] for row in history}
    pending = [m for m in migrations if m.version not in applied_versions]
    if not pending:
        logger.debug(f"Schema is up to date (version {max(applied_versions, default=0)})")
        return []

    latest_applied = max(applied_versions, default=0)
    if pending[0].version < latest_applied:
        raise SchemaMigrationFailure(
            f"Migration {pending[0].version} was added below the applied version "
            f"{latest_applied}; new migrations must be appended.",
            version=pending[0].version,
        )

    logger.info(
        f"Migrating schema from version {latest_applied} to {pending[-1].version} "
        f"({len(pending)} step(s))"
    )

    current = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(_HISTORY_TABLE)
        for migration in pending:
            current = migration
            logger.debug(f"Applying migration {migration.version}: {migration.description}")
            for statement in migration.statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations (version, description, checksum, applied_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    migration.version,
                    migration.description,
                    migration.checksum,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        version = current.version if current else None
        logger.error(f"Migration {version} failed, schema rolled back: {e}")
        raise SchemaMigrationFailure(
            f"Migration {version} failed: {e}. The store was left unchanged.",
            version=version,
        ) from e

    return [m.version for m in pending]
