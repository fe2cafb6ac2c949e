"""
SQLite persistence for accounts, calendars, tasks, tags and sync tombstones.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields
from dataclasses import replace
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path

from caldav_tasks.migrations import MIGRATIONS
from caldav_tasks.migrations import apply_migrations
from caldav_tasks.models import SORT_ORDER_GAP
from caldav_tasks.models import Account
from caldav_tasks.models import Calendar
from caldav_tasks.models import ConstraintViolation
from caldav_tasks.models import PendingDeletion
from caldav_tasks.models import Priority
from caldav_tasks.models import Reminder
from caldav_tasks.models import SchemaMigrationFailure
from caldav_tasks.models import ServerType
from caldav_tasks.models import SortConfig
from caldav_tasks.models import SortDirection
from caldav_tasks.models import SortMode
from caldav_tasks.models import Tag
from caldav_tasks.models import Task
from caldav_tasks.models import TaskQuery
from caldav_tasks.models import TaskStoreError
from caldav_tasks.models import UiState

logger = logging.getLogger(__name__)

DEFAULT_TAG_COLOR = "#3b82f6"

_TASK_FIELDS = frozenset(f.name for f in fields(Task))

# Never changed through update_task().
_IMMUTABLE_FIELDS = frozenset({"id", "uid", "created_at", "modified_at"})
# Owned by the sync-state tracker.
_SYNC_FIELDS = frozenset({"etag", "href", "synced"})
# Changed only through the hierarchy resolver / move_task_to_calendar().
_PLACEMENT_FIELDS = frozenset({"parent_uid", "account_id", "calendar_id"})
# Local-only presentation state and derived indexes; never dirty a task.
_NON_SYNCED_FIELDS = frozenset({"is_collapsed", "subtasks"})

_TASK_COLUMNS = (
    "id",
    "uid",
    "etag",
    "href",
    "title",
    "description",
    "completed",
    "completed_at",
    "tags",
    "category_id",
    "priority",
    "start_date",
    "start_date_all_day",
    "due_date",
    "due_date_all_day",
    "created_at",
    "modified_at",
    "reminders",
    "subtasks",
    "parent_uid",
    "is_collapsed",
    "sort_order",
    "account_id",
    "calendar_id",
    "synced",
    "local_only",
    "url",
)

_PRIORITY_RANK_SQL = (
    "CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 WHEN 'low' THEN 2 ELSE 3 END"
)


# --------------------------------------------------------------------------- #
# Value conversion                                                             #
# --------------------------------------------------------------------------- #


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def new_uid() -> str:
    """Generate a globally unique iCalendar UID for a locally created task."""
    return f"{uuid.uuid4()}@caldav-tasks"


def to_db_time(value: datetime | None) -> str | None:
    """Serialize to fixed-width UTC ISO-8601 so text order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _load_json_list(value: str | None) -> list:
    if not value:
        return []
    return json.loads(value)


def _row_to_task(row: sqlite3.Row) -> Task:
    try:
        priority = Priority(row["priority"])
    except ValueError:
        logger.warning(f"Task {row['uid']} has unknown priority {row['priority']!r}")
        priority = Priority.NONE

    task = Task(
        id=row["id"],
        uid=row["uid"],
        etag=row["etag"],
        href=row["href"],
        title=row["title"],
        description=row["description"] or "",
        completed=bool(row["completed"]),
        completed_at=from_db_time(row["completed_at"]),
        tags=_load_json_list(row["tags"]),
        category_id=row["category_id"],
        priority=priority,
        start_date=from_db_time(row["start_date"]),
        start_date_all_day=bool(row["start_date_all_day"]),
        due_date=from_db_time(row["due_date"]),
        due_date_all_day=bool(row["due_date_all_day"]),
        created_at=from_db_time(row["created_at"]),
        modified_at=from_db_time(row["modified_at"]),
        reminders=[
            Reminder(id=r["id"], trigger=from_db_time(r["trigger"]))
            for r in _load_json_list(row["reminders"])
        ],
        subtasks=_load_json_list(row["subtasks"]),
        parent_uid=row["parent_uid"],
        is_collapsed=bool(row["is_collapsed"]),
        sort_order=row["sort_order"],
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        synced=bool(row["synced"]),
        local_only=bool(row["local_only"]),
        url=row["url"],
    )

    # Report, never repair: the audit in verify.py lists every violation.
    if task.completed != (task.completed_at is not None):
        logger.warning(
            "Task %s violates completed/completed_at invariant (completed=%s, completed_at=%s)",
            task.uid,
            task.completed,
            task.completed_at,
        )
    return task


def _task_params(task: Task) -> dict:
    return {
        "id": task.id,
        "uid": task.uid,
        "etag": task.etag,
        "href": task.href,
        "title": task.title,
        "description": task.description or "",
        "completed": int(task.completed),
        "completed_at": to_db_time(task.completed_at),
        "tags": json.dumps(task.tags) if task.tags else None,
        "category_id": task.category_id,
        "priority": Priority(task.priority).value,
        "start_date": to_db_time(task.start_date),
        "start_date_all_day": int(task.start_date_all_day),
        "due_date": to_db_time(task.due_date),
        "due_date_all_day": int(task.due_date_all_day),
        "created_at": to_db_time(task.created_at),
        "modified_at": to_db_time(task.modified_at),
        "reminders": (
            json.dumps([{"id": r.id, "trigger": to_db_time(r.trigger)} for r in task.reminders])
            if task.reminders
            else None
        ),
        "subtasks": json.dumps(task.subtasks),
        "parent_uid": task.parent_uid,
        "is_collapsed": int(task.is_collapsed),
        "sort_order": task.sort_order,
        "account_id": task.account_id,
        "calendar_id": task.calendar_id,
        "synced": int(task.synced),
        "local_only": int(task.local_only),
        "url": task.url,
    }


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        name=row["name"],
        server_url=row["server_url"],
        username=row["username"],
        password=row["password"],
        server_type=ServerType(row["server_type"]) if row["server_type"] else None,
        last_sync=from_db_time(row["last_sync"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_calendar(row: sqlite3.Row) -> Calendar:
    return Calendar(
        id=row["id"],
        account_id=row["account_id"],
        display_name=row["display_name"],
        url=row["url"],
        ctag=row["ctag"],
        sync_token=row["sync_token"],
        color=row["color"],
        icon=row["icon"],
        supported_components=(
            json.loads(row["supported_components"]) if row["supported_components"] else None
        ),
    )


def _row_to_tag(row: sqlite3.Row) -> Tag:
    return Tag(id=row["id"], name=row["name"], color=row["color"], icon=row["icon"])


def _row_to_pending(row: sqlite3.Row) -> PendingDeletion:
    return PendingDeletion(
        uid=row["uid"],
        href=row["href"],
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
    )


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# --------------------------------------------------------------------------- #
# Store                                                                        #
# --------------------------------------------------------------------------- #


class TaskStore:
    """Typed repository over the migrated SQLite schema.

    Every public mutation runs as one short transaction, serialized by a
    re-entrant lock shared by the UI and the background sync.  The schema is
    migrated in connect(); no entity operation runs against an unmigrated
    store.
    """

    def __init__(self, db_path: Path, migrations=MIGRATIONS):
        self.db_path = db_path
        self.migrations = migrations
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database and bring the schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            applied = apply_migrations(conn, self.migrations)
        except SchemaMigrationFailure:
            conn.close()
            raise
        if applied:
            logger.info(f"Applied schema migration(s) {applied} to {self.db_path}")
        self.conn = conn

    def close(self):
        """Close the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise TaskStoreError("Store is not connected")
        return self.conn

    @contextmanager
    def transaction(self):
        """Run the enclosed block as one atomic unit.

        Nested use joins the outermost transaction.  sqlite integrity errors
        surface as ConstraintViolation after the rollback.
        """
        with self._lock:
            conn = self._require_conn()
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                except sqlite3.IntegrityError as e:
                    raise ConstraintViolation(str(e)) from e
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise ConstraintViolation(str(e)) from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _fetchall(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchone()

    # ------------------------------------------------------------------ #
    # Accounts                                                            #
    # ------------------------------------------------------------------ #

    def create_account(
        self,
        name: str,
        server_url: str,
        username: str,
        password: str,
        server_type: ServerType | None = None,
        account_id: str | None = None,
    ) -> Account:
        account = Account(
            id=account_id or new_id(),
            name=name,
            server_url=server_url,
            username=username,
            password=password,
            server_type=ServerType(server_type) if server_type else None,
        )
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO accounts "
                "(id, name, server_url, username, password, server_type, last_sync, is_active) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    account.id,
                    account.name,
                    account.server_url,
                    account.username,
                    account.password,
                    account.server_type.value if account.server_type else None,
                    None,
                    1,
                ),
            )
            conn.execute(
                "UPDATE ui_state SET active_account_id = ? "
                "WHERE id = 1 AND active_account_id IS NULL",
                (account.id,),
            )
        logger.debug(f"Created account {account.name} ({account.id})")
        return account

    def get_account(self, account_id: str) -> Account | None:
        row = self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return _row_to_account(row) if row else None

    def list_accounts(self, active_only: bool = False) -> list[Account]:
        sql = "SELECT * FROM accounts"
        if active_only:
            sql += " WHERE is_active = 1"
        return [_row_to_account(row) for row in self._fetchall(sql + " ORDER BY name")]

    def update_account(self, account_id: str, **changes) -> Account:
        allowed = {"name", "server_url", "username", "password", "server_type", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ConstraintViolation(f"Cannot update account field(s): {sorted(unknown)}")
        with self.transaction() as conn:
            existing = self.get_account(account_id)
            if existing is None:
                raise ConstraintViolation(f"Account {account_id} does not exist")
            updated = replace(existing, **changes)
            conn.execute(
                "UPDATE accounts SET name = ?, server_url = ?, username = ?, password = ?, "
                "server_type = ?, is_active = ? WHERE id = ?",
                (
                    updated.name,
                    updated.server_url,
                    updated.username,
                    updated.password,
                    ServerType(updated.server_type).value if updated.server_type else None,
                    int(updated.is_active),
                    account_id,
                ),
            )
        return updated

    def set_account_active(self, account_id: str, active: bool) -> Account:
        return self.update_account(account_id, is_active=active)

    def record_account_sync(self, account_id: str, when: datetime | None = None):
        """Store the time of the last successful sync pass for an account."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_sync = ? WHERE id = ?",
                (to_db_time(when or utc_now()), account_id),
            )

    def delete_account(self, account_id: str) -> list[PendingDeletion]:
        """Delete an account, cascading to its calendars and their tasks.

        Tasks that already reached the server are tombstoned first.  With
        the account gone nothing can push them; the next sync pass discards
        them.  Returns the tombstones created.
        """
        with self.transaction() as conn:
            if self.get_account(account_id) is None:
                raise ConstraintViolation(f"Account {account_id} does not exist")
            rows = conn.execute(
                "SELECT * FROM tasks WHERE account_id = ? "
                "OR calendar_id IN (SELECT id FROM calendars WHERE account_id = ?)",
                (account_id, account_id),
            ).fetchall()
            tombstones = self._tombstone_tasks([_row_to_task(r) for r in rows])
            calendar_ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM calendars WHERE account_id = ?", (account_id,)
                ).fetchall()
            ]
            conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))

            ui = self.get_ui_state()
            if ui.active_account_id == account_id:
                remaining = conn.execute("SELECT id FROM accounts ORDER BY name LIMIT 1").fetchone()
                conn.execute(
                    "UPDATE ui_state SET active_account_id = ? WHERE id = 1",
                    (remaining["id"] if remaining else None,),
                )
            if ui.active_calendar_id in calendar_ids:
                conn.execute("UPDATE ui_state SET active_calendar_id = NULL WHERE id = 1")
            self._clear_dangling_selection()
        logger.info(
            f"Deleted account {account_id} "
            f"({len(rows)} task(s), {len(tombstones)} pending remote deletion(s))"
        )
        return tombstones

    # ------------------------------------------------------------------ #
    # Calendars                                                           #
    # ------------------------------------------------------------------ #

    def add_calendar(
        self,
        account_id: str | None,
        display_name: str,
        url: str,
        ctag: str | None = None,
        sync_token: str | None = None,
        color: str | None = None,
        icon: str | None = None,
        supported_components: list[str] | None = None,
        calendar_id: str | None = None,
    ) -> Calendar:
        calendar = Calendar(
            id=calendar_id or new_id(),
            account_id=account_id,
            display_name=display_name,
            url=url,
            ctag=ctag,
            sync_token=sync_token,
            color=color,
            icon=icon,
            supported_components=supported_components,
        )
        with self.transaction() as conn:
            if account_id is not None and self.get_account(account_id) is None:
                raise ConstraintViolation(f"Account {account_id} does not exist")
            conn.execute(
                "INSERT INTO calendars "
                "(id, account_id, display_name, url, ctag, sync_token, color, icon, "
                " supported_components) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    calendar.id,
                    calendar.account_id,
                    calendar.display_name,
                    calendar.url,
                    calendar.ctag,
                    calendar.sync_token,
                    calendar.color,
                    calendar.icon,
                    json.dumps(supported_components) if supported_components else None,
                ),
            )
            conn.execute(
                "UPDATE ui_state SET active_calendar_id = ? "
                "WHERE id = 1 AND active_calendar_id IS NULL",
                (calendar.id,),
            )
        logger.debug(f"Added calendar {calendar.display_name} ({calendar.id})")
        return calendar

    def get_calendar(self, calendar_id: str) -> Calendar | None:
        row = self._fetchone("SELECT * FROM calendars WHERE id = ?", (calendar_id,))
        return _row_to_calendar(row) if row else None

    def get_calendar_by_url(self, account_id: str | None, url: str) -> Calendar | None:
        row = self._fetchone(
            "SELECT * FROM calendars WHERE account_id IS ? AND url = ?", (account_id, url)
        )
        return _row_to_calendar(row) if row else None

    def list_calendars(self, account_id: str | None = None) -> list[Calendar]:
        if account_id is None:
            rows = self._fetchall("SELECT * FROM calendars ORDER BY display_name")
        else:
            rows = self._fetchall(
                "SELECT * FROM calendars WHERE account_id = ? ORDER BY display_name",
                (account_id,),
            )
        return [_row_to_calendar(row) for row in rows]

    def update_calendar(self, calendar_id: str, **changes) -> Calendar:
        """Update presentation properties of a calendar.

        ``ctag`` and ``sync_token`` are advanced only through
        update_calendar_sync_state(), by a committing merge.
        """
        allowed = {"display_name", "url", "color", "icon", "supported_components"}
        unknown = set(changes) - allowed
        if unknown:
            raise ConstraintViolation(f"Cannot update calendar field(s): {sorted(unknown)}")
        with self.transaction() as conn:
            existing = self.get_calendar(calendar_id)
            if existing is None:
                raise ConstraintViolation(f"Calendar {calendar_id} does not exist")
            updated = replace(existing, **changes)
            conn.execute(
                "UPDATE calendars SET display_name = ?, url = ?, color = ?, icon = ?, "
                "supported_components = ? WHERE id = ?",
                (
                    updated.display_name,
                    updated.url,
                    updated.color,
                    updated.icon,
                    (
                        json.dumps(updated.supported_components)
                        if updated.supported_components
                        else None
                    ),
                    calendar_id,
                ),
            )
        return updated

    def update_calendar_sync_state(
        self, calendar_id: str, ctag: str | None, sync_token: str | None
    ):
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE calendars SET ctag = ?, sync_token = ? WHERE id = ?",
                (ctag, sync_token, calendar_id),
            )
            if cursor.rowcount == 0:
                raise ConstraintViolation(f"Calendar {calendar_id} does not exist")

    def delete_calendar(self, calendar_id: str, tombstone: bool = True) -> list[PendingDeletion]:
        """Delete a calendar and (by cascade) its tasks.

        With ``tombstone=False`` (the collection is already gone on the
        server) no pending deletions are recorded.
        """
        with self.transaction() as conn:
            if self.get_calendar(calendar_id) is None:
                raise ConstraintViolation(f"Calendar {calendar_id} does not exist")
            tasks = self.list_tasks(calendar_id=calendar_id)
            tombstones = self._tombstone_tasks(tasks) if tombstone else []
            if not tombstone:
                conn.execute("DELETE FROM pending_deletions WHERE calendar_id = ?", (calendar_id,))
            conn.execute("DELETE FROM calendars WHERE id = ?", (calendar_id,))

            if self.get_ui_state().active_calendar_id == calendar_id:
                other = conn.execute(
                    "SELECT id FROM calendars ORDER BY display_name LIMIT 1"
                ).fetchone()
                conn.execute(
                    "UPDATE ui_state SET active_calendar_id = ? WHERE id = 1",
                    (other["id"] if other else None,),
                )
            self._clear_dangling_selection()
        logger.info(
            f"Deleted calendar {calendar_id} "
            f"({len(tasks)} task(s), {len(tombstones)} pending remote deletion(s))"
        )
        return tombstones

    # ------------------------------------------------------------------ #
    # Tasks: reads                                                        #
    # ------------------------------------------------------------------ #

    def get_task(self, task_id: str) -> Task | None:
        row = self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return _row_to_task(row) if row else None

    def get_task_by_uid(self, uid: str) -> Task | None:
        row = self._fetchone("SELECT * FROM tasks WHERE uid = ?", (uid,))
        return _row_to_task(row) if row else None

    def get_task_by_href(self, calendar_id: str, href: str) -> Task | None:
        row = self._fetchone(
            "SELECT * FROM tasks WHERE calendar_id = ? AND href = ?", (calendar_id, href)
        )
        return _row_to_task(row) if row else None

    def list_tasks(self, calendar_id: str | None = None) -> list[Task]:
        if calendar_id is None:
            rows = self._fetchall("SELECT * FROM tasks ORDER BY sort_order, created_at")
        else:
            rows = self._fetchall(
                "SELECT * FROM tasks WHERE calendar_id = ? ORDER BY sort_order, created_at",
                (calendar_id,),
            )
        return [_row_to_task(row) for row in rows]

    def get_child_tasks(self, parent_uid: str) -> list[Task]:
        rows = self._fetchall(
            "SELECT * FROM tasks WHERE parent_uid = ? ORDER BY sort_order, created_at",
            (parent_uid,),
        )
        return [_row_to_task(row) for row in rows]

    def get_top_level_tasks(self, calendar_id: str | None) -> list[Task]:
        rows = self._fetchall(
            "SELECT * FROM tasks WHERE parent_uid IS NULL AND calendar_id IS ? "
            "ORDER BY sort_order, created_at",
            (calendar_id,),
        )
        return [_row_to_task(row) for row in rows]

    def count_children(self, parent_uid: str) -> int:
        row = self._fetchone("SELECT COUNT(*) FROM tasks WHERE parent_uid = ?", (parent_uid,))
        return row[0]

    def get_descendants(self, uid: str) -> list[Task]:
        """All tasks below ``uid``, breadth first.  Tolerates corrupt cycles."""
        result: list[Task] = []
        seen = {uid}
        frontier = [uid]
        while frontier:
            next_frontier = []
            for parent in frontier:
                for child in self.get_child_tasks(parent):
                    if child.uid in seen:
                        continue
                    seen.add(child.uid)
                    result.append(child)
                    next_frontier.append(child.uid)
            frontier = next_frontier
        return result

    def query_tasks(self, query: TaskQuery | None = None) -> list[Task]:
        """Filtered, sorted task listing for the UI."""
        query = query or TaskQuery()
        clauses: list[str] = []
        params: list = []

        if query.calendar_id is not None:
            clauses.append("calendar_id = ?")
            params.append(query.calendar_id)
        if query.account_id is not None:
            clauses.append("account_id = ?")
            params.append(query.account_id)
        if query.tag_id is not None:
            clauses.append("EXISTS (SELECT 1 FROM json_each(tasks.tags) WHERE json_each.value = ?)")
            params.append(query.tag_id)
        if query.completed is not None:
            clauses.append("completed = ?")
            params.append(int(query.completed))
        if query.search:
            pattern = f"%{_escape_like(query.search)}%"
            clauses.append("(title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')")
            params.extend([pattern, pattern])
        if query.parent_uid is not None:
            clauses.append("parent_uid = ?")
            params.append(query.parent_uid)
        elif query.top_level_only:
            clauses.append("parent_uid IS NULL")

        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY " + self._order_by(query.sort)
        return [_row_to_task(row) for row in self._fetchall(sql, params)]

    @staticmethod
    def _order_by(sort: SortConfig) -> str:
        direction = "DESC" if SortDirection(sort.direction) == SortDirection.DESC else "ASC"
        mode = SortMode(sort.mode)
        if mode == SortMode.DUE_DATE:
            # Undated tasks go last in both directions
            return f"due_date IS NULL, due_date {direction}, sort_order"
        if mode == SortMode.START_DATE:
            return f"start_date IS NULL, start_date {direction}, sort_order"
        if mode == SortMode.PRIORITY:
            return f"{_PRIORITY_RANK_SQL} {direction}, sort_order"
        if mode == SortMode.TITLE:
            return f"title COLLATE NOCASE {direction}"
        if mode == SortMode.MODIFIED:
            return f"modified_at {direction}"
        if mode == SortMode.CREATED:
            return f"created_at {direction}"
        return f"sort_order {direction}, created_at {direction}"

    # ------------------------------------------------------------------ #
    # Tasks: writes                                                       #
    # ------------------------------------------------------------------ #

    def next_sort_order(self, parent_uid: str | None, calendar_id: str | None) -> int:
        """Sort order that places a new task last among its siblings."""
        if parent_uid is not None:
            row = self._fetchone(
                "SELECT MAX(sort_order) FROM tasks WHERE parent_uid = ?", (parent_uid,)
            )
        else:
            row = self._fetchone(
                "SELECT MAX(sort_order) FROM tasks WHERE parent_uid IS NULL AND calendar_id IS ?",
                (calendar_id,),
            )
        current = row[0]
        return SORT_ORDER_GAP if current is None else current + SORT_ORDER_GAP

    def create_task(
        self,
        title: str,
        *,
        calendar_id: str | None = None,
        account_id: str | None = None,
        description: str = "",
        priority: Priority = Priority.NONE,
        tags: list[str] | None = None,
        category_id: str | None = None,
        parent_uid: str | None = None,
        start_date: datetime | None = None,
        start_date_all_day: bool = False,
        due_date: datetime | None = None,
        due_date_all_day: bool = False,
        reminders: list[Reminder] | None = None,
        url: str | None = None,
        local_only: bool | None = None,
        sort_order: int | None = None,
        uid: str | None = None,
    ) -> Task:
        """Create a local task (PendingCreate, or LocalOnly without a calendar).

        When ``account_id`` is omitted it is taken from the calendar's owner.
        """
        now = utc_now()
        with self.transaction():
            if calendar_id is not None and account_id is None:
                calendar = self.get_calendar(calendar_id)
                if calendar is None:
                    raise ConstraintViolation(f"Calendar {calendar_id} does not exist")
                account_id = calendar.account_id

            task = Task(
                id=new_id(),
                uid=uid or new_uid(),
                title=title,
                description=description,
                created_at=now,
                modified_at=now,
                priority=Priority(priority),
                tags=list(tags or []),
                category_id=category_id,
                parent_uid=parent_uid,
                start_date=start_date,
                start_date_all_day=start_date_all_day,
                due_date=due_date,
                due_date_all_day=due_date_all_day,
                reminders=list(reminders or []),
                url=url,
                account_id=account_id,
                calendar_id=calendar_id,
                synced=False,
                local_only=calendar_id is None if local_only is None else local_only,
                sort_order=(
                    sort_order
                    if sort_order is not None
                    else self.next_sort_order(parent_uid, calendar_id)
                ),
            )
            self.save_task(task)
            if parent_uid is not None:
                self.refresh_subtask_index(parent_uid)
        logger.debug(f"Created task {task.uid} ({task.title!r})")
        return task

    def save_task(self, task: Task, check_parent: bool = True) -> Task:
        """Insert or overwrite a full task row after validating invariants.

        Low-level write for the hierarchy resolver and the sync tracker: it
        neither bumps ``modified_at`` nor touches ``synced``.  Remote merges
        pass ``check_parent=False`` and normalize parents afterwards.
        """
        with self.transaction() as conn:
            self._validate_task(task, check_parent=check_parent)
            params = _task_params(task)
            columns = ", ".join(_TASK_COLUMNS)
            placeholders = ", ".join(f":{c}" for c in _TASK_COLUMNS)
            updates = ", ".join(f"{c} = excluded.{c}" for c in _TASK_COLUMNS if c != "id")
            conn.execute(
                f"INSERT INTO tasks ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                params,
            )
        return task

    def _validate_task(self, task: Task, check_parent: bool = True):
        if task.completed != (task.completed_at is not None):
            raise ConstraintViolation(
                f"Task {task.uid}: completed_at must be set if and only if completed is true"
            )
        if task.account_id is not None and task.calendar_id is None:
            raise ConstraintViolation(
                f"Task {task.uid}: a task with an account must also have a calendar"
            )
        if task.calendar_id is not None:
            calendar = self.get_calendar(task.calendar_id)
            if calendar is None:
                raise ConstraintViolation(
                    f"Task {task.uid}: calendar {task.calendar_id} does not exist"
                )
            if calendar.account_id != task.account_id:
                raise ConstraintViolation(
                    f"Task {task.uid}: calendar {calendar.id} belongs to account "
                    f"{calendar.account_id}, not {task.account_id}"
                )
        if task.local_only and task.href is not None:
            raise ConstraintViolation(
                f"Task {task.uid}: a local-only task cannot have a remote href"
            )
        if task.parent_uid is not None:
            if task.parent_uid == task.uid:
                raise ConstraintViolation(f"Task {task.uid} cannot be its own parent")
            if check_parent and self.get_task_by_uid(task.parent_uid) is None:
                raise ConstraintViolation(
                    f"Task {task.uid}: parent {task.parent_uid} does not exist"
                )
        if task.tags:
            placeholders = ", ".join("?" for _ in task.tags)
            found = self._fetchall(f"SELECT id FROM tags WHERE id IN ({placeholders})", task.tags)
            missing = set(task.tags) - {row["id"] for row in found}
            if missing:
                raise ConstraintViolation(f"Task {task.uid}: unknown tag(s) {sorted(missing)}")

    @staticmethod
    def next_modified_at(previous: datetime | None) -> datetime:
        """``now``, but strictly after ``previous`` so edit order is preserved."""
        now = utc_now()
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def edited(self, task: Task, **changes) -> Task:
        """Return ``task`` with local edits applied and marked Dirty."""
        return replace(
            task, **changes, modified_at=self.next_modified_at(task.modified_at), synced=False
        )

    def update_task(self, task_id: str, **changes) -> Task:
        """Apply local edits to a task.

        Any change to a field the server sees moves the task to Dirty
        (``synced=False``).  Sync bookkeeping, identity and placement fields
        are rejected here; they have dedicated operations.
        """
        unknown = set(changes) - _TASK_FIELDS
        if unknown:
            raise ConstraintViolation(f"Unknown task field(s): {sorted(unknown)}")
        for group, reason in (
            (_IMMUTABLE_FIELDS, "immutable"),
            (_SYNC_FIELDS, "managed by the sync tracker"),
            (_PLACEMENT_FIELDS, "changed via set_task_parent / move_task_to_calendar"),
        ):
            blocked = set(changes) & group
            if blocked:
                raise ConstraintViolation(f"Task field(s) {sorted(blocked)} are {reason}")
        if "priority" in changes:
            changes["priority"] = Priority(changes["priority"])

        with self.transaction():
            existing = self.get_task(task_id)
            if existing is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")
            actual = {k: v for k, v in changes.items() if getattr(existing, k) != v}
            if not actual:
                return existing
            if set(actual) <= _NON_SYNCED_FIELDS:
                updated = replace(existing, **actual)
            else:
                updated = self.edited(existing, **actual)
            self.save_task(updated)
        return updated

    def set_task_completed(self, task_id: str, completed: bool) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise ConstraintViolation(f"Task {task_id} does not exist")
        if task.completed == completed:
            return task
        return self.update_task(
            task_id, completed=completed, completed_at=utc_now() if completed else None
        )

    def toggle_task_completed(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise ConstraintViolation(f"Task {task_id} does not exist")
        return self.set_task_completed(task_id, not task.completed)

    def set_task_collapsed(self, task_id: str, collapsed: bool) -> Task:
        """Presentation-only: neither the hierarchy nor sync state change."""
        return self.update_task(task_id, is_collapsed=collapsed)

    def add_tag_to_task(self, task_id: str, tag_id: str) -> Task:
        with self.transaction():
            task = self.get_task(task_id)
            if task is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")
            if tag_id in task.tags:
                return task
            return self.update_task(task_id, tags=[*task.tags, tag_id])

    def remove_tag_from_task(self, task_id: str, tag_id: str) -> Task:
        with self.transaction():
            task = self.get_task(task_id)
            if task is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")
            return self.update_task(task_id, tags=[t for t in task.tags if t != tag_id])

    def add_reminder(self, task_id: str, trigger: datetime) -> Reminder:
        reminder = Reminder(id=new_id(), trigger=trigger)
        with self.transaction():
            task = self.get_task(task_id)
            if task is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")
            self.update_task(task_id, reminders=[*task.reminders, reminder])
        return reminder

    def remove_reminder(self, task_id: str, reminder_id: str) -> Task:
        with self.transaction():
            task = self.get_task(task_id)
            if task is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")
            return self.update_task(
                task_id, reminders=[r for r in task.reminders if r.id != reminder_id]
            )

    def move_task_to_calendar(
        self, task_id: str, calendar_id: str | None, include_descendants: bool = True
    ) -> list[Task]:
        """Reassign a task (and by default its subtree) to another calendar.

        A task that already exists on the server in its old calendar gets a
        tombstone for that copy and becomes PendingCreate in the new one.
        """
        with self.transaction():
            task = self.get_task(task_id)
            if task is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")
            account_id = None
            if calendar_id is not None:
                calendar = self.get_calendar(calendar_id)
                if calendar is None:
                    raise ConstraintViolation(f"Calendar {calendar_id} does not exist")
                account_id = calendar.account_id

            moving = [task] + (self.get_descendants(task.uid) if include_descendants else [])
            moved = []
            for t in moving:
                if t.calendar_id == calendar_id:
                    continue
                self._tombstone_tasks([t])
                updated = self.edited(
                    t, calendar_id=calendar_id, account_id=account_id, href=None, etag=None
                )
                self.save_task(updated)
                moved.append(updated)
        return moved

    def _tombstone_tasks(self, tasks: list[Task]) -> list[PendingDeletion]:
        """Record pending remote deletions for tasks that reached the server."""
        tombstones = []
        with self.transaction() as conn:
            for t in tasks:
                if not t.href or t.local_only:
                    continue
                pending = PendingDeletion(
                    uid=t.uid, href=t.href, account_id=t.account_id, calendar_id=t.calendar_id
                )
                conn.execute(
                    "INSERT OR REPLACE INTO pending_deletions "
                    "(uid, href, account_id, calendar_id) VALUES (?, ?, ?, ?)",
                    (pending.uid, pending.href, pending.account_id, pending.calendar_id),
                )
                tombstones.append(pending)
        return tombstones

    def delete_task(
        self, task_id: str, delete_children: bool = True, tombstone: bool = True
    ) -> list[PendingDeletion]:
        """Delete a task locally.

        Descendants are deleted too, or orphaned (moved to top level and
        marked Dirty) with ``delete_children=False``.  Tasks with an href
        are tombstoned in the same transaction unless ``tombstone=False``
        (the remote copy is already gone).  Returns the tombstones created.
        """
        with self.transaction() as conn:
            task = self.get_task(task_id)
            if task is None:
                raise ConstraintViolation(f"Task {task_id} does not exist")

            doomed = [task] + (self.get_descendants(task.uid) if delete_children else [])
            tombstones = self._tombstone_tasks(doomed) if tombstone else []

            if not delete_children:
                for child in self.get_child_tasks(task.uid):
                    self.save_task(self.edited(child, parent_uid=None))

            ids = [t.id for t in doomed]
            placeholders = ", ".join("?" for _ in ids)
            conn.execute(f"DELETE FROM tasks WHERE id IN ({placeholders})", ids)

            if task.parent_uid is not None:
                self.refresh_subtask_index(task.parent_uid)
            self._clear_dangling_selection()
        logger.debug(
            f"Deleted {len(doomed)} task(s) rooted at {task.uid} "
            f"({len(tombstones)} pending remote deletion(s))"
        )
        return tombstones

    def refresh_subtask_index(self, parent_uid: str):
        """Rebuild the derived ``subtasks`` list of one parent from parent_uid."""
        with self.transaction() as conn:
            children = [
                row["uid"]
                for row in conn.execute(
                    "SELECT uid FROM tasks WHERE parent_uid = ? ORDER BY sort_order, created_at",
                    (parent_uid,),
                ).fetchall()
            ]
            conn.execute(
                "UPDATE tasks SET subtasks = ? WHERE uid = ?", (json.dumps(children), parent_uid)
            )

    # ------------------------------------------------------------------ #
    # Tags                                                                #
    # ------------------------------------------------------------------ #

    def create_tag(
        self, name: str, color: str | None = None, icon: str | None = None
    ) -> Tag:
        tag = Tag(id=new_id(), name=name, color=color or DEFAULT_TAG_COLOR, icon=icon)
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO tags (id, name, color, icon) VALUES (?, ?, ?, ?)",
                (tag.id, tag.name, tag.color, tag.icon),
            )
        return tag

    def get_tag(self, tag_id: str) -> Tag | None:
        row = self._fetchone("SELECT * FROM tags WHERE id = ?", (tag_id,))
        return _row_to_tag(row) if row else None

    def find_tag_by_name(self, name: str) -> Tag | None:
        row = self._fetchone(
            "SELECT * FROM tags WHERE name = ? COLLATE NOCASE ORDER BY id LIMIT 1", (name,)
        )
        return _row_to_tag(row) if row else None

    def list_tags(self) -> list[Tag]:
        return [_row_to_tag(row) for row in self._fetchall("SELECT * FROM tags ORDER BY name")]

    def _tasks_with_tag(self, tag_id: str) -> list[Task]:
        rows = self._fetchall(
            "SELECT * FROM tasks WHERE EXISTS "
            "(SELECT 1 FROM json_each(tasks.tags) WHERE json_each.value = ?)",
            (tag_id,),
        )
        return [_row_to_task(row) for row in rows]

    def update_tag(self, tag_id: str, **changes) -> Tag:
        """Update a tag; renaming it dirties every task carrying it (CATEGORIES)."""
        unknown = set(changes) - {"name", "color", "icon"}
        if unknown:
            raise ConstraintViolation(f"Cannot update tag field(s): {sorted(unknown)}")
        with self.transaction() as conn:
            existing = self.get_tag(tag_id)
            if existing is None:
                raise ConstraintViolation(f"Tag {tag_id} does not exist")
            updated = replace(existing, **changes)
            conn.execute(
                "UPDATE tags SET name = ?, color = ?, icon = ? WHERE id = ?",
                (updated.name, updated.color, updated.icon, tag_id),
            )
            if updated.name != existing.name:
                for task in self._tasks_with_tag(tag_id):
                    self.save_task(self.edited(task))
        return updated

    def delete_tag(self, tag_id: str):
        with self.transaction() as conn:
            if self.get_tag(tag_id) is None:
                raise ConstraintViolation(f"Tag {tag_id} does not exist")
            for task in self._tasks_with_tag(tag_id):
                self.save_task(self.edited(task, tags=[t for t in task.tags if t != tag_id]))
            conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
            conn.execute(
                "UPDATE ui_state SET active_tag_id = NULL WHERE id = 1 AND active_tag_id = ?",
                (tag_id,),
            )

    # ------------------------------------------------------------------ #
    # Pending deletions                                                   #
    # ------------------------------------------------------------------ #

    def list_pending_deletions(self, calendar_id: str | None = None) -> list[PendingDeletion]:
        if calendar_id is None:
            rows = self._fetchall("SELECT * FROM pending_deletions ORDER BY uid")
        else:
            rows = self._fetchall(
                "SELECT * FROM pending_deletions WHERE calendar_id = ? ORDER BY uid",
                (calendar_id,),
            )
        return [_row_to_pending(row) for row in rows]

    def get_pending_deletion(self, uid: str) -> PendingDeletion | None:
        row = self._fetchone("SELECT * FROM pending_deletions WHERE uid = ?", (uid,))
        return _row_to_pending(row) if row else None

    def record_pending_deletion(self, pending: PendingDeletion):
        """Tombstone a remote resource that has no local row."""
        with self.transaction() as conn:
            if self.get_task_by_uid(pending.uid) is not None:
                raise ConstraintViolation(
                    f"Task {pending.uid} still exists; delete it instead of tombstoning"
                )
            conn.execute(
                "INSERT OR REPLACE INTO pending_deletions "
                "(uid, href, account_id, calendar_id) VALUES (?, ?, ?, ?)",
                (pending.uid, pending.href, pending.account_id, pending.calendar_id),
            )

    def clear_pending_deletion(self, uid: str):
        """Drop a tombstone once the remote deletion is confirmed."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM pending_deletions WHERE uid = ?", (uid,))

    # ------------------------------------------------------------------ #
    # UI state (singleton row id = 1)                                     #
    # ------------------------------------------------------------------ #

    def get_ui_state(self) -> UiState:
        row = self._fetchone("SELECT * FROM ui_state WHERE id = 1")
        if row is None:
            return UiState()
        return UiState(
            active_account_id=row["active_account_id"],
            active_calendar_id=row["active_calendar_id"],
            active_tag_id=row["active_tag_id"],
            selected_task_id=row["selected_task_id"],
            search_query=row["search_query"],
            sort_config=SortConfig(
                mode=SortMode(row["sort_mode"]), direction=SortDirection(row["sort_direction"])
            ),
            show_completed_tasks=bool(row["show_completed_tasks"]),
            is_editor_open=bool(row["is_editor_open"]),
        )

    def save_ui_state(self, ui: UiState) -> UiState:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO ui_state (id, active_account_id, active_calendar_id, active_tag_id, "
                " selected_task_id, search_query, sort_mode, sort_direction, "
                " show_completed_tasks, is_editor_open) "
                "VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                " active_account_id = excluded.active_account_id, "
                " active_calendar_id = excluded.active_calendar_id, "
                " active_tag_id = excluded.active_tag_id, "
                " selected_task_id = excluded.selected_task_id, "
                " search_query = excluded.search_query, "
                " sort_mode = excluded.sort_mode, "
                " sort_direction = excluded.sort_direction, "
                " show_completed_tasks = excluded.show_completed_tasks, "
                " is_editor_open = excluded.is_editor_open",
                (
                    ui.active_account_id,
                    ui.active_calendar_id,
                    ui.active_tag_id,
                    ui.selected_task_id,
                    ui.search_query,
                    SortMode(ui.sort_config.mode).value,
                    SortDirection(ui.sort_config.direction).value,
                    int(ui.show_completed_tasks),
                    int(ui.is_editor_open),
                ),
            )
        return ui

    def set_active_calendar(self, calendar_id: str | None) -> UiState:
        ui = self.get_ui_state()
        return self.save_ui_state(
            replace(
                ui,
                active_calendar_id=calendar_id,
                active_tag_id=None,
                selected_task_id=None,
                is_editor_open=False,
            )
        )

    def set_active_tag(self, tag_id: str | None) -> UiState:
        ui = self.get_ui_state()
        return self.save_ui_state(
            replace(
                ui,
                active_tag_id=tag_id,
                active_calendar_id=None,
                selected_task_id=None,
                is_editor_open=False,
            )
        )

    def set_selected_task(self, task_id: str | None) -> UiState:
        ui = self.get_ui_state()
        return self.save_ui_state(
            replace(ui, selected_task_id=task_id, is_editor_open=task_id is not None)
        )

    def set_search_query(self, query: str) -> UiState:
        return self.save_ui_state(replace(self.get_ui_state(), search_query=query))

    def set_sort_config(self, sort: SortConfig) -> UiState:
        return self.save_ui_state(replace(self.get_ui_state(), sort_config=sort))

    def set_show_completed_tasks(self, show: bool) -> UiState:
        return self.save_ui_state(replace(self.get_ui_state(), show_completed_tasks=show))

    def _clear_dangling_selection(self):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE ui_state SET selected_task_id = NULL, is_editor_open = 0 "
                "WHERE id = 1 AND selected_task_id IS NOT NULL "
                "AND selected_task_id NOT IN (SELECT id FROM tasks)"
            )
