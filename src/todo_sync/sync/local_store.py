"""SQLite-backed local store for tasks and the pending change log.

The store exclusively owns persisted ``Task`` and ``PendingChange`` records,
the sync cursor, deletion tombstones and the conflict audit log. Writes that
belong together (a task write plus its queue entry) are grouped with
``atomic()`` so they commit as one SQLite transaction.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from ..task import Task, TaskFilter
from ..utils.datetime import now_utc, parse_iso, to_iso_string
from .errors import StorageError
from .models import (
    ChangeOperation,
    ChangeStatus,
    ConflictWinner,
    PendingChange,
    SyncConflict,
)


logger = logging.getLogger(__name__)

CURSOR_KEY = "cursor"
LAST_SYNCED_KEY = "last_synced_at"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        data TEXT NOT NULL,        -- JSON serialized Task
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_changes (
        change_id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL,
        operation TEXT NOT NULL,
        payload TEXT,              -- JSON serialized Task, NULL for deletes
        base_version TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        error TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        queued_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tombstones (
        task_id TEXT PRIMARY KEY,
        deleted_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_conflicts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id TEXT NOT NULL,
        local TEXT,                -- JSON serialized Task, NULL for a local delete
        remote TEXT,               -- JSON serialized Task, NULL for a remote delete
        winner TEXT,
        detected_at TEXT NOT NULL,
        resolved_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_changes_task_id ON pending_changes(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_changes_status ON pending_changes(status)",
    "CREATE INDEX IF NOT EXISTS idx_conflicts_task_id ON sync_conflicts(task_id)",
)


class LocalStore:
    """Persistent storage for tasks, pending changes and sync bookkeeping."""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        """Initialize the store.

        Args:
            db_path: SQLite database path, or ``":memory:"``
        """
        self.db_path = str(db_path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self._listeners: List[Callable[[], None]] = []

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open local store at {self.db_path}: {e}") from e

        self._init_database()

    def _init_database(self):
        """Create tables and check the database is readable."""
        try:
            with self._lock:
                self._conn.execute("PRAGMA integrity_check").fetchone()
                for statement in _SCHEMA:
                    self._conn.execute(statement)
            self.logger.debug(f"Initialized local store at {self.db_path}")
        except sqlite3.DatabaseError as e:
            self.logger.error(f"Failed to initialize local store: {e}")
            raise StorageError(f"Local store at {self.db_path} is unreadable: {e}") from e

    def close(self):
        with self._lock:
            self._conn.close()

    # Transactions and notifications

    @contextmanager
    def atomic(self) -> Iterator["LocalStore"]:
        """Group several writes into one transaction.

        Nested calls join the outermost transaction. Listeners are notified
        once, after the outermost commit.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._dirty = False
                    self._rollback()
                raise
            self._depth -= 1
            if outermost:
                self._execute("COMMIT")
                if self._dirty:
                    self._dirty = False
                    self._notify()

    def _rollback(self):
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            self.logger.error(f"Rollback failed: {e}")

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as e:
            self.logger.error(f"Local store query failed: {e}")
            raise StorageError(str(e)) from e

    def _write(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        """Run a write inside a transaction, opening one if needed."""
        with self.atomic():
            cursor = self._execute(sql, params)
            self._dirty = True
            return cursor

    def add_listener(self, callback: Callable[[], None]):
        """Register a callback run after every committed write."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self):
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                self.logger.error(f"Store listener failed: {e}")

    # Tasks

    def get(self, task_id: str) -> Optional[Task]:
        """Get a task by id, or None if it does not exist locally."""
        with self._lock:
            row = self._execute("SELECT data FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._decode_task(row["data"]) if row else None

    def list(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        """List tasks matching ``task_filter`` ordered by creation time."""
        task_filter = task_filter or TaskFilter()
        with self._lock:
            if task_filter.user_id is not None:
                rows = self._execute(
                    "SELECT data FROM tasks WHERE user_id = ? ORDER BY created_at, id",
                    (task_filter.user_id,),
                ).fetchall()
            else:
                rows = self._execute("SELECT data FROM tasks ORDER BY created_at, id").fetchall()
        tasks = [self._decode_task(row["data"]) for row in rows]
        return [task for task in tasks if task_filter.matches(task)]

    def put(self, task: Task):
        """Insert or replace a task."""
        if task.deleted:
            raise ValueError("Tombstones cannot be stored as tasks; use delete()")
        self._write(
            """
            INSERT OR REPLACE INTO tasks (id, user_id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.user_id,
                json.dumps(task.to_dict()),
                to_iso_string(task.created_at),
                to_iso_string(task.updated_at),
            ),
        )
        self.logger.debug(f"Stored task {task.id}")

    def delete(self, task_id: str, tombstone_at: Optional[datetime] = None) -> bool:
        """Delete a task; optionally remember a tombstone for it.

        Returns:
            True if a task row was removed
        """
        with self.atomic():
            cursor = self._write("DELETE FROM tasks WHERE id = ?", (task_id,))
            if tombstone_at is not None:
                self._write(
                    "INSERT OR REPLACE INTO tombstones (task_id, deleted_at) VALUES (?, ?)",
                    (task_id, to_iso_string(tombstone_at)),
                )
        return cursor.rowcount > 0

    def get_tombstone(self, task_id: str) -> Optional[datetime]:
        with self._lock:
            row = self._execute(
                "SELECT deleted_at FROM tombstones WHERE task_id = ?", (task_id,)
            ).fetchone()
        return parse_iso(row["deleted_at"]) if row else None

    def _decode_task(self, data: str) -> Task:
        try:
            return Task.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Corrupt task record: {e}") from e

    # Pending changes

    def append_change(self, change: PendingChange) -> PendingChange:
        """Append a change; the store assigns the next ``change_id``."""
        cursor = self._write(
            """
            INSERT INTO pending_changes
            (task_id, operation, payload, base_version, status, error, attempts, queued_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._change_params(change),
        )
        stored = change.with_updates(change_id=cursor.lastrowid)
        self.logger.debug(
            f"Queued change {stored.change_id}: {stored.operation.value} {stored.task_id}"
        )
        return stored

    def replace_change(self, change: PendingChange):
        """Overwrite an existing queue entry in place (keeps its position)."""
        cursor = self._write(
            """
            UPDATE pending_changes
            SET task_id = ?, operation = ?, payload = ?, base_version = ?,
                status = ?, error = ?, attempts = ?, queued_at = ?
            WHERE change_id = ?
            """,
            self._change_params(change) + (change.change_id,),
        )
        if cursor.rowcount == 0:
            raise StorageError(f"Change {change.change_id} is not in the queue")

    def get_change(self, change_id: int) -> Optional[PendingChange]:
        """Current state of one queue entry, or None once it has left the queue."""
        with self._lock:
            row = self._execute(
                "SELECT * FROM pending_changes WHERE change_id = ?", (change_id,)
            ).fetchone()
        return self._row_to_change(row) if row else None

    def remove_change(self, change_id: int) -> bool:
        cursor = self._write("DELETE FROM pending_changes WHERE change_id = ?", (change_id,))
        return cursor.rowcount > 0

    def drain_acknowledged(self, change_ids: Iterable[int]) -> int:
        """Remove acknowledged changes from the queue.

        Returns:
            Number of queue entries removed
        """
        change_ids = list(change_ids)
        if not change_ids:
            return 0
        placeholders = ",".join("?" * len(change_ids))
        cursor = self._write(
            f"DELETE FROM pending_changes WHERE change_id IN ({placeholders})", change_ids
        )
        return cursor.rowcount

    def all_pending(self, include_failed: bool = False) -> List[PendingChange]:
        """Queued changes ordered by ``change_id``."""
        with self._lock:
            if include_failed:
                rows = self._execute(
                    "SELECT * FROM pending_changes ORDER BY change_id"
                ).fetchall()
            else:
                rows = self._execute(
                    "SELECT * FROM pending_changes WHERE status = ? ORDER BY change_id",
                    (ChangeStatus.PENDING.value,),
                ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def changes_for_task(self, task_id: str, include_failed: bool = False) -> List[PendingChange]:
        return [
            change for change in self.all_pending(include_failed=include_failed)
            if change.task_id == task_id
        ]

    def failed_changes(self) -> List[PendingChange]:
        with self._lock:
            rows = self._execute(
                "SELECT * FROM pending_changes WHERE status = ? ORDER BY change_id",
                (ChangeStatus.FAILED.value,),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def mark_failed(self, change_id: int, reason: str):
        cursor = self._write(
            "UPDATE pending_changes SET status = ?, error = ? WHERE change_id = ?",
            (ChangeStatus.FAILED.value, reason, change_id),
        )
        if cursor.rowcount == 0:
            raise StorageError(f"Change {change_id} is not in the queue")

    def reset_failed(self, change_ids: Iterable[int]) -> int:
        """Put failed changes back into the pending state."""
        count = 0
        with self.atomic():
            for change_id in change_ids:
                cursor = self._write(
                    "UPDATE pending_changes SET status = ?, error = NULL "
                    "WHERE change_id = ? AND status = ?",
                    (ChangeStatus.PENDING.value, change_id, ChangeStatus.FAILED.value),
                )
                count += cursor.rowcount
        return count

    def record_attempt(self, change_id: int):
        """Count one delivery attempt of a queue entry."""
        self._write(
            "UPDATE pending_changes SET attempts = attempts + 1 WHERE change_id = ?",
            (change_id,),
        )

    def _change_params(self, change: PendingChange) -> tuple:
        return (
            change.task_id,
            change.operation.value,
            json.dumps(change.payload.to_dict()) if change.payload else None,
            to_iso_string(change.base_version),
            change.status.value,
            change.error,
            change.attempts,
            to_iso_string(change.queued_at),
        )

    def _row_to_change(self, row: sqlite3.Row) -> PendingChange:
        try:
            return PendingChange(
                change_id=row["change_id"],
                task_id=row["task_id"],
                operation=ChangeOperation(row["operation"]),
                payload=self._decode_task(row["payload"]) if row["payload"] else None,
                base_version=parse_iso(row["base_version"]),
                status=ChangeStatus(row["status"]),
                error=row["error"],
                attempts=row["attempts"],
                queued_at=parse_iso(row["queued_at"]) or now_utc(),
            )
        except ValueError as e:
            raise StorageError(f"Corrupt change record {row['change_id']}: {e}") from e

    # Sync cursor

    def get_cursor(self) -> Optional[str]:
        return self._get_state(CURSOR_KEY)

    def set_cursor(self, cursor: Optional[str]):
        with self.atomic():
            self._set_state(CURSOR_KEY, cursor)
            self._set_state(LAST_SYNCED_KEY, to_iso_string(now_utc()))

    def last_synced_at(self) -> Optional[datetime]:
        return parse_iso(self._get_state(LAST_SYNCED_KEY))

    def _get_state(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._execute("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_state(self, key: str, value: Optional[str]):
        # Bookkeeping only; does not notify task watchers
        with self.atomic():
            self._execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)", (key, value)
            )

    # Conflicts

    def save_conflict(self, conflict: SyncConflict):
        """Record a conflict; an unresolved record for the task is replaced."""
        with self.atomic():
            self._write(
                "DELETE FROM sync_conflicts WHERE task_id = ? AND winner IS NULL",
                (conflict.task_id,),
            )
            self._write(
                """
                INSERT INTO sync_conflicts (task_id, local, remote, winner, detected_at, resolved_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conflict.task_id,
                    json.dumps(conflict.local.to_dict()) if conflict.local else None,
                    json.dumps(conflict.remote.to_dict()) if conflict.remote else None,
                    conflict.winner.value if conflict.winner else None,
                    to_iso_string(conflict.detected_at),
                    to_iso_string(conflict.resolved_at),
                ),
            )
        self.logger.debug(f"Saved conflict for task {conflict.task_id}")

    def get_conflict(self, task_id: str) -> Optional[SyncConflict]:
        """Get the unresolved conflict for a task, if any."""
        with self._lock:
            row = self._execute(
                "SELECT * FROM sync_conflicts WHERE task_id = ? AND winner IS NULL",
                (task_id,),
            ).fetchone()
        return self._row_to_conflict(row) if row else None

    def list_conflicts(self, resolved: Optional[bool] = None) -> List[SyncConflict]:
        """List conflicts, newest first; filter by resolved status if given."""
        with self._lock:
            if resolved is None:
                rows = self._execute(
                    "SELECT * FROM sync_conflicts ORDER BY id DESC"
                ).fetchall()
            elif resolved:
                rows = self._execute(
                    "SELECT * FROM sync_conflicts WHERE winner IS NOT NULL ORDER BY id DESC"
                ).fetchall()
            else:
                rows = self._execute(
                    "SELECT * FROM sync_conflicts WHERE winner IS NULL ORDER BY id DESC"
                ).fetchall()
        return [self._row_to_conflict(row) for row in rows]

    def resolve_conflict_record(self, task_id: str, winner: ConflictWinner) -> bool:
        cursor = self._write(
            "UPDATE sync_conflicts SET winner = ?, resolved_at = ? "
            "WHERE task_id = ? AND winner IS NULL",
            (winner.value, to_iso_string(now_utc()), task_id),
        )
        return cursor.rowcount > 0

    def _row_to_conflict(self, row: sqlite3.Row) -> SyncConflict:
        return SyncConflict(
            task_id=row["task_id"],
            local=self._decode_task(row["local"]) if row["local"] else None,
            remote=self._decode_task(row["remote"]) if row["remote"] else None,
            winner=ConflictWinner(row["winner"]) if row["winner"] else None,
            detected_at=parse_iso(row["detected_at"]) or now_utc(),
            resolved_at=parse_iso(row["resolved_at"]),
        )

    # Utility Methods

    def stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            tasks = self._execute("SELECT COUNT(*) FROM tasks").fetchone()[0]
            pending = self._execute(
                "SELECT COUNT(*) FROM pending_changes WHERE status = ?",
                (ChangeStatus.PENDING.value,),
            ).fetchone()[0]
            failed = self._execute(
                "SELECT COUNT(*) FROM pending_changes WHERE status = ?",
                (ChangeStatus.FAILED.value,),
            ).fetchone()[0]
            unresolved = self._execute(
                "SELECT COUNT(*) FROM sync_conflicts WHERE winner IS NULL"
            ).fetchone()[0]
        return {
            "tasks": tasks,
            "pending_changes": pending,
            "failed_changes": failed,
            "unresolved_conflicts": unresolved,
            "cursor": self.get_cursor(),
            "last_synced_at": to_iso_string(self.last_synced_at()),
        }
