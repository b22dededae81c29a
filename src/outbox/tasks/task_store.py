# src/outbox/tasks/task_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..core.ports import RecordSet, Unsubscribe
from .task_models import TaskRecord, TaskStatus

logger = logging.getLogger(__name__)

_TERMINAL = (TaskStatus.COMPLETE.value, TaskStatus.FAILED.value)


class SQLiteTaskStore:
    """
    SQLite-backed persisted task source.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Change notifications carry the full record set (raw row mappings, so that
    malformed rows are rejected by the engine, not here). Notifications are
    serialized: a mutation made while subscribers are being notified is folded
    into one more delivery of the latest set.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

        self._subscribers: list[Callable[[RecordSet], None]] = []
        self._notify_lock = threading.Lock()
        self._notifying = False
        self._dirty = False

        try:
            total = self.count_tasks()
        except Exception:
            total = -1
        logger.info("SQLiteTaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        self._subscribers.clear()

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'queued',
                    depends_on TEXT NOT NULL DEFAULT '[]',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT
                )
                """
            )

            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("SQLiteTaskStore migration: added column %s", name)

            add_col("depends_on", "TEXT NOT NULL DEFAULT '[]'")
            add_col("updated_at", "REAL NOT NULL DEFAULT 0")
            add_col("attempts", "INTEGER NOT NULL DEFAULT 0")
            add_col("error", "TEXT")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_created ON tasks(status, created_at)")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _decode_json(s: str | None, default: Any) -> Any:
        if s is None:
            return default
        try:
            return json.loads(s)
        except ValueError:
            # Keep the raw text; the engine will reject the record and log it.
            return s

    def _row_to_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "kind": row["kind"],
            "payload": self._decode_json(row["payload"], {}),
            "status": row["status"],
            "depends_on": self._decode_json(row["depends_on"], []),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "attempts": row["attempts"],
            "error": row["error"],
        }

    # ---- subscription ----

    def subscribe(self, on_change: Callable[[RecordSet], None]) -> Unsubscribe:
        self._subscribers.append(on_change)
        on_change(self.list_records())

        def _unsubscribe() -> None:
            if on_change in self._subscribers:
                self._subscribers.remove(on_change)

        return _unsubscribe

    def _changed(self) -> None:
        with self._notify_lock:
            self._dirty = True
            if self._notifying:
                return
            self._notifying = True

        drained = False
        try:
            while True:
                with self._notify_lock:
                    if not self._dirty:
                        self._notifying = False
                        drained = True
                        return
                    self._dirty = False
                records = self.list_records()
                for cb in list(self._subscribers):
                    try:
                        cb(records)
                    except Exception:
                        logger.exception("Task store subscriber failed")
        finally:
            if not drained:
                with self._notify_lock:
                    self._notifying = False

    # ---- public API ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)
        finally:
            conn.close()

    def list_records(self) -> list[dict[str, Any]]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM tasks ORDER BY created_at ASC, id ASC").fetchall()
            return [self._row_to_dict(r) for r in rows]
        finally:
            conn.close()

    def get(self, task_id: str) -> TaskRecord | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        finally:
            conn.close()
        return TaskRecord.from_dict(self._row_to_dict(row)) if row else None

    def upsert(self, record: TaskRecord) -> None:
        """
        Insert or replace a record (last writer wins).

        A terminal record is never moved back to a non-terminal status.
        """
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            row = cur.execute("SELECT status FROM tasks WHERE id = ?", (record.id,)).fetchone()
            if row is not None and row["status"] in _TERMINAL and not record.is_terminal:
                logger.warning(
                    "Refusing to move task %s from %s back to %s", record.id, row["status"], record.status.value
                )
                return

            d = record.to_dict()
            cur.execute(
                """
                INSERT INTO tasks(id, kind, payload, status, depends_on, created_at, updated_at, attempts, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    kind = excluded.kind,
                    payload = excluded.payload,
                    status = excluded.status,
                    depends_on = excluded.depends_on,
                    updated_at = excluded.updated_at,
                    attempts = excluded.attempts,
                    error = excluded.error
                """,
                (
                    d["id"],
                    d["kind"],
                    json.dumps(d["payload"], ensure_ascii=False),
                    d["status"],
                    json.dumps(d["depends_on"]),
                    d["created_at"],
                    d["updated_at"],
                    d["attempts"],
                    d["error"],
                ),
            )
            conn.commit()
            logger.debug("Task upserted id=%s status=%s", record.id, record.status.value)
        finally:
            conn.close()
        self._changed()

    def delete(self, task_id: str) -> None:
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            conn.commit()
            deleted = cur.rowcount
        finally:
            conn.close()
        logger.debug("Task delete id=%s rows=%s", task_id, deleted)
        if deleted:
            self._changed()

    def prune_completed(self, keep: int) -> int:
        """
        Delete terminal records beyond the `keep` most recently updated ones.

        A terminal record still listed in the depends_on of an unfinished task is
        kept, so its outcome stays visible to that dependent.
        """
        keep = max(0, int(keep))
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            referenced: set[str] = set()
            for row in cur.execute(
                "SELECT depends_on FROM tasks WHERE status NOT IN (?, ?)", _TERMINAL
            ).fetchall():
                deps = self._decode_json(row["depends_on"], [])
                if isinstance(deps, list):
                    referenced.update(d for d in deps if isinstance(d, str))

            rows = cur.execute(
                "SELECT id FROM tasks WHERE status IN (?, ?) ORDER BY updated_at DESC, id DESC",
                _TERMINAL,
            ).fetchall()
            stale = [(row["id"],) for row in rows[keep:] if row["id"] not in referenced]
            cur.executemany("DELETE FROM tasks WHERE id = ?", stale)
            conn.commit()
            removed = len(stale)
        finally:
            conn.close()
        if removed:
            logger.info("Pruned %d completed tasks (keep=%d)", removed, keep)
            self._changed()
        return removed
