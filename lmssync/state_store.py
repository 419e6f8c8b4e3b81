from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


ENTITY_TABLES = {
    "subject": "subjects",
    "task": "tasks",
    "note": "notes",
}

ENTITY_COLUMNS = {
    "subject": ("name", "type", "color"),
    "task": (
        "subject_id",
        "title",
        "description",
        "due_date",
        "due_date_estimated",
        "task_type",
        "status",
        "completed_at",
    ),
    "note": ("subject_id", "title", "content", "note_type"),
}


def _table_for(kind: str) -> str:
    try:
        return ENTITY_TABLES[kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind}") from None


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            lms_cookie TEXT,
            last_sync_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS subjects (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            external_id TEXT,
            name TEXT NOT NULL,
            type TEXT NOT NULL,
            color TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            external_id TEXT,
            subject_id TEXT REFERENCES subjects(id) ON DELETE SET NULL,
            title TEXT NOT NULL,
            description TEXT,
            due_date TEXT,
            due_date_estimated INTEGER NOT NULL DEFAULT 0,
            task_type TEXT NOT NULL,
            status TEXT NOT NULL,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            external_id TEXT,
            subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            note_type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, external_id)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            synced INTEGER NOT NULL,
            errors INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            entity TEXT NOT NULL,
            external_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # users / credential

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, lms_cookie, last_sync_at, created_at, updated_at
                    FROM users
                    WHERE id = ?
                    """,
                    (str(user_id),),
                ).fetchone()
        return dict(row) if row else None

    def ensure_user(self, user_id: str) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users(id, lms_cookie, last_sync_at, created_at, updated_at)
                    VALUES (?, NULL, NULL, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    (str(user_id), now, now),
                )
                conn.commit()

    def set_credential(self, user_id: str, cookie: str) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users(id, lms_cookie, last_sync_at, created_at, updated_at)
                    VALUES (?, ?, NULL, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        lms_cookie = excluded.lms_cookie,
                        updated_at = excluded.updated_at
                    """,
                    (str(user_id), cookie, now, now),
                )
                conn.commit()

    def clear_credential(self, user_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE users
                    SET lms_cookie = NULL, last_sync_at = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (_utc_now(), str(user_id)),
                )
                conn.commit()
                return cursor.rowcount > 0

    def touch_last_sync(self, user_id: str, synced_at: str | None = None) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE users SET last_sync_at = ?, updated_at = ? WHERE id = ?",
                    (synced_at or now, now, str(user_id)),
                )
                conn.commit()

    # synced entities

    def find_by_external_id(self, kind: str, user_id: str, external_id: str) -> dict[str, Any] | None:
        table = _table_for(kind)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE user_id = ? AND external_id = ? LIMIT 1",  # nosec B608
                    (str(user_id), str(external_id)),
                ).fetchone()
        return dict(row) if row else None

    def get_entity(self, kind: str, entity_id: str) -> dict[str, Any] | None:
        table = _table_for(kind)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE id = ?",  # nosec B608
                    (str(entity_id),),
                ).fetchone()
        return dict(row) if row else None

    def insert_entity(
        self,
        kind: str,
        *,
        user_id: str,
        external_id: str | None,
        values: dict[str, Any],
    ) -> dict[str, Any]:
        table = _table_for(kind)
        columns = [column for column in ENTITY_COLUMNS[kind] if column in values]
        now = _utc_now()
        entity_id = uuid.uuid4().hex
        names = ["id", "user_id", "external_id", *columns, "created_at", "updated_at"]
        params = [entity_id, str(user_id), external_id, *(values[c] for c in columns), now, now]
        placeholders = ", ".join("?" for _ in names)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO {table}({', '.join(names)}) VALUES ({placeholders})",  # nosec B608
                    params,
                )
                conn.commit()
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE id = ?",  # nosec B608
                    (entity_id,),
                ).fetchone()
        return dict(row)

    def update_entity(self, kind: str, entity_id: str, values: dict[str, Any]) -> dict[str, Any] | None:
        table = _table_for(kind)
        columns = [column for column in ENTITY_COLUMNS[kind] if column in values]
        assignments = [f"{column} = ?" for column in columns] + ["updated_at = ?"]
        params = [values[c] for c in columns] + [_utc_now(), str(entity_id)]
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",  # nosec B608
                    params,
                )
                conn.commit()
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE id = ?",  # nosec B608
                    (str(entity_id),),
                ).fetchone()
        return dict(row) if row else None

    def list_entities(self, kind: str, user_id: str) -> list[dict[str, Any]]:
        table = _table_for(kind)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE user_id = ? ORDER BY created_at, id",  # nosec B608
                    (str(user_id),),
                ).fetchall()
        return [dict(row) for row in rows]

    def delete_entity(self, kind: str, entity_id: str) -> bool:
        table = _table_for(kind)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE id = ?",  # nosec B608
                    (str(entity_id),),
                )
                conn.commit()
                return cursor.rowcount > 0

    # sync runs / audit

    def start_sync_run(self, *, user_id: str, trigger: str, message: str = "running") -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(user_id, run_at, trigger, status, message, duration_ms, synced, errors)
                    VALUES (?, ?, ?, 'running', ?, 0, 0, 0)
                    """,
                    (str(user_id), _utc_now(), trigger, message),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        synced: int,
        errors: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, synced = ?, errors = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(synced), int(errors), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        query = """
            SELECT id, user_id, run_at, trigger, status, message, duration_ms, synced, errors
            FROM sync_runs
        """
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(str(user_id))
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, limit))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        user_id: str,
        entity: str,
        external_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, user_id, entity, external_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        _utc_now(),
                        str(user_id),
                        entity,
                        str(external_id),
                        action,
                        json.dumps(details, ensure_ascii=False, default=str),
                    ),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, entity, external_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, entity, external_id, action, details_json
                        FROM audit_events
                        WHERE run_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (int(run_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
