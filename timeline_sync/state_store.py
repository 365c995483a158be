from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from timeline_sync.models import TimelineDraft, serialize_datetime


def _utc_now() -> str:
    return serialize_datetime(datetime.now(timezone.utc)) or ""


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _timeline_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["is_all_day"] = bool(item.get("is_all_day"))
    item["raw_data"] = json.loads(item.pop("raw_data_json") or "null")
    return item


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS users (
            user_id TEXT PRIMARY KEY,
            institution_url TEXT NOT NULL,
            storage_state_json TEXT NOT NULL,
            connected_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS courses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            org_unit_id TEXT NOT NULL,
            course_name TEXT NOT NULL,
            course_code TEXT,
            start_date TEXT,
            end_date TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            raw_data_json TEXT,
            last_synced_at TEXT NOT NULL,
            UNIQUE (user_id, org_unit_id)
        );

        CREATE TABLE IF NOT EXISTS timeline_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            course_id INTEGER,
            org_unit_id TEXT NOT NULL,
            source_type TEXT NOT NULL,
            source_id TEXT NOT NULL,
            date_kind TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            start_at TEXT NOT NULL,
            end_at TEXT,
            is_all_day INTEGER NOT NULL DEFAULT 0,
            associated_entity_type TEXT,
            associated_entity_id TEXT,
            view_url TEXT,
            raw_data_json TEXT,
            last_synced_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, source_type, source_id, date_kind)
        );

        CREATE INDEX IF NOT EXISTS idx_timeline_events_scope
            ON timeline_events (user_id, org_unit_id, start_at);

        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            synced_at TEXT NOT NULL,
            sync_type TEXT NOT NULL,
            status TEXT NOT NULL,
            items_synced INTEGER NOT NULL,
            error_message TEXT,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            outcome_json TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            scope TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def upsert_user_connection(self, *, user_id: str, institution_url: str, storage_state: dict[str, Any]) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users(user_id, institution_url, storage_state_json, connected_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        institution_url = excluded.institution_url,
                        storage_state_json = excluded.storage_state_json,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, institution_url, json.dumps(storage_state, ensure_ascii=False), now, now),
                )
                conn.commit()

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT user_id, institution_url, storage_state_json, connected_at, updated_at
                    FROM users
                    WHERE user_id = ?
                    """,
                    (user_id,),
                ).fetchone()
        if row is None:
            return None
        item = dict(row)
        try:
            item["storage_state"] = json.loads(item.pop("storage_state_json") or "null")
        except ValueError:
            item["storage_state"] = None
        return item

    def replace_courses(self, *, user_id: str, courses: list[dict[str, Any]]) -> int:
        """Upsert the user's course offerings and drop any not in ``courses``."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                for course in courses:
                    conn.execute(
                        """
                        INSERT INTO courses(
                            user_id, org_unit_id, course_name, course_code, start_date, end_date,
                            is_active, raw_data_json, last_synced_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, org_unit_id) DO UPDATE SET
                            course_name = excluded.course_name,
                            course_code = excluded.course_code,
                            start_date = excluded.start_date,
                            end_date = excluded.end_date,
                            is_active = excluded.is_active,
                            raw_data_json = excluded.raw_data_json,
                            last_synced_at = excluded.last_synced_at
                        """,
                        (
                            user_id,
                            str(course["org_unit_id"]),
                            str(course.get("course_name") or ""),
                            course.get("course_code"),
                            serialize_datetime(course.get("start_date")),
                            serialize_datetime(course.get("end_date")),
                            1 if course.get("is_active", True) else 0,
                            json.dumps(course.get("raw_data"), ensure_ascii=False, default=str),
                            now,
                        ),
                    )
                kept = [str(course["org_unit_id"]) for course in courses]
                if kept:
                    conn.execute(
                        f"DELETE FROM courses WHERE user_id = ? AND org_unit_id NOT IN ({_placeholders(len(kept))})",
                        (user_id, *kept),
                    )
                conn.commit()
        return len(courses)

    def list_active_courses(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, org_unit_id, course_name, course_code
                    FROM courses
                    WHERE user_id = ? AND is_active = 1
                    ORDER BY id
                    """,
                    (user_id,),
                ).fetchall()
        return [dict(row) for row in rows]

    def upsert_timeline_event(
        self,
        *,
        user_id: str,
        draft: TimelineDraft,
        course_id: int | None,
        synced_at: datetime,
    ) -> None:
        synced_text = serialize_datetime(synced_at)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO timeline_events(
                        user_id, course_id, org_unit_id, source_type, source_id, date_kind, title,
                        description, start_at, end_at, is_all_day, associated_entity_type,
                        associated_entity_id, view_url, raw_data_json, last_synced_at, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, source_type, source_id, date_kind) DO UPDATE SET
                        course_id = excluded.course_id,
                        org_unit_id = excluded.org_unit_id,
                        title = excluded.title,
                        description = excluded.description,
                        start_at = excluded.start_at,
                        end_at = excluded.end_at,
                        is_all_day = excluded.is_all_day,
                        associated_entity_type = excluded.associated_entity_type,
                        associated_entity_id = excluded.associated_entity_id,
                        view_url = excluded.view_url,
                        raw_data_json = excluded.raw_data_json,
                        last_synced_at = excluded.last_synced_at
                    """,
                    (
                        user_id,
                        course_id,
                        draft.org_unit_id,
                        draft.source_type,
                        draft.source_id,
                        draft.date_kind,
                        draft.title,
                        draft.description,
                        serialize_datetime(draft.start_at),
                        serialize_datetime(draft.end_at),
                        1 if draft.is_all_day else 0,
                        draft.associated_entity_type,
                        draft.associated_entity_id,
                        draft.view_url,
                        json.dumps(draft.raw_data, ensure_ascii=False, default=str),
                        synced_text,
                        synced_text,
                    ),
                )
                conn.commit()

    def list_timeline_keys_in_scope(
        self,
        *,
        user_id: str,
        org_unit_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
    ) -> list[dict[str, Any]]:
        scoped = list(dict.fromkeys(org_unit_ids))
        if not scoped:
            return []
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id, source_type, source_id, date_kind
                    FROM timeline_events
                    WHERE user_id = ?
                      AND org_unit_id IN ({_placeholders(len(scoped))})
                      AND start_at >= ?
                      AND start_at <= ?
                    """,
                    (user_id, *scoped, serialize_datetime(window_start), serialize_datetime(window_end)),
                ).fetchall()
        return [dict(row) for row in rows]

    def delete_timeline_events(self, event_ids: list[int]) -> int:
        if not event_ids:
            return 0
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"DELETE FROM timeline_events WHERE id IN ({_placeholders(len(event_ids))})",
                    tuple(int(event_id) for event_id in event_ids),
                )
                conn.commit()
                return int(cursor.rowcount)

    def list_timeline_events(
        self,
        *,
        user_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        source_types: list[str] | None = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if start is not None:
            clauses.append("start_at >= ?")
            params.append(serialize_datetime(start))
        if end is not None:
            clauses.append("start_at <= ?")
            params.append(serialize_datetime(end))
        if source_types:
            clauses.append(f"source_type IN ({_placeholders(len(source_types))})")
            params.extend(source_types)
        params.append(max(1, int(limit)))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT *
                    FROM timeline_events
                    WHERE {' AND '.join(clauses)}
                    ORDER BY start_at, id
                    LIMIT ?
                    """,
                    tuple(params),
                ).fetchall()
        return [_timeline_row(row) for row in rows]

    def get_timeline_event(
        self, *, user_id: str, source_type: str, source_id: str, date_kind: str
    ) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT *
                    FROM timeline_events
                    WHERE user_id = ? AND source_type = ? AND source_id = ? AND date_kind = ?
                    """,
                    (user_id, source_type, source_id, date_kind),
                ).fetchone()
        return _timeline_row(row) if row else None

    def record_sync_log(
        self,
        *,
        user_id: str,
        sync_type: str,
        status: str,
        items_synced: int,
        error_message: str = "",
        duration_ms: int = 0,
        outcome: dict[str, Any] | None = None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_logs(
                        user_id, synced_at, sync_type, status, items_synced, error_message, duration_ms, outcome_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        _utc_now(),
                        sync_type,
                        status,
                        int(items_synced),
                        error_message or None,
                        int(duration_ms),
                        json.dumps(outcome, ensure_ascii=False) if outcome is not None else None,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_logs(self, user_id: str, limit: int = 10) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, user_id, synced_at, sync_type, status, items_synced, error_message,
                           duration_ms, outcome_json
                    FROM sync_logs
                    WHERE user_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (user_id, max(1, limit)),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["outcome"] = json.loads(item.pop("outcome_json") or "null")
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        user_id: str,
        scope: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, user_id, scope, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), user_id, scope, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if run_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, scope, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, user_id, scope, action, details_json
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
