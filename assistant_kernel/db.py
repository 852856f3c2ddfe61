from __future__ import annotations

import json
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterator

from assistant_kernel.models import (
    TEXT_LIKE_FILE_TYPES,
    Record,
    RecordFilter,
    RunLog,
    ScheduledTask,
    Skill,
    Tag,
    RelayInstructionAction,
    skill_action_from_dict,
    skill_action_to_dict,
    trigger_from_dict,
    trigger_to_dict,
)

RECORD_APPEND_SEPARATOR = "\n\n---\n\n"
PREVIEW_LENGTH = 120
# Daily records written by the kernel itself; never a target for date references.
KERNEL_RECORD_PREFIX = "assistant-"


class ReferenceNotFoundError(RuntimeError):
    """Raised when a record, task or skill reference resolves to nothing."""


class ContentTypeMismatchError(RuntimeError):
    """Raised when a text operation targets a record that is not text-like."""


class KernelDB:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_parent_dir()
        self._init_schema()

    def _ensure_parent_dir(self) -> None:
        path = Path(self.db_path)
        if path.parent != Path("."):
            path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    file_type TEXT NOT NULL DEFAULT 'text',
                    text TEXT NOT NULL DEFAULT '',
                    preview TEXT NOT NULL DEFAULT '',
                    is_pinned INTEGER NOT NULL DEFAULT 0,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tags (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS record_tags (
                    record_id TEXT NOT NULL,
                    tag_id TEXT NOT NULL,
                    PRIMARY KEY (record_id, tag_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    trigger_json TEXT NOT NULL,
                    action_json TEXT NOT NULL,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    last_run_at TEXT,
                    next_run_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS task_run_logs (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    status TEXT NOT NULL,
                    output TEXT NOT NULL DEFAULT '',
                    error TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS skills (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    trigger_hint TEXT NOT NULL DEFAULT '',
                    action_json TEXT NOT NULL,
                    is_enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_confirmations (
                    token TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )

    # Records

    def create_text_record(
        self,
        filename: str,
        text: str,
        *,
        tag_ids: tuple[str, ...] | list[str] = (),
        file_type: str = "text",
    ) -> str:
        record_id = str(uuid.uuid4()).upper()
        timestamp = _now_precise()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO records (id, filename, file_type, text, preview, is_pinned, is_archived, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?)
                """,
                (record_id, filename, file_type, text, _preview(text), timestamp, timestamp),
            )
            for tag_id in tag_ids:
                conn.execute(
                    "INSERT OR IGNORE INTO record_tags (record_id, tag_id) VALUES (?, ?)",
                    (record_id, tag_id),
                )
        return record_id

    def get_record(self, record_id: str) -> Record | None:
        normalized = record_id.strip().upper()
        if not normalized:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE id = ?",
                (normalized,),
            ).fetchone()
            if row is None:
                return None
            return self._record_from_row(conn, row)

    def fetch_records(self, record_filter: RecordFilter | None = None) -> list[Record]:
        record_filter = record_filter or RecordFilter()
        clauses: list[str] = []
        values: list[object] = []
        if not record_filter.show_archived:
            clauses.append("r.is_archived = 0")
        if record_filter.only_pinned:
            clauses.append("r.is_pinned = 1")
        if record_filter.file_types:
            placeholders = ", ".join("?" for _ in record_filter.file_types)
            clauses.append(f"r.file_type IN ({placeholders})")
            values.extend(record_filter.file_types)
        for token in record_filter.search_text.split():
            clauses.append("(r.filename LIKE ? OR r.text LIKE ?)")
            values.extend([f"%{token}%", f"%{token}%"])
        if record_filter.tag_ids:
            placeholders = ", ".join("?" for _ in record_filter.tag_ids)
            if record_filter.tag_match_any:
                clauses.append(
                    f"r.id IN (SELECT record_id FROM record_tags WHERE tag_id IN ({placeholders}))"
                )
            else:
                clauses.append(
                    "r.id IN (SELECT record_id FROM record_tags "
                    f"WHERE tag_id IN ({placeholders}) GROUP BY record_id HAVING COUNT(DISTINCT tag_id) = ?)"
                )
            values.extend(record_filter.tag_ids)
            if not record_filter.tag_match_any:
                values.append(len(set(record_filter.tag_ids)))

        sql = "SELECT r.* FROM records r"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY r.is_pinned DESC, r.updated_at DESC, r.rowid DESC"
        if record_filter.limit is not None:
            sql += " LIMIT ?"
            values.append(max(0, record_filter.limit))
        with self._connect() as conn:
            rows = conn.execute(sql, values).fetchall()
            return [self._record_from_row(conn, row) for row in rows]

    def search_records(self, query: str, limit: int = 10) -> list[Record]:
        return self.fetch_records(RecordFilter(search_text=query, limit=limit))

    def load_text(self, record_id: str, max_bytes: int | None = None) -> str:
        record = self._require_text_record(record_id)
        if max_bytes is None:
            return record.text
        encoded = record.text.encode("utf-8")
        if len(encoded) <= max_bytes:
            return record.text
        return encoded[:max_bytes].decode("utf-8", errors="ignore")

    def update_record_text(self, record_id: str, text: str) -> Record:
        record = self._require_text_record(record_id)
        return self._write_text(record.id, text)

    def append_record_text(self, record_id: str, text: str) -> Record:
        record = self._require_text_record(record_id)
        if record.text.strip():
            merged = record.text.rstrip() + RECORD_APPEND_SEPARATOR + text
        else:
            merged = text
        return self._write_text(record.id, merged)

    def delete_record(self, record_id: str) -> bool:
        normalized = record_id.strip().upper()
        with self._connect() as conn:
            conn.execute("DELETE FROM record_tags WHERE record_id = ?", (normalized,))
            cur = conn.execute("DELETE FROM records WHERE id = ?", (normalized,))
            return cur.rowcount > 0

    def find_text_record_for_date(self, target: date) -> Record | None:
        dashed = target.strftime("%Y-%m-%d")
        compact = target.strftime("%Y%m%d")
        candidates = self.fetch_records(RecordFilter(file_types=TEXT_LIKE_FILE_TYPES))
        for record in candidates:
            if record.filename.startswith(KERNEL_RECORD_PREFIX):
                continue
            if dashed in record.filename or compact in record.filename:
                return record
        return None

    def find_records_by_filename(self, filename: str) -> list[Record]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM records
                WHERE lower(filename) = lower(?) AND is_archived = 0
                ORDER BY updated_at DESC, rowid DESC
                """,
                (filename.strip(),),
            ).fetchall()
            return [self._record_from_row(conn, row) for row in rows]

    def _require_text_record(self, record_id: str) -> Record:
        record = self.get_record(record_id)
        if record is None:
            raise ReferenceNotFoundError(f"记录不存在：{record_id}")
        if not record.is_text_like:
            raise ContentTypeMismatchError(f"记录不是文本类型：{record.id} ({record.file_type})")
        return record

    def _write_text(self, record_id: str, text: str) -> Record:
        with self._connect() as conn:
            conn.execute(
                "UPDATE records SET text = ?, preview = ?, updated_at = ? WHERE id = ?",
                (text, _preview(text), _now_precise(), record_id),
            )
        updated = self.get_record(record_id)
        if updated is None:
            raise ReferenceNotFoundError(f"记录不存在：{record_id}")
        return updated

    def _record_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Record:
        tag_rows = conn.execute(
            "SELECT tag_id FROM record_tags WHERE record_id = ? ORDER BY tag_id ASC",
            (row["id"],),
        ).fetchall()
        return Record(
            id=row["id"],
            filename=row["filename"],
            file_type=row["file_type"],
            text=row["text"] or "",
            preview=row["preview"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            tags=tuple(tag_row["tag_id"] for tag_row in tag_rows),
            is_pinned=bool(row["is_pinned"]),
            is_archived=bool(row["is_archived"]),
        )

    # Tags

    def create_tag(self, name: str) -> Tag:
        normalized = name.strip()
        if not normalized:
            raise ValueError("tag name must not be empty")
        tag = Tag(id=str(uuid.uuid4()).upper(), name=normalized, created_at=_now_iso())
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO tags (id, name, created_at) VALUES (?, ?, ?)",
                (tag.id, tag.name, tag.created_at),
            )
        return self.find_tag(normalized) or tag

    def ensure_tag(self, name: str, aliases: tuple[str, ...] = ()) -> Tag:
        existing = self.find_tag(name, aliases)
        if existing is not None:
            return existing
        return self.create_tag(name)

    def find_tag(self, name: str, aliases: tuple[str, ...] = ()) -> Tag | None:
        wanted = {_normalize_tag_name(item) for item in (name, *aliases)}
        wanted.discard("")
        for tag in self.list_tags():
            if _normalize_tag_name(tag.name) in wanted:
                return tag
        return None

    def list_tags(self) -> list[Tag]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, name, created_at FROM tags ORDER BY created_at ASC, name ASC").fetchall()
        return [Tag(id=row["id"], name=row["name"], created_at=row["created_at"]) for row in rows]

    # Tasks

    def save_task(self, task: ScheduledTask) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (id, name, description, trigger_json, action_json, is_enabled, last_run_at, next_run_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    trigger_json = excluded.trigger_json,
                    action_json = excluded.action_json,
                    is_enabled = excluded.is_enabled,
                    last_run_at = excluded.last_run_at,
                    next_run_at = excluded.next_run_at
                """,
                (
                    task.id,
                    task.name,
                    task.description,
                    json.dumps(trigger_to_dict(task.trigger), ensure_ascii=False),
                    json.dumps(task.action.to_dict(), ensure_ascii=False),
                    1 if task.is_enabled else 0,
                    _format_dt(task.last_run_at),
                    _format_dt(task.next_run_at),
                    task.created_at or _now_iso(),
                ),
            )

    def get_task(self, task_id: str) -> ScheduledTask | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id.strip().upper(),)).fetchone()
        if row is None:
            return None
        return _task_from_row(row)

    def list_tasks(self, *, enabled_only: bool = False) -> list[ScheduledTask]:
        sql = "SELECT * FROM tasks"
        if enabled_only:
            sql += " WHERE is_enabled = 1"
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [_task_from_row(row) for row in rows]

    def update_task_schedule(
        self,
        task_id: str,
        *,
        last_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE tasks SET last_run_at = ?, next_run_at = ? WHERE id = ?",
                (_format_dt(last_run_at), _format_dt(next_run_at), task_id),
            )
            return cur.rowcount > 0

    def set_task_next_run(self, task_id: str, next_run_at: datetime | None) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE tasks SET next_run_at = ? WHERE id = ?",
                (_format_dt(next_run_at), task_id),
            )
            return cur.rowcount > 0

    # Run logs

    def insert_run_log(self, log: RunLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task_run_logs (id, task_id, started_at, finished_at, status, output, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.id,
                    log.task_id,
                    _format_dt(log.started_at),
                    _format_dt(log.finished_at),
                    log.status,
                    log.output,
                    log.error,
                ),
            )

    def update_run_log(self, log: RunLog) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE task_run_logs
                SET finished_at = ?, status = ?, output = ?, error = ?
                WHERE id = ?
                """,
                (_format_dt(log.finished_at), log.status, log.output, log.error, log.id),
            )
            return cur.rowcount > 0

    def list_run_logs(self, task_id: str | None = None, limit: int = 20) -> list[RunLog]:
        with self._connect() as conn:
            if task_id is None:
                rows = conn.execute(
                    "SELECT * FROM task_run_logs ORDER BY started_at DESC, rowid DESC LIMIT ?",
                    (max(1, limit),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM task_run_logs
                    WHERE task_id = ?
                    ORDER BY started_at DESC, rowid DESC
                    LIMIT ?
                    """,
                    (task_id, max(1, limit)),
                ).fetchall()
        return [
            RunLog(
                id=row["id"],
                task_id=row["task_id"],
                started_at=_parse_dt(row["started_at"]) or datetime.min,
                finished_at=_parse_dt(row["finished_at"]),
                status=row["status"],
                output=row["output"] or "",
                error=row["error"],
            )
            for row in rows
        ]

    # Skills

    def save_skill(self, skill: Skill) -> None:
        timestamp = _now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO skills (id, name, description, trigger_hint, action_json, is_enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    trigger_hint = excluded.trigger_hint,
                    action_json = excluded.action_json,
                    is_enabled = excluded.is_enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    skill.id,
                    skill.name,
                    skill.description,
                    skill.trigger_hint,
                    json.dumps(skill_action_to_dict(skill.action), ensure_ascii=False),
                    1 if skill.is_enabled else 0,
                    skill.created_at or timestamp,
                    timestamp,
                ),
            )

    def list_skills(self, *, enabled_only: bool = False) -> list[Skill]:
        sql = "SELECT * FROM skills"
        if enabled_only:
            sql += " WHERE is_enabled = 1"
        sql += " ORDER BY name ASC"
        with self._connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [
            Skill(
                id=row["id"],
                name=row["name"],
                description=row["description"] or "",
                trigger_hint=row["trigger_hint"] or "",
                action=skill_action_from_dict(json.loads(row["action_json"])),
                is_enabled=bool(row["is_enabled"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def fetch_enabled_skills(self) -> list[Skill]:
        return self.list_skills(enabled_only=True)

    # Pending confirmations

    def save_pending_confirmation(self, token: str, payload_json: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_confirmations (token, payload_json, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(token) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    expires_at = excluded.expires_at
                """,
                (token, payload_json, _format_dt(expires_at)),
            )

    def pop_pending_confirmation(self, token: str) -> str | None:
        """Claim and delete a pending confirmation; only the connection whose DELETE hits the row gets it."""
        with self._connect() as conn:
            # Take the write lock before reading so another process cannot claim the same row in between.
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT payload_json FROM pending_confirmations WHERE token = ?",
                (token,),
            ).fetchone()
            if row is None:
                return None
            cur = conn.execute("DELETE FROM pending_confirmations WHERE token = ?", (token,))
            if cur.rowcount != 1:
                return None
            return str(row["payload_json"])

    def delete_expired_confirmations(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM pending_confirmations WHERE expires_at <= ?",
                (_format_dt(now),),
            )
            return int(cur.rowcount)

    def count_pending_confirmations(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM pending_confirmations").fetchone()
        return int(row["total"])


def _task_from_row(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        trigger=trigger_from_dict(json.loads(row["trigger_json"])),
        action=RelayInstructionAction.from_dict(json.loads(row["action_json"])),
        is_enabled=bool(row["is_enabled"]),
        last_run_at=_parse_dt(row["last_run_at"]),
        next_run_at=_parse_dt(row["next_run_at"]),
        created_at=row["created_at"],
    )


def _preview(text: str) -> str:
    collapsed = re.sub(r"\s+", " ", text).strip()
    return collapsed[:PREVIEW_LENGTH]


def _normalize_tag_name(name: str) -> str:
    return " ".join(name.strip().lower().split())


def _format_dt(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(sep=" ", timespec="seconds")


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def _now_precise() -> str:
    return datetime.now().isoformat(sep=" ", timespec="microseconds")
