"""SQLite persistence for chatgate: sessions, permission audit, channel events.

- sessions: one row per chat channel (engine session id, plan gate state)
- permission_requests: audit trail of every authorization request and its outcome
- events: per-channel event log (INTEGER id + per-channel seq) for SSE replay
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Thread-safe SQLite DAO."""

    def __init__(self, db_path: str | Path):
        self._db_path = str(db_path)
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._ensure_schema()

    # ── Connection ────────────────────────────────────────────────

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    channel_id           TEXT PRIMARY KEY,
                    engine_session_id    TEXT,
                    working_dir          TEXT NOT NULL,
                    plan_state_json      TEXT NOT NULL DEFAULT '{}',
                    pending_injection    TEXT,
                    last_activity        REAL,
                    last_message_preview TEXT,
                    saved_at             TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS permission_requests (
                    id          TEXT PRIMARY KEY,
                    channel_id  TEXT NOT NULL,
                    tool_name   TEXT NOT NULL,
                    input_json  TEXT NOT NULL DEFAULT '{}',
                    rendered    TEXT NOT NULL DEFAULT '',
                    status      TEXT NOT NULL DEFAULT 'pending',
                    response    TEXT,
                    created_at  TEXT NOT NULL,
                    updated_at  TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_perm_channel ON permission_requests(channel_id, created_at);

                CREATE TABLE IF NOT EXISTS events (
                    id           INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel_id   TEXT NOT NULL,
                    seq          INTEGER NOT NULL,
                    ts           REAL NOT NULL,
                    type         TEXT NOT NULL,
                    payload_json TEXT NOT NULL DEFAULT '{}'
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_events_channel_seq ON events(channel_id, seq);
                """
            )
            conn.commit()

    # ── Sessions ──────────────────────────────────────────────────

    def save_session(self, rec: dict[str, Any]) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO sessions (channel_id, engine_session_id, working_dir, plan_state_json, "
                "pending_injection, last_activity, last_message_preview, saved_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(channel_id) DO UPDATE SET "
                "engine_session_id = excluded.engine_session_id, working_dir = excluded.working_dir, "
                "plan_state_json = excluded.plan_state_json, pending_injection = excluded.pending_injection, "
                "last_activity = excluded.last_activity, last_message_preview = excluded.last_message_preview, "
                "saved_at = excluded.saved_at",
                (
                    str(rec["channel_id"]),
                    rec.get("engine_session_id"),
                    str(rec.get("working_dir") or "."),
                    json.dumps(rec.get("plan_state") or {}, ensure_ascii=False),
                    rec.get("pending_injection"),
                    rec.get("last_activity"),
                    rec.get("last_message_preview"),
                    _now_iso(),
                ),
            )
            conn.commit()

    @staticmethod
    def _session_row(row: sqlite3.Row) -> dict[str, Any]:
        d = dict(row)
        try:
            d["plan_state"] = json.loads(d.pop("plan_state_json", "{}"))
        except (json.JSONDecodeError, TypeError):
            d["plan_state"] = {}
        return d

    def load_session(self, channel_id: str) -> dict[str, Any] | None:
        with self._lock:
            conn = self._get_conn()
            row = conn.execute("SELECT * FROM sessions WHERE channel_id = ?", (channel_id,)).fetchone()
            return self._session_row(row) if row else None

    def list_sessions(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            conn = self._get_conn()
            rows = conn.execute(
                "SELECT * FROM sessions ORDER BY COALESCE(last_activity, 0) DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [self._session_row(r) for r in rows]

    # ── Permission audit ──────────────────────────────────────────

    def record_permission_request(self, rec: dict[str, Any]) -> None:
        with self._lock:
            now = _now_iso()
            conn = self._get_conn()
            conn.execute(
                "INSERT OR REPLACE INTO permission_requests "
                "(id, channel_id, tool_name, input_json, rendered, status, response, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    str(rec["request_id"]),
                    str(rec["channel_id"]),
                    str(rec["tool_name"]),
                    str(rec.get("tool_input") or "{}"),
                    str(rec.get("rendered") or ""),
                    str(rec.get("status") or "pending"),
                    rec.get("response"),
                    now,
                    now,
                ),
            )
            conn.commit()

    def update_permission_request(self, request_id: str, *, status: str, response: str | None = None) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "UPDATE permission_requests SET status = ?, response = COALESCE(?, response), updated_at = ? "
                "WHERE id = ?",
                (status, response, _now_iso(), request_id),
            )
            conn.commit()

    def list_permission_requests(self, channel_id: str, limit: int = 500) -> list[dict[str, Any]]:
        with self._lock:
            conn = self._get_conn()
            rows = conn.execute(
                "SELECT * FROM permission_requests WHERE channel_id = ? ORDER BY created_at ASC LIMIT ?",
                (channel_id, int(limit)),
            ).fetchall()
            out: list[dict[str, Any]] = []
            for r in rows:
                d = dict(r)
                try:
                    d["input"] = json.loads(d.pop("input_json", "{}"))
                except (json.JSONDecodeError, TypeError):
                    d["input"] = {}
                out.append(d)
            return out

    # ── Events ────────────────────────────────────────────────────

    def insert_event(
        self,
        channel_id: str,
        evt_type: str,
        ts: float,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert an event and return the persisted envelope (with id + seq)."""
        with self._lock:
            conn = self._get_conn()
            payload_json = json.dumps(payload or {}, ensure_ascii=False)
            # seq is per-channel and must be monotonic; BEGIN IMMEDIATE serializes writers.
            for _attempt in range(3):
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    row = conn.execute(
                        "SELECT COALESCE(MAX(seq), 0) AS m FROM events WHERE channel_id = ?",
                        (channel_id,),
                    ).fetchone()
                    seq = int(row["m"] if row else 0) + 1
                    cur = conn.execute(
                        "INSERT INTO events (channel_id, seq, ts, type, payload_json) VALUES (?, ?, ?, ?, ?)",
                        (channel_id, seq, float(ts), str(evt_type), payload_json),
                    )
                    conn.commit()
                    return {
                        "id": int(cur.lastrowid),
                        "seq": seq,
                        "ts": float(ts),
                        "type": str(evt_type),
                        "channel_id": channel_id,
                        "payload": payload or {},
                    }
                except sqlite3.IntegrityError:
                    conn.rollback()
                    continue
                except Exception:
                    conn.rollback()
                    raise

            raise sqlite3.IntegrityError("failed to allocate per-channel event seq")

    def get_events(
        self,
        channel_id: str | None = None,
        since_id: int | None = None,
        limit: int = 2000,
    ) -> list[dict[str, Any]]:
        """Fetch events since a global id (exclusive), optionally for one channel."""
        with self._lock:
            conn = self._get_conn()
            params: list[Any] = []
            where = []
            if channel_id:
                where.append("channel_id = ?")
                params.append(channel_id)
            if since_id is not None:
                where.append("id > ?")
                params.append(int(since_id))
            where_sql = "WHERE " + " AND ".join(where) if where else ""
            rows = conn.execute(
                f"SELECT * FROM events {where_sql} ORDER BY id ASC LIMIT ?",
                (*params, int(limit)),
            ).fetchall()
            out: list[dict[str, Any]] = []
            for r in rows:
                d = dict(r)
                try:
                    d["payload"] = json.loads(d.pop("payload_json", "{}"))
                except (json.JSONDecodeError, TypeError):
                    d["payload"] = {}
                out.append(d)
            return out
