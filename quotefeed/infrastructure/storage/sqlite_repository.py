"""SQLite repository for engine events and the key-value cache store."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


JsonDict = Dict[str, Any]


class SQLiteRepository:
    def __init__(self, db_path: Path) -> None:
        self._path = db_path
        if self._path.as_posix() != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path.as_posix(), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              type TEXT NOT NULL,
              message TEXT NOT NULL,
              data_json TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
              key TEXT PRIMARY KEY,
              value_json TEXT NOT NULL,
              saved_at REAL NOT NULL
            );
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ---- events ----
    def log_event(
        self,
        *,
        ts: str,
        level: str,
        type: str,
        message: str,
        data: Optional[JsonDict] = None,
    ) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "INSERT INTO events(ts, level, type, message, data_json) VALUES(?,?,?,?,?)",
                (ts, level, type, message, json.dumps(data or {})),
            )
            self._conn.commit()

    def list_events(self, limit: int = 200) -> List[JsonDict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT ts, level, type, message, data_json FROM events ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        out: List[JsonDict] = []
        for r in rows:
            out.append(
                {
                    "ts": r["ts"],
                    "level": r["level"],
                    "type": r["type"],
                    "message": r["message"],
                    "data": json.loads(r["data_json"] or "{}"),
                }
            )
        return out

    # ---- key-value ----
    def kv_set(self, key: str, value: Any, saved_at: Optional[float] = None) -> None:
        saved_at = time.time() if saved_at is None else saved_at
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO kv(key, value_json, saved_at) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, saved_at = excluded.saved_at
                """,
                (key, json.dumps(value), saved_at),
            )
            self._conn.commit()

    def kv_get(self, key: str) -> Optional[Tuple[Any, float]]:
        """Return (value, saved_at) or None."""
        with self._lock:
            row = self._conn.execute("SELECT value_json, saved_at FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"]), float(row["saved_at"])

    def kv_items(self, prefix: str = "") -> List[Tuple[str, Any, float]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value_json, saved_at FROM kv WHERE key LIKE ? ORDER BY key",
                (prefix + "%",),
            ).fetchall()
        return [(r["key"], json.loads(r["value_json"]), float(r["saved_at"])) for r in rows]

    def kv_delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()

    def kv_delete_prefix(self, prefix: str, older_than: Optional[float] = None) -> int:
        """Delete keys under `prefix` (optionally only those saved before `older_than`)."""
        with self._lock:
            if older_than is None:
                cur = self._conn.execute("DELETE FROM kv WHERE key LIKE ?", (prefix + "%",))
            else:
                cur = self._conn.execute(
                    "DELETE FROM kv WHERE key LIKE ? AND saved_at < ?",
                    (prefix + "%", older_than),
                )
            self._conn.commit()
            return cur.rowcount
