from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime

from ..errors import StoreError
from ..models import Marker, marker_from_json, marker_to_json


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(slots=True)
class SqliteCursorStore:
    """
    默认持久化存储：SQLite

    表设计：
    - markers：instance_key -> marker（JSON），kind 冗余一列便于排查

    每次 save/delete 是一个独立事务，WAL 模式下并发读只会看到提交前或提交后的完整值。
    """

    sqlite_path: str
    timeout_seconds: float = 10.0

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path, timeout=self.timeout_seconds)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS markers (
                            instance_key TEXT PRIMARY KEY,
                            kind TEXT NOT NULL,
                            marker_json TEXT NOT NULL,
                            updated_at TEXT NOT NULL
                        )
                        """
                    )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"ensure_schema failed: {e}") from e

    def load(self, instance_key: str) -> Marker | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT marker_json FROM markers WHERE instance_key = ?",
                    (instance_key,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"load failed: instance_key={instance_key}: {e}") from e
        if not row:
            return None
        return marker_from_json(row["marker_json"])

    def save(self, instance_key: str, marker: Marker) -> None:
        payload = marker_to_json(marker)
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO markers(instance_key, kind, marker_json, updated_at)
                        VALUES(?, ?, ?, ?)
                        ON CONFLICT(instance_key) DO UPDATE SET
                            kind=excluded.kind,
                            marker_json=excluded.marker_json,
                            updated_at=excluded.updated_at
                        """,
                        (instance_key, marker.kind, payload, _utc_now_iso()),
                    )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"save failed: instance_key={instance_key}: {e}") from e

    def delete(self, instance_key: str) -> bool:
        try:
            conn = self._connect()
            try:
                with conn:
                    cur = conn.execute("DELETE FROM markers WHERE instance_key = ?", (instance_key,))
                    return cur.rowcount > 0
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"delete failed: instance_key={instance_key}: {e}") from e
