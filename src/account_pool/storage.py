from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import json
import sqlite3
from typing import Any, Iterable

from account_pool.models import AccountRecord


class Storage:
    def __init__(self, database_path: str) -> None:
        self.path = Path(database_path)
        if database_path != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(database_path)
        self.conn.row_factory = sqlite3.Row
        self._create_schema()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS accounts (
              public_id TEXT PRIMARY KEY NOT NULL,
              key_material TEXT NOT NULL,
              display_name TEXT NOT NULL,
              is_seasoned INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS breaker_events (
              ts TEXT NOT NULL,
              kind TEXT NOT NULL,
              details TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def load_records(self) -> list[AccountRecord]:
        rows = self.conn.execute(
            "SELECT public_id, key_material, display_name, is_seasoned FROM accounts ORDER BY rowid"
        ).fetchall()
        return [
            AccountRecord(
                public_id=str(row["public_id"] or ""),
                key_material=str(row["key_material"]),
                display_name=str(row["display_name"] or ""),
                is_seasoned=bool(row["is_seasoned"]),
            )
            for row in rows
        ]

    def save_records(self, records: Iterable[AccountRecord]) -> None:
        now = datetime.now(tz=timezone.utc).isoformat()
        rows = [
            (
                record.public_id,
                record.key_material,
                record.display_name,
                1 if record.is_seasoned else 0,
                now,
            )
            for record in records
            if record.public_id
        ]
        with self.conn:
            # Rows stored without a public id are replaced by their derived record.
            self.conn.executemany(
                "DELETE FROM accounts WHERE public_id = '' AND key_material = ?",
                [(row[1],) for row in rows],
            )
            self.conn.executemany(
                """
                INSERT INTO accounts (public_id, key_material, display_name, is_seasoned, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (public_id) DO UPDATE SET
                  key_material = excluded.key_material,
                  display_name = excluded.display_name,
                  is_seasoned = excluded.is_seasoned
                """,
                rows,
            )

    def mark_seasoned(self, public_ids: Iterable[str], seasoned: bool = True) -> int:
        with self.conn:
            cursor = self.conn.executemany(
                "UPDATE accounts SET is_seasoned = ? WHERE public_id = ?",
                [(1 if seasoned else 0, public_id) for public_id in public_ids],
            )
        return int(cursor.rowcount or 0)

    def account_counts(self) -> dict[str, int]:
        row = self.conn.execute(
            "SELECT COUNT(*) AS total, COALESCE(SUM(is_seasoned), 0) AS seasoned FROM accounts"
        ).fetchone()
        total = int(row["total"]) if row else 0
        seasoned = int(row["seasoned"]) if row else 0
        return {"total": total, "seasoned": seasoned, "unseasoned": total - seasoned}

    def record_breaker_event(self, kind: str, details: dict[str, Any]) -> None:
        self.conn.execute(
            "INSERT INTO breaker_events (ts, kind, details) VALUES (?, ?, ?)",
            (
                datetime.now(tz=timezone.utc).isoformat(),
                kind,
                json.dumps(details, separators=(",", ":"), default=str),
            ),
        )
        self.conn.commit()

    def breaker_events(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT ts, kind, details FROM breaker_events ORDER BY rowid DESC LIMIT ?",
            (int(limit),),
        ).fetchall()
        return [{"ts": row["ts"], "kind": row["kind"], "details": json.loads(row["details"])} for row in rows]
