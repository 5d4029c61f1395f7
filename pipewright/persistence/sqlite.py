"""SQLite implementation of the document repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from .models import DocumentRecord
from .repository import DocumentRepository

_COLUMNS = "kind, key, name, data, created_at, updated_at"


class SQLiteDocumentRepository(DocumentRepository):
    """Persist documents using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                kind TEXT NOT NULL,
                key TEXT NOT NULL,
                name TEXT,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (kind, key)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _record(row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            kind=row["kind"],
            key=row["key"],
            name=row["name"],
            data=json.loads(row["data"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create(
        self, kind: str, key: str, data: dict, name: str | None = None
    ) -> None:
        now = datetime.utcnow().isoformat()
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO documents ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                kind,
                key,
                name,
                json.dumps(data),
                now,
                now,
            )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"{kind} '{key}' already exists") from exc

    async def update(self, kind: str, key: str, data: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE documents SET data = ?, updated_at = ? WHERE kind = ? AND key = ?",
            json.dumps(data),
            datetime.utcnow().isoformat(),
            kind,
            key,
        )

    async def delete(self, kind: str, key: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM documents WHERE kind = ? AND key = ?",
            kind,
            key,
        )

    async def get(self, kind: str, key: str) -> DocumentRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_COLUMNS} FROM documents WHERE kind = ? AND key = ?",
            kind,
            key,
        )
        if not row:
            return None
        return self._record(row)

    async def list(self, kind: str) -> list[DocumentRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_COLUMNS} FROM documents WHERE kind = ? ORDER BY created_at, rowid",
            kind,
        )
        return [self._record(row) for row in rows]
