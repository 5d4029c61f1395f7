"""PostgreSQL implementation of the document repository."""

from __future__ import annotations

import json
from datetime import datetime

import asyncpg

from .models import DocumentRecord
from .repository import DocumentRepository

_COLUMNS = "kind, key, name, data, created_at, updated_at"


class PostgresDocumentRepository(DocumentRepository):
    """Persist documents using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                kind TEXT NOT NULL,
                key TEXT NOT NULL,
                name TEXT,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (kind, key)
            )
            """
        )

    @staticmethod
    def _record(row: asyncpg.Record) -> DocumentRecord:
        data = row["data"]
        return DocumentRecord(
            kind=row["kind"],
            key=row["key"],
            name=row["name"],
            data=json.loads(data) if isinstance(data, str) else data,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    async def create(
        self, kind: str, key: str, data: dict, name: str | None = None
    ) -> None:
        conn = await self._connect()
        now = datetime.utcnow()
        try:
            await conn.execute(
                f"INSERT INTO documents ({_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6)",
                kind,
                key,
                name,
                json.dumps(data),
                now,
                now,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ValueError(f"{kind} '{key}' already exists") from exc
        finally:
            await conn.close()

    async def update(self, kind: str, key: str, data: dict) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE documents SET data = $1, updated_at = $2 WHERE kind = $3 AND key = $4",
                json.dumps(data),
                datetime.utcnow(),
                kind,
                key,
            )
        finally:
            await conn.close()

    async def delete(self, kind: str, key: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM documents WHERE kind = $1 AND key = $2", kind, key
            )
        finally:
            await conn.close()

    async def get(self, kind: str, key: str) -> DocumentRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM documents WHERE kind = $1 AND key = $2",
                kind,
                key,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return self._record(row)

    async def list(self, kind: str) -> list[DocumentRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM documents WHERE kind = $1 ORDER BY created_at",
                kind,
            )
        finally:
            await conn.close()
        return [self._record(r) for r in rows]
