"""In-memory implementation of the document repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Tuple

from .models import DocumentRecord
from .repository import DocumentRepository


class InMemoryDocumentRepository(DocumentRepository):
    """Store documents in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._documents: Dict[Tuple[str, str], DocumentRecord] = {}

    # ------------------------------------------------------------------
    async def create(
        self, kind: str, key: str, data: dict, name: str | None = None
    ) -> None:
        if (kind, key) in self._documents:
            raise ValueError(f"{kind} '{key}' already exists")
        now = datetime.utcnow()
        self._documents[(kind, key)] = DocumentRecord(
            kind=kind, key=key, name=name, data=data, created_at=now, updated_at=now
        )

    async def update(self, kind: str, key: str, data: dict) -> None:
        doc = self._documents.get((kind, key))
        if doc:
            doc.data = data
            doc.updated_at = datetime.utcnow()

    async def delete(self, kind: str, key: str) -> None:
        self._documents.pop((kind, key), None)

    async def get(self, kind: str, key: str) -> DocumentRecord | None:
        doc = self._documents.get((kind, key))
        return doc.model_copy(deep=True) if doc else None

    async def list(self, kind: str) -> list[DocumentRecord]:
        return [
            doc.model_copy(deep=True)
            for (doc_kind, _), doc in self._documents.items()
            if doc_kind == kind
        ]
