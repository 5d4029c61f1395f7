"""Repository abstraction for pipeline and activity persistence."""

from __future__ import annotations

from typing import Protocol

from .models import DocumentRecord


class DocumentRepository(Protocol):
    """Protocol for document persistence backends."""

    async def create(
        self, kind: str, key: str, data: dict, name: str | None = None
    ) -> None:
        """Persist a new document. Raises ``ValueError`` if it already exists."""

    async def update(self, kind: str, key: str, data: dict) -> None:
        """Replace the data of an existing document."""

    async def delete(self, kind: str, key: str) -> None:
        """Remove a document if present."""

    async def get(self, kind: str, key: str) -> DocumentRecord | None:
        """Retrieve a document by kind and key."""

    async def list(self, kind: str) -> list[DocumentRecord]:
        """Return all documents of one kind, oldest first."""
