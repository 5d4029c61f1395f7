"""Persistence layer for pipelines and activities."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PipewrightConfig, load_config
from .inmemory import InMemoryDocumentRepository
from .models import DocumentRecord
from .repository import DocumentRepository
from .sqlite import SQLiteDocumentRepository
from .store import PipelineStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresDocumentRepository
except Exception:  # pragma: no cover - optional dependency
    PostgresDocumentRepository = None  # type: ignore

_repository_instance: DocumentRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[PipewrightConfig] = None
) -> DocumentRepository:
    """Factory function to obtain a document repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``PIPEWRIGHT_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PIPEWRIGHT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryDocumentRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteDocumentRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresDocumentRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresDocumentRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "DocumentRecord",
    "DocumentRepository",
    "InMemoryDocumentRepository",
    "PipelineStore",
    "PostgresDocumentRepository",
    "SQLiteDocumentRepository",
    "get_repository",
]
