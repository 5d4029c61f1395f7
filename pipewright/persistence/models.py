"""Data models for persisted documents."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class DocumentRecord(BaseModel):
    """One stored document, addressed by ``kind`` and ``key``."""

    kind: str
    key: str
    name: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
