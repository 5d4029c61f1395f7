"""Base notifier interface for resource change events."""

from __future__ import annotations

import abc
import time
from typing import Any, AsyncIterator, Dict, Optional

from pydantic import BaseModel, Field


class ResourceChange(BaseModel):
    """A persisted pipeline or activity changed."""

    resource_type: str
    action: str
    resource_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ResourceChange":
        return cls.model_validate_json(data)


class BaseNotifier(metaclass=abc.ABCMeta):
    """Abstract base for change-event fan-out."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, change: ResourceChange) -> None:
        """Send one change event."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(self, lifespan: Optional[float] = None) -> AsyncIterator[ResourceChange]:
        """Yield change events as they are published.

        Args:
            lifespan: Maximum time in seconds to keep listening. If None, runs indefinitely.
        """
        raise NotImplementedError
