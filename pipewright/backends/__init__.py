"""Execution backend factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PipewrightConfig, load_config
from .base import BaseBackend, InfoSnapshot, UnitRef, UnitResult, UnitState, unit_ref
from .inmemory import InMemoryBackend


def get_backend(
    kind: Optional[str] = None, config: Optional[PipewrightConfig] = None
) -> BaseBackend:
    """Factory function to get the configured execution backend."""

    config = config or load_config()
    kind = (kind or os.getenv("PIPEWRIGHT_BACKEND") or config.backend.kind).lower()

    if kind == "inmemory":
        return InMemoryBackend()
    elif kind == "jenkins":
        from .jenkins import JenkinsBackend

        return JenkinsBackend(config.backend.jenkins)
    else:
        raise ValueError(f"Unsupported execution backend: {kind}")


__all__ = [
    "BaseBackend",
    "InMemoryBackend",
    "InfoSnapshot",
    "UnitRef",
    "UnitResult",
    "UnitState",
    "get_backend",
    "unit_ref",
]
