"""Change notifier factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PipewrightConfig, load_config
from .base import BaseNotifier, ResourceChange
from .inmemory import InMemoryNotifier


def get_notifier(
    kind: Optional[str] = None, config: Optional[PipewrightConfig] = None
) -> BaseNotifier:
    """Factory function to get the configured notifier."""

    config = config or load_config()
    kind = (kind or os.getenv("PIPEWRIGHT_NOTIFIER") or config.notifier.kind).lower()

    if kind == "inmemory":
        return InMemoryNotifier()
    elif kind == "redis":
        from .redis import RedisNotifier

        redis_conf = config.notifier.redis
        return RedisNotifier(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            channel=config.notifier.channel,
        )
    else:
        raise ValueError(f"Unsupported notifier: {kind}")


__all__ = ["BaseNotifier", "InMemoryNotifier", "ResourceChange", "get_notifier"]
