"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StagelineConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[StagelineConfig] = None
) -> BaseTransport:
    """Build the transport for ``backend``.

    ``STAGELINE_TRANSPORT`` overrides the configured backend; the Redis
    transport is imported lazily so the redis package stays optional.
    """

    config = config or load_config()
    backend = (
        backend
        or os.getenv("STAGELINE_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        return RedisTransport.from_config(config.transport.redis)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
