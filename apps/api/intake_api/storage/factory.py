from __future__ import annotations

import logging

from .base import Storage
from .memory import create_memory_storage
from .postgres import create_postgres_storage


logger = logging.getLogger(__name__)


def get_storage(backend: str) -> Storage:
    """
    Returns the configured storage backend: 'postgres' (default) or 'memory'.
    """
    if backend == "memory":
        logger.info("Using in-memory storage; data is lost on restart.")
        return create_memory_storage()
    if backend == "postgres":
        return create_postgres_storage()
    raise ValueError(f"Unknown storage backend: {backend!r} (expected 'postgres' or 'memory')")
