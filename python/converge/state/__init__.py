"""
converge/state/__init__.py

Provides a convenient import interface for state persistence:

- backends.py for where the document and lock live (memory, local file, Minio)
- store.py for the StateStore that owns the document and the lock lifecycle
"""

from converge.state.backends import (
    StateBackend,
    MemoryBackend,
    LocalFileBackend,
    MinioBackend,
)
from converge.state.store import StateStore

__all__ = [
    "StateBackend",
    "MemoryBackend",
    "LocalFileBackend",
    "MinioBackend",
    "StateStore",
]
