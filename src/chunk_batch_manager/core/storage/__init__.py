"""
Persistent row stores for the batching engine.

Submodules:
    base:   RowStore contract and filter semantics
    memory: MemoryRowStore (thread-safe, in-process)
    sqlite: SQLiteRowStore (JSON rows in a SQLite file)

Example Usage:
    from chunk_batch_manager.core.storage import open_store

    store = open_store('./batches.db')
    store.select_where('batch_jobs', {'owner_id': 'u1', 'status': ['pending', 'in_progress']})
"""

from pathlib import Path

from .tables import TABLE_KEYS
from .base import RowStore
from .memory import MemoryRowStore
from .sqlite import SQLiteRowStore


def open_store(path: str | Path | None = None) -> RowStore:
    """
    Open the store holding units, jobs, results, artifacts and claims.

    Args:
        path: SQLite database path, ':memory:' for a throwaway SQLite store,
            or None for an in-process MemoryRowStore.
    """
    if path is None:
        return MemoryRowStore(TABLE_KEYS)
    return SQLiteRowStore(TABLE_KEYS, path)


__all__ = [
    'RowStore',
    'MemoryRowStore',
    'SQLiteRowStore',
    'open_store',
]
