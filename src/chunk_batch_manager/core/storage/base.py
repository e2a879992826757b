# -*- coding: utf-8 -*-
"""
Row-CRUD contract used by the batching engine.

The engine never assumes multi-statement transactions: each call below is
atomic on its own, nothing more, also against other processes sharing the
store. ``insert`` rejects primary-key collisions, which serializes concurrent
submissions. ``update_where`` is a compare-and-set: only rows still matching
``where`` at write time are changed, and the count of changed rows is returned.

Filters (``where``) map a field name to:
    - a scalar: equality (``None`` matches missing/null values),
    - a list, tuple or set: membership,
    - ``<field>__gte`` / ``__gt`` / ``__lte`` / ``__lt`` / ``__ne`` lookups.
"""

import re
from typing import Iterable, Optional


_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
LOOKUPS = ('gte', 'gt', 'lte', 'lt', 'ne')


def split_lookup(key):
    """Split 'created_at__gte' into ('created_at', 'gte')."""
    name, sep, lookup = key.rpartition('__')
    if sep and lookup in LOOKUPS:
        return name, lookup
    return key, 'eq'


def check_identifier(name, kind="identifier"):
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid {kind}: {name!r}")
    return name


def row_matches(row: dict, where: Optional[dict]) -> bool:
    """Evaluate a ``where`` filter against a row dictionary."""
    for key, expected in (where or {}).items():
        name, lookup = split_lookup(key)
        value = row.get(name)
        if lookup == 'eq':
            if isinstance(expected, (list, tuple, set, frozenset)):
                if value not in expected:
                    return False
            elif value != expected:
                return False
        elif lookup == 'ne':
            if value == expected:
                return False
        else:
            if value is None:
                return False
            if lookup == 'gte' and not value >= expected:
                return False
            if lookup == 'gt' and not value > expected:
                return False
            if lookup == 'lte' and not value <= expected:
                return False
            if lookup == 'lt' and not value < expected:
                return False
    return True


class RowStore:
    """Abstract row store. Tables are declared with their primary-key field."""

    def __init__(self, table_keys: dict):
        self.table_keys = {
            check_identifier(table, "table name"): check_identifier(key, "key field")
            for table, key in table_keys.items()
        }

    def key_field(self, table):
        try:
            return self.table_keys[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    def insert(self, table: str, row: dict) -> dict:
        """Insert one row. Raises DuplicateRowError if the key exists."""
        raise NotImplementedError

    def insert_many(self, table: str, rows: Iterable[dict]) -> int:
        """Insert rows one by one (no atomicity across rows)."""
        count = 0
        for row in rows:
            self.insert(table, row)
            count += 1
        return count

    def update_where(self, table: str, where: dict, values: dict) -> int:
        """Set ``values`` on every row matching ``where``. Returns the row count."""
        raise NotImplementedError

    def select_where(self, table: str, where: Optional[dict] = None,
                     order_by: Optional[str] = None,
                     limit: Optional[int] = None) -> list:
        """Return matching rows. ``order_by`` may be prefixed with '-' for descending."""
        raise NotImplementedError

    def count_where(self, table: str, where: Optional[dict] = None) -> int:
        raise NotImplementedError

    def delete_where(self, table: str, where: dict) -> int:
        raise NotImplementedError

    def get(self, table: str, key) -> Optional[dict]:
        rows = self.select_where(table, {self.key_field(table): key}, limit=1)
        return rows[0] if rows else None

    def close(self):
        pass
