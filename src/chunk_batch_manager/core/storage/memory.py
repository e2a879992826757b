# -*- coding: utf-8 -*-

import copy
import threading
from typing import Optional

from ..errors import DuplicateRowError
from .base import RowStore, row_matches


def _sort_rows(rows, order_by):
    if not order_by:
        return rows
    reverse = order_by.startswith('-')
    name = order_by.lstrip('-')
    return sorted(
        rows,
        key=lambda row: (row.get(name) is not None, row.get(name)),
        reverse=reverse
    )


class MemoryRowStore(RowStore):
    """Thread-safe in-process store. Rows are deep-copied in and out."""

    def __init__(self, table_keys: dict):
        super().__init__(table_keys)
        self._tables = {table: {} for table in self.table_keys}
        self._lock = threading.RLock()

    def _table(self, table):
        self.key_field(table)
        return self._tables[table]

    def insert(self, table, row):
        key_field = self.key_field(table)
        key = row.get(key_field)
        if key is None:
            raise ValueError(f"Row for table '{table}' has no '{key_field}'")
        with self._lock:
            rows = self._table(table)
            if key in rows:
                raise DuplicateRowError(
                    f"Duplicate key '{key}' in table '{table}'",
                    table=table, key=key
                )
            rows[key] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def update_where(self, table, where, values):
        with self._lock:
            count = 0
            for row in self._table(table).values():
                if row_matches(row, where):
                    row.update(copy.deepcopy(values))
                    count += 1
            return count

    def select_where(self, table, where=None, order_by=None, limit: Optional[int] = None):
        with self._lock:
            rows = [
                copy.deepcopy(row) for row in self._table(table).values()
                if row_matches(row, where)
            ]
        rows = _sort_rows(rows, order_by)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def count_where(self, table, where=None):
        with self._lock:
            return sum(1 for row in self._table(table).values() if row_matches(row, where))

    def delete_where(self, table, where):
        with self._lock:
            rows = self._table(table)
            doomed = [key for key, row in rows.items() if row_matches(row, where)]
            for key in doomed:
                del rows[key]
            return len(doomed)
