# -*- coding: utf-8 -*-
"""
SQLite-backed row store.

Each logical table is a two-column SQLite table: the primary key and the
row serialized as JSON. Filters are compiled to ``json_extract`` predicates,
so no schema migration is needed when a row model gains a field.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from ..errors import DuplicateRowError, StoreError
from .base import RowStore, check_identifier, split_lookup


_OPERATORS = {'eq': '=', 'ne': '!=', 'gte': '>=', 'gt': '>', 'lte': '<=', 'lt': '<'}


def _field_expr(name):
    check_identifier(name, "field name")
    return f"json_extract(data, '$.{name}')"


def _sql_value(value):
    if isinstance(value, bool):
        return int(value)
    return value


def compile_where(where: Optional[dict]):
    """
    Compile a ``where`` mapping into an SQL predicate and its parameters.

    Returns:
        tuple[str, list]: The predicate (``1`` if empty) and bound parameters.
    """
    clauses, params = [], []
    for key, expected in (where or {}).items():
        name, lookup = split_lookup(key)
        expr = _field_expr(name)
        if lookup == 'eq' and isinstance(expected, (list, tuple, set, frozenset)):
            values = list(expected)
            if not values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"{expr} IN ({placeholders})")
            params.extend(_sql_value(v) for v in values)
        elif expected is None and lookup in ('eq', 'ne'):
            clauses.append(f"{expr} IS {'NOT ' if lookup == 'ne' else ''}NULL")
        elif lookup == 'ne':
            clauses.append(f"({expr} IS NULL OR {expr} != ?)")
            params.append(_sql_value(expected))
        else:
            clauses.append(f"{expr} {_OPERATORS[lookup]} ?")
            params.append(_sql_value(expected))
    return (" AND ".join(clauses) or "1"), params


class SQLiteRowStore(RowStore):
    """Row store persisted in a single SQLite database file."""

    def __init__(self, table_keys: dict, path: str | Path = ":memory:"):
        super().__init__(table_keys)
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False, timeout=30)
        self._conn.execute("PRAGMA journal_mode=WAL")
        with self._conn:
            for table in self.table_keys:
                self._conn.execute(
                    f'CREATE TABLE IF NOT EXISTS "{table}" '
                    '(pk TEXT PRIMARY KEY, data TEXT NOT NULL)'
                )
        logging.debug(f"Opened SQLite store at {self.path}")

    def _execute(self, sql, params=()):
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(f"SQLite error: {e}") from e

    def insert(self, table, row):
        key_field = self.key_field(table)
        key = row.get(key_field)
        if key is None:
            raise ValueError(f"Row for table '{table}' has no '{key_field}'")
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        f'INSERT INTO "{table}" (pk, data) VALUES (?, ?)',
                        (str(key), json.dumps(row))
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateRowError(
                    f"Duplicate key '{key}' in table '{table}'",
                    table=table, key=key
                ) from e
            except sqlite3.Error as e:
                raise StoreError(f"SQLite error: {e}") from e
        return row

    def update_where(self, table, where, values):
        self.key_field(table)
        predicate, params = compile_where(where)
        with self._lock:
            try:
                # Matching and rewriting happen inside one write transaction.
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    rows = self._conn.execute(
                        f'SELECT pk, data FROM "{table}" WHERE {predicate}', params
                    ).fetchall()
                    updates = []
                    for pk, data in rows:
                        row = json.loads(data)
                        row.update(values)
                        updates.append((json.dumps(row), pk))
                    if updates:
                        self._conn.executemany(
                            f'UPDATE "{table}" SET data = ? WHERE pk = ?', updates
                        )
                except Exception:
                    self._conn.rollback()
                    raise
                self._conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"SQLite error: {e}") from e
            return len(updates)

    def select_where(self, table, where=None, order_by=None, limit: Optional[int] = None):
        self.key_field(table)
        predicate, params = compile_where(where)
        sql = f'SELECT data FROM "{table}" WHERE {predicate}'
        if order_by:
            direction = "DESC" if order_by.startswith('-') else "ASC"
            sql += f" ORDER BY {_field_expr(order_by.lstrip('-'))} {direction}, pk"
        else:
            sql += " ORDER BY rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + [int(limit)]
        with self._lock:
            rows = self._execute(sql, params).fetchall()
        return [json.loads(data) for (data,) in rows]

    def count_where(self, table, where=None):
        self.key_field(table)
        predicate, params = compile_where(where)
        with self._lock:
            (count,) = self._execute(
                f'SELECT COUNT(*) FROM "{table}" WHERE {predicate}', params
            ).fetchone()
        return count

    def delete_where(self, table, where):
        self.key_field(table)
        predicate, params = compile_where(where)
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        f'DELETE FROM "{table}" WHERE {predicate}', params
                    )
            except sqlite3.Error as e:
                raise StoreError(f"SQLite error: {e}") from e
            return cursor.rowcount

    def close(self):
        with self._lock:
            self._conn.close()
