# -*- coding: utf-8 -*-

import uuid
import logging
import polars as pl
from pathlib import Path

from .misc import mask_path, read_jsonl
from ..batching.models import UNITS_TABLE, Unit


REQUIRED_UNIT_KEYS = ('content',)
OPTIONAL_UNIT_KEYS = ('id', 'collection_id', 'title', 'order_index', 'status')
LOADABLE_UNIT_STATUSES = ('draft', 'ready')


def _read_tabular(source_data_file: Path) -> pl.DataFrame:
    if source_data_file.suffix == '.csv':
        return pl.read_csv(source_data_file)
    if source_data_file.suffix == '.parquet':
        return pl.read_parquet(source_data_file)
    raise ValueError('Source data file must be either CSV or PARQUET')


def read_unit_records_jsonl(source_data_file):
    """Read unit records from a JSONL file."""
    records = []
    for i, item in enumerate(read_jsonl(source_data_file)):
        if 'content' not in item:
            raise KeyError(f"Expected 'content' key not found in line {i} of {source_data_file}.")
        records.append({k: item[k] for k in REQUIRED_UNIT_KEYS + OPTIONAL_UNIT_KEYS if k in item})
    return records


def read_unit_records_tabular(source_data_file):
    """Read unit records from a CSV or PARQUET file."""
    source_data_file = Path(source_data_file)
    df = _read_tabular(source_data_file)
    if 'content' not in df.columns:
        raise KeyError(f"Expected 'content' column not found in {source_data_file}.")
    columns = [c for c in REQUIRED_UNIT_KEYS + OPTIONAL_UNIT_KEYS if c in df.columns]
    return df.select(columns).to_dicts()


def read_unit_records(source_data_file):
    """Read unit records from a JSONL, CSV or PARQUET file."""
    source_data_file = Path(source_data_file)
    if source_data_file.suffix == '.jsonl':
        return read_unit_records_jsonl(source_data_file)
    if source_data_file.suffix in ['.csv', '.parquet']:
        return read_unit_records_tabular(source_data_file)
    raise ValueError("Source data file must be a JSONL, CSV or PARQUET file.")


def records_to_units(records, owner_id, collection_id=None) -> list:
    """
    Build Unit objects from raw records.

    Records without an id get a random one; records without a collection use
    ``collection_id``. The record position is the default order index.

    Raises:
        ValueError: If a record has no collection, an invalid status, or the
            records repeat an id.
    """
    units = []
    seen = set()
    for i, record in enumerate(records):
        content = record.get('content')
        if content is None:
            raise ValueError(f"Record {i} has no content")
        collection = record.get('collection_id') or collection_id
        if not collection:
            raise ValueError(f"Record {i} has no collection_id and no default collection was given")
        status = record.get('status') or 'draft'
        if status not in LOADABLE_UNIT_STATUSES:
            raise ValueError(f"Record {i} has status '{status}', expected one of {list(LOADABLE_UNIT_STATUSES)}")
        unit_id = str(record.get('id') or uuid.uuid4().hex)
        if unit_id in seen:
            raise ValueError(f"Duplicate unit id '{unit_id}' in source data")
        seen.add(unit_id)
        order_index = record.get('order_index')
        units.append(Unit.create(
            id=unit_id,
            collection_id=str(collection),
            owner_id=owner_id,
            content=str(content),
            status=status,
            title=record.get('title'),
            order_index=int(order_index) if order_index is not None else i,
        ))
    return units


def load_units(store, source_data_file, owner_id, collection_id=None) -> list:
    """
    Import units from a JSONL, CSV or PARQUET file into the store.

    Args:
        store (RowStore): Persistent store.
        source_data_file (str | Path): File with a 'content' field per record and
            optional 'id', 'collection_id', 'title', 'order_index' and 'status'.
        owner_id (str): Owner of the imported units.
        collection_id (str, optional): Collection for records without one.

    Returns:
        list[Unit]: The stored units.

    Raises:
        ValueError: If a record is invalid or an id already exists in the store.
    """
    records = read_unit_records(source_data_file)
    units = records_to_units(records, owner_id, collection_id)
    if not units:
        raise ValueError(f"No units found in {mask_path(source_data_file)}")

    existing = store.select_where(UNITS_TABLE, {'id': [u.id for u in units]})
    if existing:
        ids = sorted(row['id'] for row in existing)
        raise ValueError(f"{len(ids)} units already exist in the store: {ids[:5]}")

    store.insert_many(UNITS_TABLE, [unit.to_row() for unit in units])
    logging.info(f"Loaded {len(units)} units from {mask_path(source_data_file)}")
    return units
