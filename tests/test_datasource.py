import json

import polars as pl
import pytest

from chunk_batch_manager.core.batching.models import UNITS_TABLE
from chunk_batch_manager.core.utils.datasource import (
    load_units,
    read_unit_records,
    records_to_units,
)


def _write_jsonl(path, records):
    path.write_text("\n".join(json.dumps(r) for r in records), encoding="utf-8")
    return path


def test_read_jsonl_keeps_known_keys(tmp_path):
    path = _write_jsonl(tmp_path / "units.jsonl", [
        {"id": "a", "content": "text", "extra": 1, "order_index": 3},
    ])
    assert read_unit_records(path) == [{"content": "text", "id": "a", "order_index": 3}]


def test_read_jsonl_requires_content(tmp_path):
    path = _write_jsonl(tmp_path / "units.jsonl", [{"id": "a"}])
    with pytest.raises(KeyError):
        read_unit_records(path)


@pytest.mark.parametrize("suffix", ["csv", "parquet"])
def test_read_tabular(tmp_path, suffix):
    df = pl.DataFrame({"id": ["a", "b"], "content": ["one", "two"], "ignored": [1, 2]})
    path = tmp_path / f"units.{suffix}"
    if suffix == "csv":
        df.write_csv(path)
    else:
        df.write_parquet(path)
    assert read_unit_records(path) == [{"content": "one", "id": "a"}, {"content": "two", "id": "b"}]


def test_read_tabular_requires_content(tmp_path):
    path = tmp_path / "units.csv"
    pl.DataFrame({"id": ["a"]}).write_csv(path)
    with pytest.raises(KeyError):
        read_unit_records(path)


def test_read_unknown_format(tmp_path):
    path = tmp_path / "units.txt"
    path.write_text("hello", encoding="utf-8")
    with pytest.raises(ValueError):
        read_unit_records(path)


def test_records_to_units_defaults():
    units = records_to_units(
        [{"content": "hello world"}, {"id": "b", "content": "x", "collection_id": "c2", "status": "ready"}],
        owner_id="o1",
        collection_id="c1",
    )
    assert len(units[0].id) == 32
    assert units[0].collection_id == "c1"
    assert units[0].status == "draft"
    assert units[0].word_count == 2
    assert units[0].char_count == 11
    assert units[0].order_index == 0
    assert units[1].collection_id == "c2"
    assert units[1].status == "ready"
    assert units[1].order_index == 1


@pytest.mark.parametrize("records, collection_id, message", [
    ([{"content": "a"}], None, "no collection_id"),
    ([{"content": "a", "status": "done"}], "c1", "status 'done'"),
    ([{"id": "x", "content": "a"}, {"id": "x", "content": "b"}], "c1", "Duplicate unit id"),
])
def test_records_to_units_rejects(records, collection_id, message):
    with pytest.raises(ValueError, match=message):
        records_to_units(records, "o1", collection_id)


def test_load_units_inserts_rows(store, tmp_path):
    path = _write_jsonl(tmp_path / "units.jsonl", [
        {"id": "a", "content": "first"},
        {"id": "b", "content": "second"},
    ])
    units = load_units(store, path, "o1", "c1")
    assert [u.id for u in units] == ["a", "b"]
    assert store.count_where(UNITS_TABLE, {"owner_id": "o1"}) == 2


def test_load_units_rejects_existing_ids(store, tmp_path):
    path = _write_jsonl(tmp_path / "units.jsonl", [{"id": "a", "content": "first"}])
    load_units(store, path, "o1", "c1")
    with pytest.raises(ValueError, match="already exist"):
        load_units(store, path, "o1", "c1")
    assert store.count_where(UNITS_TABLE) == 1


def test_load_units_rejects_empty_file(store, tmp_path):
    path = tmp_path / "units.jsonl"
    path.write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="No units"):
        load_units(store, path, "o1", "c1")
