import itertools
import json

import pytest

from chunk_batch_manager.core.batching.manager import BatchJobManager
from chunk_batch_manager.core.batching.models import UNITS_TABLE, Unit
from chunk_batch_manager.core.batching.provider import BatchProvider, ProviderBatch
from chunk_batch_manager.core.errors import ProviderError
from chunk_batch_manager.core.storage import MemoryRowStore
from chunk_batch_manager.core.storage.tables import TABLE_KEYS
from chunk_batch_manager.core.utils.config import BatchSettings

OWNER = "owner-1"
COLLECTION = "doc-1"


class FakeProvider(BatchProvider):
    """Scripted in-memory batch provider.

    Tests drive the provider side by calling ``set_status`` and
    ``complete``; failures are injected through ``fail_on``.
    """

    name = "fake"

    def __init__(self):
        self._ids = itertools.count(1)
        self.uploads = {}
        self.files = {}
        self.batches = {}
        self.created = []
        self.cancelled = []
        self.fail_on = {}
        self.calls = []

    def _maybe_fail(self, action):
        self.calls.append(action)
        error = self.fail_on.get(action)
        if error is not None:
            raise error

    def upload_payload(self, payload, filename="batch_input.jsonl"):
        self._maybe_fail("upload")
        ref = f"file-in-{next(self._ids)}"
        self.uploads[ref] = payload.decode("utf-8")
        return ref

    def create_batch(self, file_ref, endpoint, window_hours=24, metadata=None):
        self._maybe_fail("create")
        handle = f"batch-{next(self._ids)}"
        self.batches[handle] = ProviderBatch(id=handle, status="validating")
        self.created.append({"handle": handle, "file_ref": file_ref, "metadata": metadata})
        return handle

    def get_batch(self, handle):
        self._maybe_fail("get")
        batch = self.batches[handle]
        return ProviderBatch(
            id=batch.id,
            status=batch.status,
            output_file_ref=batch.output_file_ref,
            error_file_ref=batch.error_file_ref,
            request_counts=dict(batch.request_counts),
            errors=list(batch.errors),
        )

    def download_file(self, file_ref):
        self._maybe_fail("download")
        return self.files[file_ref]

    def cancel_batch(self, handle):
        self._maybe_fail("cancel")
        self.cancelled.append(handle)
        if handle in self.batches:
            self.batches[handle].status = "cancelled"

    # Test controls

    def custom_ids(self, handle):
        """custom_ids of the payload a batch was created from."""
        file_ref = next(c["file_ref"] for c in self.created if c["handle"] == handle)
        return [json.loads(line)["custom_id"] for line in self.uploads[file_ref].splitlines()]

    def set_status(self, handle, status, errors=None, **counts):
        batch = self.batches[handle]
        batch.status = status
        if errors is not None:
            batch.errors = list(errors)
        if counts:
            batch.request_counts = counts

    def complete(self, handle, output_lines=(), error_lines=()):
        batch = self.batches[handle]
        batch.status = "completed"
        if output_lines:
            ref = f"file-out-{next(self._ids)}"
            self.files[ref] = "\n".join(json.dumps(line) for line in output_lines)
            batch.output_file_ref = ref
        if error_lines:
            ref = f"file-err-{next(self._ids)}"
            self.files[ref] = "\n".join(json.dumps(line) for line in error_lines)
            batch.error_file_ref = ref
        total = len(output_lines) + len(error_lines)
        batch.request_counts = {"total": total, "completed": len(output_lines), "failed": len(error_lines)}


def success_line(custom_id, content="A summary.", finish_reason="stop",
                 prompt_tokens=100, completion_tokens=40, model="gpt-4o-mini"):
    return {
        "id": f"req-{custom_id}",
        "custom_id": custom_id,
        "response": {
            "status_code": 200,
            "body": {
                "model": model,
                "choices": [{"index": 0, "message": {"role": "assistant", "content": content},
                             "finish_reason": finish_reason}],
                "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens,
                          "total_tokens": prompt_tokens + completion_tokens},
            },
        },
        "error": None,
    }


def error_line(custom_id, message="Rate limit reached", status_code=429):
    return {
        "id": f"req-{custom_id}",
        "custom_id": custom_id,
        "response": {"status_code": status_code, "body": {"error": {"message": message}}},
        "error": None,
    }


def add_units(store, sizes, owner_id=OWNER, collection_id=COLLECTION, prefix="u", status="ready"):
    units = []
    for i, size in enumerate(sizes, start=1):
        unit = Unit.create(
            id=f"{prefix}{i}",
            collection_id=collection_id,
            owner_id=owner_id,
            content=("lorem ipsum " * (size // 12 + 1))[:size],
            status=status,
            order_index=i,
        )
        store.insert(UNITS_TABLE, unit.to_row())
        units.append(unit)
    return units


@pytest.fixture
def store():
    return MemoryRowStore(TABLE_KEYS)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings(tmp_path):
    return BatchSettings(
        database_path=str(tmp_path / "batches.db"),
        ingest_max_workers=4,
        auto_ingest=False,
    )


@pytest.fixture
def units(store):
    """Three units of 500, 800 and 1200 characters."""
    return add_units(store, [500, 800, 1200])


@pytest.fixture
def manager(store, provider, settings):
    return BatchJobManager(store, provider, settings)


@pytest.fixture
def submitted(manager, units):
    """A job over the three seeded units, accepted by the provider."""
    return manager.submit(OWNER, [u.id for u in units])


@pytest.fixture
def provider_error():
    return ProviderError("upload failed: boom")
