import pytest

from chunk_batch_manager.core.batching.models import (
    CLAIMS_TABLE,
    JOBS_TABLE,
    RESULTS_TABLE,
    UNITS_TABLE,
    timestamp_after,
)
from chunk_batch_manager.core.batching.status import (
    map_provider_status,
    merge_status,
    refresh_status,
)
from chunk_batch_manager.core.errors import Forbidden, NotFound, ProviderError, ProviderTimeout

from conftest import OWNER, error_line


def _job(store, job_id):
    return store.get(JOBS_TABLE, job_id)


def _statuses(store, table, where):
    return {row["status"] for row in store.select_where(table, where)}


def test_map_provider_status():
    assert map_provider_status("completed") == "finalizing"
    assert map_provider_status("in_progress") == "in_progress"
    with pytest.raises(ValueError):
        map_provider_status("exploded")


@pytest.mark.parametrize("stored, observed, expected", [
    ("validating", "in_progress", "in_progress"),
    ("in_progress", "validating", "in_progress"),
    ("finalizing", "in_progress", "finalizing"),
    ("completed", "in_progress", "completed"),
    ("cancelled", "finalizing", "cancelled"),
])
def test_merge_status_is_monotonic(stored, observed, expected):
    assert merge_status(stored, observed) == expected


def test_in_progress_marks_units_and_results(store, provider, submitted):
    provider.set_status(submitted.provider_handle, "in_progress", total=3, completed=1, failed=0)
    assert refresh_status(store, provider, submitted.job_id) == "in_progress"

    job = _job(store, submitted.job_id)
    assert job["provider_status"] == "in_progress"
    assert job["processed_units"] == 1
    assert job["last_checked_at"] is not None
    assert _statuses(store, UNITS_TABLE, {}) == {"processing"}
    assert _statuses(store, RESULTS_TABLE, {"job_id": submitted.job_id}) == {"processing"}


def test_provider_regression_is_ignored(store, provider, submitted):
    provider.set_status(submitted.provider_handle, "in_progress")
    refresh_status(store, provider, submitted.job_id)
    provider.set_status(submitted.provider_handle, "validating")
    assert refresh_status(store, provider, submitted.job_id) == "in_progress"


def test_completed_batch_waits_for_ingestion(store, provider, submitted):
    provider.complete(submitted.provider_handle)
    assert refresh_status(store, provider, submitted.job_id) == "finalizing"
    job = _job(store, submitted.job_id)
    assert job["provider_status"] == "completed"
    assert job["results_processed"] is False
    # Claims are held until ingestion settles the job.
    assert store.count_where(CLAIMS_TABLE, {"job_id": submitted.job_id}) == 3


def test_refresh_is_idempotent(store, provider, submitted):
    provider.set_status(submitted.provider_handle, "in_progress")
    first = refresh_status(store, provider, submitted.job_id)
    second = refresh_status(store, provider, submitted.job_id)
    assert first == second == "in_progress"


@pytest.mark.parametrize("provider_status, unit_status", [
    ("failed", "ready"),
    ("expired", "ready"),
    ("cancelled", "draft"),
])
def test_provider_side_termination_releases_the_job(store, provider, submitted, provider_status, unit_status):
    provider.set_status(submitted.provider_handle, provider_status)
    assert refresh_status(store, provider, submitted.job_id) == provider_status

    job = _job(store, submitted.job_id)
    assert job["status"] == provider_status
    assert job["completed_at"] is not None
    assert job["error_detail"]["history"][-1]["status"] == provider_status
    assert _statuses(store, UNITS_TABLE, {}) == {unit_status}
    assert _statuses(store, RESULTS_TABLE, {"job_id": submitted.job_id}) == {"error"}
    assert store.count_where(CLAIMS_TABLE) == 0


def test_provider_failure_message_is_kept(store, provider, submitted):
    provider.set_status(submitted.provider_handle, "failed", errors=["invalid_request: bad model"])
    refresh_status(store, provider, submitted.job_id)
    messages = {row["error_message"] for row in store.select_where(RESULTS_TABLE)}
    assert messages == {"invalid_request: bad model"}


def test_failed_batch_with_error_file_waits_for_ingestion(store, provider, submitted):
    provider.complete(submitted.provider_handle, error_lines=[error_line(u) for u in ("u1", "u2", "u3")])
    provider.set_status(submitted.provider_handle, "failed")

    assert refresh_status(store, provider, submitted.job_id) == "finalizing"
    job = _job(store, submitted.job_id)
    assert job["provider_status"] == "failed"
    assert job["completed_at"] is None
    assert _statuses(store, RESULTS_TABLE, {"job_id": submitted.job_id}) != {"error"}
    assert store.count_where(CLAIMS_TABLE) == 3


def test_ttl_expires_running_job(store, provider, submitted):
    store.update_where(JOBS_TABLE, {"id": submitted.job_id}, {"expires_at": timestamp_after(-1)})
    provider.set_status(submitted.provider_handle, "in_progress")

    assert refresh_status(store, provider, submitted.job_id) == "expired"
    assert provider.cancelled == [submitted.provider_handle]
    assert _statuses(store, UNITS_TABLE, {}) == {"ready"}
    assert store.count_where(CLAIMS_TABLE) == 0


def test_ttl_expiry_survives_cancel_failure(store, provider, submitted):
    store.update_where(JOBS_TABLE, {"id": submitted.job_id}, {"expires_at": timestamp_after(-1)})
    provider.fail_on["cancel"] = ProviderError("cancel refused")
    assert refresh_status(store, provider, submitted.job_id) == "expired"


def test_ttl_does_not_override_provider_completion(store, provider, submitted):
    store.update_where(JOBS_TABLE, {"id": submitted.job_id}, {"expires_at": timestamp_after(-1)})
    provider.complete(submitted.provider_handle)
    assert refresh_status(store, provider, submitted.job_id) == "finalizing"
    assert provider.cancelled == []


def test_terminal_job_is_not_queried(store, provider, submitted):
    provider.set_status(submitted.provider_handle, "failed")
    refresh_status(store, provider, submitted.job_id)
    calls = len(provider.calls)
    provider.set_status(submitted.provider_handle, "in_progress")
    assert refresh_status(store, provider, submitted.job_id) == "failed"
    assert len(provider.calls) == calls


def test_timeout_keeps_stored_status(store, provider, submitted):
    provider.fail_on["get"] = ProviderTimeout("timed out")
    assert refresh_status(store, provider, submitted.job_id) == "validating"
    assert _job(store, submitted.job_id)["status"] == "validating"


def test_provider_error_propagates(store, provider, submitted):
    provider.fail_on["get"] = ProviderError("bad gateway")
    with pytest.raises(ProviderError):
        refresh_status(store, provider, submitted.job_id)


def test_unknown_job(store, provider):
    with pytest.raises(NotFound):
        refresh_status(store, provider, "missing")


def test_foreign_job(store, provider, submitted):
    with pytest.raises(Forbidden):
        refresh_status(store, provider, submitted.job_id, owner_id="intruder")
    assert refresh_status(store, provider, submitted.job_id, owner_id=OWNER) == "validating"


def test_concurrent_cancellation_wins_over_refresh(store, provider, submitted, monkeypatch):
    provider.set_status(submitted.provider_handle, "in_progress")
    real_get_batch = provider.get_batch

    def get_batch_while_cancelled(handle):
        snapshot = real_get_batch(handle)
        store.update_where(JOBS_TABLE, {"id": submitted.job_id}, {"status": "cancelling"})
        return snapshot

    monkeypatch.setattr(provider, "get_batch", get_batch_while_cancelled)
    assert refresh_status(store, provider, submitted.job_id) == "cancelling"
    assert _job(store, submitted.job_id)["status"] == "cancelling"
