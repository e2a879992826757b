import pytest

from chunk_batch_manager.core.batching import ingest as ingest_module
from chunk_batch_manager.core.batching.actions import cancel_job, retry_units
from chunk_batch_manager.core.batching.ingest import NO_RESULT_MESSAGE, finalize_job, ingest_results
from chunk_batch_manager.core.batching.models import (
    ARTIFACTS_TABLE,
    CLAIMS_TABLE,
    JOBS_TABLE,
    RESULTS_TABLE,
    UNITS_TABLE,
    BatchJob,
)
from chunk_batch_manager.core.batching.pricing import compute_actual_cost
from chunk_batch_manager.core.batching.status import refresh_status
from chunk_batch_manager.core.batching.submit import relaunch_job
from chunk_batch_manager.core.errors import InvalidTransition, StoreError

from conftest import error_line, success_line


def _results(store, job_id):
    return {row["unit_id"]: row for row in store.select_where(RESULTS_TABLE, {"job_id": job_id})}


def _unit_statuses(store):
    return {row["id"]: row["status"] for row in store.select_where(UNITS_TABLE)}


def _complete_two_of_three(provider, handle):
    provider.set_status(handle, "in_progress")
    provider.complete(
        handle,
        output_lines=[success_line("u1", content="First summary"),
                      success_line("u2", content="Second summary", finish_reason="length")],
        error_lines=[error_line("u3", message="Request too large", status_code=400)],
    )


def test_two_successes_and_one_failure(store, provider, settings, submitted):
    provider.set_status(submitted.provider_handle, "in_progress")
    refresh_status(store, provider, submitted.job_id)
    _complete_two_of_three(provider, submitted.provider_handle)

    summary = ingest_results(store, provider, settings, submitted.job_id)

    assert summary.status == "completed_with_errors"
    assert summary.success_count == 2
    assert summary.error_count == 1
    assert summary.processed_units == 3
    assert summary.already_processed is False
    assert summary.results_processed is True
    assert summary.failures == []

    job = store.get(JOBS_TABLE, submitted.job_id)
    assert job["status"] == "completed_with_errors"
    assert job["success_count"] + job["error_count"] == job["total_units"]
    assert job["results_processed"] is True
    assert job["completed_at"] is not None

    results = _results(store, submitted.job_id)
    assert results["u1"]["status"] == "done"
    assert results["u3"]["status"] == "error"
    assert results["u3"]["error_message"] == "Request too large"
    assert results["u1"]["artifact_id"] == f"{submitted.job_id}:u1:0"
    assert _unit_statuses(store) == {"u1": "done", "u2": "done", "u3": "error"}

    artifacts = {row["unit_id"]: row for row in store.select_where(ARTIFACTS_TABLE)}
    assert set(artifacts) == {"u1", "u2"}
    assert artifacts["u2"]["output_text"] == "Second summary"
    assert artifacts["u2"]["finish_reason"] == "length"
    assert artifacts["u1"]["input_text"].startswith("lorem ipsum")

    expected_cost = 2 * compute_actual_cost(
        {"prompt_tokens": 100, "completion_tokens": 40}, "gpt-4o-mini", discounts=settings.discounts
    )
    assert job["actual_cost"] == pytest.approx(expected_cost)
    assert store.count_where(CLAIMS_TABLE) == 0


def test_all_successes_complete_the_job(store, provider, settings, submitted):
    provider.complete(submitted.provider_handle, [success_line(u) for u in ("u1", "u2", "u3")])
    summary = ingest_results(store, provider, settings, submitted.job_id)
    assert summary.status == "completed"
    assert summary.error_count == 0


def test_ingesting_twice_is_a_no_op(store, provider, settings, submitted):
    _complete_two_of_three(provider, submitted.provider_handle)
    first = ingest_results(store, provider, settings, submitted.job_id)
    artifacts = store.count_where(ARTIFACTS_TABLE)
    downloads = provider.calls.count("download")

    second = ingest_results(store, provider, settings, submitted.job_id)

    assert second.already_processed is True
    assert (second.status, second.success_count, second.error_count, second.actual_cost) == \
        (first.status, first.success_count, first.error_count, first.actual_cost)
    assert store.count_where(ARTIFACTS_TABLE) == artifacts
    assert provider.calls.count("download") == downloads


def test_unit_without_outcome_fails(store, provider, settings, submitted):
    provider.complete(submitted.provider_handle, [success_line("u1"), success_line("u2")])
    summary = ingest_results(store, provider, settings, submitted.job_id)
    assert summary.status == "completed_with_errors"
    assert _results(store, submitted.job_id)["u3"]["error_message"] == NO_RESULT_MESSAGE


def test_unknown_and_malformed_lines_are_unresolved(store, provider, settings, submitted):
    provider.complete(
        submitted.provider_handle,
        [success_line("u1"), success_line("u2"), success_line("u3"), success_line("stranger")],
    )
    provider.files[provider.batches[submitted.provider_handle].output_file_ref] += "\n{broken"

    summary = ingest_results(store, provider, settings, submitted.job_id)
    assert summary.status == "completed"
    assert summary.unresolved_count == 2
    assert store.get(JOBS_TABLE, submitted.job_id)["unresolved_count"] == 2


def test_success_wins_over_duplicate_failure(store, provider, settings, submitted):
    provider.complete(
        submitted.provider_handle,
        output_lines=[success_line("u1"), success_line("u2"), success_line("u3")],
        error_lines=[error_line("u2")],
    )
    summary = ingest_results(store, provider, settings, submitted.job_id)
    assert summary.status == "completed"


def test_batch_not_completed_at_provider(store, provider, settings, submitted):
    provider.set_status(submitted.provider_handle, "in_progress")
    with pytest.raises(InvalidTransition):
        ingest_results(store, provider, settings, submitted.job_id)
    assert store.get(JOBS_TABLE, submitted.job_id)["status"] == "validating"


def test_cancelled_job_is_refused(store, provider, settings, submitted):
    store.update_where(JOBS_TABLE, {"id": submitted.job_id}, {"status": "cancelled"})
    provider.complete(submitted.provider_handle, [success_line("u1")])
    with pytest.raises(InvalidTransition):
        ingest_results(store, provider, settings, submitted.job_id)
    assert store.count_where(ARTIFACTS_TABLE) == 0


def test_interrupted_ingestion_is_resumed(store, provider, settings, submitted, monkeypatch):
    provider.complete(submitted.provider_handle, [success_line(u) for u in ("u1", "u2", "u3")])
    real_write_outcome = ingest_module.write_outcome

    def flaky_write_outcome(store_, job, result, *args):
        if result.unit_id == "u2":
            raise StoreError("database is locked")
        return real_write_outcome(store_, job, result, *args)

    monkeypatch.setattr(ingest_module, "write_outcome", flaky_write_outcome)
    partial = ingest_results(store, provider, settings, submitted.job_id)

    assert partial.status == "finalizing"
    assert partial.results_processed is False
    assert partial.success_count == 2
    assert [f["unit_id"] for f in partial.failures] == ["u2"]
    assert store.get(JOBS_TABLE, submitted.job_id)["status"] == "finalizing"
    assert store.count_where(CLAIMS_TABLE) == 3

    monkeypatch.setattr(ingest_module, "write_outcome", real_write_outcome)
    resumed = ingest_results(store, provider, settings, submitted.job_id)

    assert resumed.status == "completed"
    assert resumed.success_count == 3
    assert store.count_where(ARTIFACTS_TABLE) == 3
    assert store.count_where(CLAIMS_TABLE) == 0


def test_ingest_with_progress_bar(store, provider, settings, submitted):
    provider.complete(submitted.provider_handle, [success_line(u) for u in ("u1", "u2", "u3")])
    summary = ingest_results(store, provider, settings, submitted.job_id, show_progress=True)
    assert summary.status == "completed"


def test_cancel_while_ingesting_stops_the_writes(store, provider, settings, submitted, monkeypatch):
    provider.set_status(submitted.provider_handle, "in_progress")
    refresh_status(store, provider, submitted.job_id)
    provider.complete(submitted.provider_handle, [success_line(u) for u in ("u1", "u2", "u3")])
    real_get_batch = provider.get_batch

    def get_batch_then_cancel(handle):
        batch = real_get_batch(handle)
        cancel_job(store, provider, submitted.job_id)
        return batch

    monkeypatch.setattr(provider, "get_batch", get_batch_then_cancel)
    with pytest.raises(InvalidTransition):
        ingest_results(store, provider, settings, submitted.job_id)

    job = store.get(JOBS_TABLE, submitted.job_id)
    assert job["status"] == "cancelled"
    assert job["results_processed"] is False
    assert store.count_where(ARTIFACTS_TABLE) == 0
    assert set(_unit_statuses(store).values()) == {"draft"}
    assert store.count_where(CLAIMS_TABLE) == 0


def test_finalize_leaves_a_job_that_is_no_longer_finalizing(store, submitted):
    store.update_where(RESULTS_TABLE, {"job_id": submitted.job_id},
                       {"status": "error", "error_message": "Cancelled"})
    store.update_where(JOBS_TABLE, {"id": submitted.job_id}, {"status": "cancelled"})

    job = finalize_job(store, BatchJob.from_row(store.get(JOBS_TABLE, submitted.job_id)), 0)

    assert job.status == "cancelled"
    assert job.results_processed is False
    assert store.count_where(CLAIMS_TABLE) == 3


def test_expired_batch_with_partial_output_is_ingested(store, provider, settings, submitted):
    provider.set_status(submitted.provider_handle, "in_progress")
    refresh_status(store, provider, submitted.job_id)
    provider.complete(submitted.provider_handle, [success_line("u1"), success_line("u2")])
    provider.set_status(submitted.provider_handle, "expired")

    assert refresh_status(store, provider, submitted.job_id) == "finalizing"
    job = store.get(JOBS_TABLE, submitted.job_id)
    assert job["error_detail"]["history"][-1]["status"] == "expired"
    assert store.count_where(CLAIMS_TABLE) == 3

    summary = ingest_results(store, provider, settings, submitted.job_id)

    assert summary.status == "completed_with_errors"
    assert (summary.success_count, summary.error_count) == (2, 1)
    assert _results(store, submitted.job_id)["u3"]["error_message"] == NO_RESULT_MESSAGE
    assert _unit_statuses(store) == {"u1": "done", "u2": "done", "u3": "error"}
    assert store.count_where(ARTIFACTS_TABLE) == 2
    job = store.get(JOBS_TABLE, submitted.job_id)
    assert job["provider_status"] == "expired"
    assert store.count_where(CLAIMS_TABLE) == 0


def test_expired_batch_without_output_is_not_ingested(store, provider, settings, submitted):
    provider.set_status(submitted.provider_handle, "expired")
    with pytest.raises(InvalidTransition):
        ingest_results(store, provider, settings, submitted.job_id)
    assert store.count_where(ARTIFACTS_TABLE) == 0


def test_retrying_some_units_keeps_the_errors_of_the_others(store, provider, settings, submitted):
    _complete_two_of_three(provider, submitted.provider_handle)
    ingest_results(store, provider, settings, submitted.job_id)

    retry_units(store, settings, submitted.job_id, ["u1"])
    relaunched = relaunch_job(store, provider, settings, submitted.job_id)
    provider.complete(relaunched.provider_handle, [success_line("u1", content="Again")])
    summary = ingest_results(store, provider, settings, submitted.job_id)

    assert summary.status == "completed_with_errors"
    assert (summary.success_count, summary.error_count) == (2, 1)
    results = _results(store, submitted.job_id)
    assert results["u1"]["status"] == "done"
    assert results["u3"]["error_message"] == "Request too large"
