import json

from chunk_batch_manager.core.batching.ingest import ingest_results
from chunk_batch_manager.core.batching.submit import submit_job
from chunk_batch_manager.core.batching.summary import (
    aggregate_completion_tokens_stats,
    format_job_summary,
    get_general_summary_dict,
    get_job_summary_dict,
    save_job_summary,
)
from chunk_batch_manager.core.errors import ProviderError

from conftest import error_line, success_line


def _ingested(store, provider, settings, submitted):
    provider.complete(
        submitted.provider_handle,
        output_lines=[success_line("u1", completion_tokens=30), success_line("u2", completion_tokens=50)],
        error_lines=[error_line("u3")],
    )
    ingest_results(store, provider, settings, submitted.job_id)


def test_summary_of_fresh_job(store, submitted):
    summary = get_job_summary_dict(store, submitted.job_id)
    assert summary["status"] == "validating"
    assert summary["progress"]["pending"] == 3
    assert summary["progress"]["percentage"] == 0.0
    assert summary["progress"]["estimated_time_remaining"] is None
    assert summary["tokens"]["estimated_input"] > 0
    assert summary["costs"]["actual"] == 0
    assert "errors" not in summary


def test_summary_token_statistics(store, provider, settings, submitted):
    _ingested(store, provider, settings, submitted)
    tokens = get_job_summary_dict(store, submitted.job_id)["tokens"]
    assert tokens["completion"] == 80
    assert tokens["avg_completion"] == 40
    assert tokens["max_completion"] == 50
    assert tokens["min_completion"] == 30
    assert tokens["prompt"] == 200


def test_format_job_summary(store, provider, settings, submitted):
    _ingested(store, provider, settings, submitted)
    text = format_job_summary(get_job_summary_dict(store, submitted.job_id))
    assert f"Job ID       : {submitted.job_id}" in text
    assert "Status       : completed_with_errors (provider: completed)" in text
    assert "Failed     : 1 (33.33%)" in text


def test_format_includes_history(store, provider, settings, units):
    provider.fail_on["upload"] = ProviderError("quota exhausted")
    handle = submit_job(store, provider, settings, "owner-1", ["u1"])
    text = format_job_summary(get_job_summary_dict(store, handle.job_id))
    assert "=== History ===" in text
    assert "- [upload] quota exhausted" in text


def test_save_job_summary(store, provider, settings, submitted, tmp_path):
    _ingested(store, provider, settings, submitted)
    path = tmp_path / "summary.txt"
    summary = save_job_summary(store, submitted.job_id, path, return_as="dict", save_dict=True)
    assert path.read_text(encoding="utf-8").startswith("Job ID")
    assert json.loads((tmp_path / "summary.json").read_text(encoding="utf-8")) == summary


def test_general_summary(store, provider, settings, submitted):
    _ingested(store, provider, settings, submitted)
    summary = get_job_summary_dict(store, submitted.job_id)
    general = get_general_summary_dict([summary, summary])
    assert general["jobs"] == 2
    assert general["status_counts"] == {"completed_with_errors": 2}
    assert general["requests"]["failed"] == 2
    assert general["costs"]["actual"] == 2 * summary["costs"]["actual"]


def test_aggregate_completion_tokens_stats_without_completions():
    empty = {"tokens": {"completion": 0, "avg_completion": 0, "std_completion": 0,
                        "max_completion": 0, "min_completion": 0},
             "requests": {"completed": 0}}
    assert aggregate_completion_tokens_stats([empty]) == (0, 0, 0, 0, 0)
