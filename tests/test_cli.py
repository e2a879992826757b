import json

import pytest
from click.testing import CliRunner

from chunk_batch_manager.cli import cli
from chunk_batch_manager.core.errors import ProviderError
from chunk_batch_manager.core.utils import config as config_module

from conftest import OWNER, error_line, success_line


@pytest.fixture
def run(manager):
    runner = CliRunner()

    def invoke(*args):
        # -q keeps INFO logs out of the captured output.
        return runner.invoke(cli, ["-q", *args], obj={"manager": manager})

    return invoke


def _submit(run):
    result = run("submit", "u1", "u2", "u3", "--owner", OWNER)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_load_units(run, manager, tmp_path):
    source = tmp_path / "units.jsonl"
    source.write_text('{"id": "a1", "content": "First"}\n{"id": "a2", "content": "Second"}\n', encoding="utf-8")

    result = run("load-units", str(source), "--owner", OWNER, "--collection", "thesis")

    assert result.exit_code == 0
    assert result.output.split() == ["a1", "a2"]
    assert manager.store.get("units", "a2")["collection_id"] == "thesis"


def test_load_units_bad_file(run, tmp_path):
    source = tmp_path / "units.jsonl"
    source.write_text('{"id": "a1"}\n', encoding="utf-8")
    assert run("load-units", str(source), "--owner", OWNER, "--collection", "c").exit_code == 1


def test_estimate(run, units):
    result = run("estimate", "u1", "u2", "--owner", OWNER)
    assert result.exit_code == 0
    assert json.loads(result.output)["n_units"] == 2


def test_submit_with_options(run, provider, units):
    result = run("submit", "u1", "--owner", OWNER, "--task", "analysis",
                 "--option", "analysis_type=methodological", "--context", "title=My Thesis")
    assert result.exit_code == 0
    handle = json.loads(result.output)
    assert handle["status"] == "validating"
    assert provider.created[0]["metadata"]["task"] == "analysis"


def test_submit_bad_option_format(run, units):
    result = run("submit", "u1", "--owner", OWNER, "--option", "no-equals-sign")
    assert result.exit_code == 2


def test_submit_validation_error(run, units):
    assert run("submit", "ghost", "--owner", OWNER).exit_code == 1


def test_submit_provider_failure(run, provider, units):
    provider.fail_on["create"] = ProviderError("create failed")
    result = run("submit", "u1", "--owner", OWNER)
    assert result.exit_code == 1


def test_status(run, units, tmp_path):
    job_id = _submit(run)["job_id"]

    result = run("status", job_id, "--no-refresh", "--json")
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "validating"

    saved = tmp_path / "summary.txt"
    result = run("status", job_id, "--save", str(saved))
    assert result.exit_code == 0
    assert f"Job ID       : {job_id}" in result.output
    assert saved.exists() and saved.with_suffix(".json").exists()


def test_status_of_foreign_job(run, units):
    job_id = _submit(run)["job_id"]
    assert run("status", job_id, "--owner", "intruder").exit_code == 1


def test_poll_and_ingest(run, provider, units):
    handle = _submit(run)
    provider.complete(handle["provider_handle"], [success_line("u1"), success_line("u2")], [error_line("u3")])

    result = run("poll", handle["job_id"], "--interval", "1", "--no-auto-ingest")
    assert result.exit_code == 0
    assert json.loads(result.output) == {handle["job_id"]: "finalizing"}

    result = run("ingest", handle["job_id"], "--no-progress")
    assert result.exit_code == 0
    summary = json.loads(result.output)
    assert summary["status"] == "completed_with_errors"
    assert summary["success_count"] == 2


def test_poll_rejects_non_positive_interval(run):
    assert run("poll", "j1", "--interval", "0").exit_code == 2


def test_cancel(run, manager, provider, units):
    handle = _submit(run)
    provider.set_status(handle["provider_handle"], "in_progress")
    manager.refresh_status(handle["job_id"])

    result = run("cancel", handle["job_id"])
    assert result.exit_code == 0
    assert result.output.strip() == f"{handle['job_id']} cancelled"

    assert run("cancel", handle["job_id"]).exit_code == 1


def test_retry_commands(run, manager, provider, units):
    handle = _submit(run)
    provider.complete(handle["provider_handle"], [success_line("u1"), success_line("u2")], [error_line("u3")])
    manager.ingest(handle["job_id"])

    result = run("retry-failed", handle["job_id"], "--no-relaunch")
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "pending"

    result = run("resubmit", handle["job_id"], "--owner", OWNER)
    assert result.exit_code == 0
    relaunched = json.loads(result.output)
    assert relaunched["status"] == "validating"
    assert provider.custom_ids(relaunched["provider_handle"]) == ["u3"]

    assert run("retry-units", handle["job_id"], "u1").exit_code == 1


def test_list_jobs(run, units):
    job_id = _submit(run)["job_id"]
    result = run("list-jobs", "--owner", OWNER)
    assert result.exit_code == 0
    assert result.output.startswith(f"- Job ID: {job_id}, Task: summary, Status: validating")


def test_export(run, manager, provider, units, tmp_path):
    handle = _submit(run)
    provider.complete(handle["provider_handle"], [success_line(u) for u in ("u1", "u2", "u3")])
    manager.ingest(handle["job_id"])

    result = run("export", handle["job_id"], str(tmp_path), "--file-type", "CSV", "--only-succeed")

    assert result.exit_code == 0
    path = tmp_path / f"{handle['job_id']}_results.csv"
    assert result.output.strip() == str(path)
    assert len(path.read_text(encoding="utf-8").splitlines()) == 4


def test_online_command_without_api_key(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "default_config_path", lambda: tmp_path / "absent.yaml")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    for name in ("CHUNKBM_API", "CHUNKBM_DATABASE_PATH"):
        monkeypatch.delenv(name, raising=False)
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    result = runner.invoke(cli, ["-q", "--db", db, "submit", "u1", "--owner", OWNER], obj={})
    assert result.exit_code == 1

    # Offline commands work without credentials.
    result = runner.invoke(cli, ["-q", "--db", db, "list-jobs"], obj={})
    assert result.exit_code == 0


def test_invalid_config_file(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("api: Nowhere\n", encoding="utf-8")
    result = CliRunner().invoke(cli, ["--config", str(config), "list-jobs"], obj={})
    assert result.exit_code == 1
