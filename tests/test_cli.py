"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from uidiff.cli import cli
from uidiff.models.batch_task import BatchTask, BatchTaskItem, BatchTotals
from uidiff.models.config import UIDiffConfig
from uidiff.storage.json_store import JsonBatchTaskRepository


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "uidiff.json"
    UIDiffConfig(data_dir=str(tmp_path / "data")).save(path)
    return str(path)


class TestInit:
    """Tests for `uidiff init`."""

    def test_creates_config(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        result = runner.invoke(cli, ["init", "--data-dir", "/srv/uidiff"])

        assert result.exit_code == 0
        data = json.loads((tmp_path / "uidiff.json").read_text())
        assert data["data_dir"] == "/srv/uidiff"

    def test_keeps_existing_config_when_declined(self, runner, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "uidiff.json").write_text("{}")

        result = runner.invoke(cli, ["init"], input="n\n")

        assert result.exit_code == 0
        assert (tmp_path / "uidiff.json").read_text() == "{}"


class TestBatchCommands:
    """Tests for `uidiff batch ...`."""

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["batch", "stats", "-c", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "Config file not found" in result.output

    def test_run_rejects_invalid_batch(self, runner, config_file):
        result = runner.invoke(cli, ["batch", "run", "--name", "Empty", "-c", config_file])
        assert result.exit_code == 1
        assert "at least one URL" in result.output

    def test_list_empty(self, runner, config_file):
        result = runner.invoke(cli, ["batch", "list", "-c", config_file])
        assert result.exit_code == 0
        assert "No batches found" in result.output

    def test_list_bad_status(self, runner, config_file):
        result = runner.invoke(cli, ["batch", "list", "--status", "paused", "-c", config_file])
        assert result.exit_code == 1
        assert "Unknown batch status" in result.output

    def test_stats_and_export(self, runner, config_file, tmp_path):
        JsonBatchTaskRepository(tmp_path / "data").create(BatchTask(
            id="batch_1", name="Done", status="partial",
            totals=BatchTotals(total=2, success=1, failed=1),
            items=[BatchTaskItem(url="https://a.example.com/", status="completed", similarity=99.0),
                   BatchTaskItem(url="https://b.example.com/", status="failed", error="HTTP 500")],
        ))

        stats = runner.invoke(cli, ["batch", "stats", "-c", config_file])
        assert stats.exit_code == 0
        assert "partial" in stats.output

        out = tmp_path / "export.json"
        exported = runner.invoke(cli, ["batch", "export", "batch_1", "-o", str(out), "-c", config_file])
        assert exported.exit_code == 0
        data = json.loads(out.read_text())
        assert data["task"]["status"] == "partial"
        assert data["items"][1]["error"] == "HTTP 500"

    def test_show_unknown_batch(self, runner, config_file):
        result = runner.invoke(cli, ["batch", "show", "batch_nope", "-c", config_file])
        assert result.exit_code == 1
        assert "Batch not found" in result.output


class TestReportAndScriptCommands:
    """Tests for `uidiff report ...` and `uidiff script ...`."""

    def test_report_show_unknown(self, runner, config_file):
        result = runner.invoke(cli, ["report", "show", "rpt_nope", "-c", config_file])
        assert result.exit_code == 1
        assert "Report not found" in result.output

    def test_script_add_list_delete(self, runner, config_file, tmp_path):
        actions = tmp_path / "actions.json"
        actions.write_text(json.dumps([
            {"action_type": "click", "selector": "#accept"},
            {"action_type": "wait", "value": "500"},
        ]))

        added = runner.invoke(cli, ["script", "add", "Cookies", "--file", str(actions), "-c", config_file])
        assert added.exit_code == 0
        assert "2 actions" in added.output

        listed = runner.invoke(cli, ["script", "list", "-c", config_file])
        assert "Cookies" in listed.output
        script_id = listed.output.split()[0]
        assert script_id.startswith("script_")

        deleted = runner.invoke(cli, ["script", "delete", script_id, "-c", config_file])
        assert "Deleted script" in deleted.output

    def test_script_add_invalid_action(self, runner, config_file, tmp_path):
        actions = tmp_path / "actions.json"
        actions.write_text(json.dumps([{"action_type": "teleport"}]))

        result = runner.invoke(cli, ["script", "add", "Bad", "--file", str(actions), "-c", config_file])

        assert result.exit_code == 1
        assert "unknown type" in result.output
