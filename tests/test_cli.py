"""
Tests for the provisioncore CLI.
"""

import csv
import json
import logging
import os
import sys

import pytest
import yaml
from click.testing import CliRunner

from provisioncore.cli import main
from provisioncore.network import NetworkStabilityChecker
from provisioncore.status_store import FileTreeBackend, StatusStore, StepStatus


def py(code):
    return [sys.executable, "-c", code]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers configure_logging attached to CliRunner's streams."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_provisioncore", False):
            root.removeHandler(handler)


@pytest.fixture
def write_pipeline(tmp_path):
    def _write(steps):
        path = tmp_path / "provision.yaml"
        path.write_text(yaml.safe_dump({"steps": steps}), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def passing_pipeline(write_pipeline):
    return write_pipeline([
        {"name": "InstallTool", "command": py("pass")},
        {"name": "InstallApps", "command": py("pass"), "depends_on": ["InstallTool"], "version": "1.0"},
    ])


@pytest.fixture
def failing_pipeline(write_pipeline):
    return write_pipeline([
        {"name": "InstallTool", "command": py("import sys; sys.exit(1)")},
        {"name": "InstallApps", "command": py("pass"), "depends_on": ["InstallTool"]},
    ])


def invoke(runner, state_root, *args):
    return runner.invoke(
        main,
        ["--state-root", state_root, "--skip-network-check", "--log-level", "error", *args],
    )


class TestRun:
    def test_all_steps_succeed(self, runner, state_root, passing_pipeline):
        result = invoke(runner, state_root, "--pipeline", passing_pipeline)

        assert result.exit_code == 0, result.output
        assert "Provisioning Summary" in result.output
        assert "Success: 2" in result.output

    def test_failure_and_skip_exit_one(self, runner, state_root, failing_pipeline):
        result = invoke(runner, state_root, "--pipeline", failing_pipeline)

        assert result.exit_code == 1
        assert "Failed: 1" in result.output
        assert "Skipped: 1" in result.output
        assert "ERROR_INVALID_FUNCTION" in result.output
        store = StatusStore(FileTreeBackend(state_root))
        assert store.read("InstallApps").status == StepStatus.SKIPPED

    def test_second_run_resumes(self, runner, state_root, passing_pipeline):
        invoke(runner, state_root, "--pipeline", passing_pipeline)
        result = invoke(runner, state_root, "--pipeline", passing_pipeline)

        assert result.exit_code == 0
        assert "(previous run)" in result.output

    def test_force_rerun(self, runner, state_root, passing_pipeline):
        invoke(runner, state_root, "--pipeline", passing_pipeline)
        result = invoke(runner, state_root, "--pipeline", passing_pipeline, "--force-rerun", "all")

        assert result.exit_code == 0
        assert "(previous run)" not in result.output

    def test_unknown_force_rerun_is_fatal(self, runner, state_root, passing_pipeline):
        result = invoke(runner, state_root, "--pipeline", passing_pipeline, "--force-rerun", "Ghost")
        assert result.exit_code == 2
        assert "Ghost" in result.output

    def test_json_summary(self, runner, state_root, passing_pipeline):
        result = invoke(runner, state_root, "--pipeline", passing_pipeline, "--summary-format", "json")

        assert result.exit_code == 0
        summary = json.loads(result.stdout)
        assert summary["counts"] == {"success": 2, "failed": 0, "skipped": 0}
        assert [s["step_name"] for s in summary["steps"]] == ["InstallTool", "InstallApps"]

    def test_export_after_run(self, runner, state_root, passing_pipeline, tmp_path):
        out = str(tmp_path / "status.csv")
        result = invoke(runner, state_root, "--pipeline", passing_pipeline, "--export-csv", out)

        assert result.exit_code == 0
        with open(out, newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        assert [r[0] for r in rows[1:]] == ["InstallTool", "InstallApps"]
        assert rows[2][5] == "1.0"


class TestNetworkWait:
    def test_flags_passed_through(self, runner, state_root, passing_pipeline, monkeypatch):
        calls = []

        def fake_wait(self, max_retries, delay_seconds, continuous_check=False):
            calls.append((max_retries, delay_seconds, continuous_check))
            return False

        monkeypatch.setattr(NetworkStabilityChecker, "wait_for_stability", fake_wait)
        result = runner.invoke(
            main,
            [
                "--state-root", state_root,
                "--pipeline", passing_pipeline,
                "--network-retry-count", "3",
                "--network-retry-delay-seconds", "1",
                "--no-continuous-network-check",
                "--log-level", "error",
            ],
        )

        assert calls == [(3, 1, False)]
        assert result.exit_code == 0

    def test_skip_network_check(self, runner, state_root, passing_pipeline, monkeypatch):
        def fail_wait(*args, **kwargs):
            raise AssertionError("network wait should be skipped")

        monkeypatch.setattr(NetworkStabilityChecker, "wait_for_stability", fail_wait)
        assert invoke(runner, state_root, "--pipeline", passing_pipeline).exit_code == 0


class TestHistory:
    def test_clear_history_dry_run(self, runner, state_root, passing_pipeline):
        invoke(runner, state_root, "--pipeline", passing_pipeline)
        result = invoke(runner, state_root, "--clear-history", "--dry-run")

        assert result.exit_code == 0
        assert "Would clear 2 step record(s)" in result.output
        assert len(StatusStore(FileTreeBackend(state_root)).read_all()) == 2

    def test_clear_history(self, runner, state_root, passing_pipeline):
        invoke(runner, state_root, "--pipeline", passing_pipeline)
        result = invoke(runner, state_root, "--clear-history")

        assert result.exit_code == 0
        assert "Cleared 2 step record(s)" in result.output
        assert StatusStore(FileTreeBackend(state_root)).read_all() == []

    def test_export_only(self, runner, state_root, passing_pipeline, tmp_path):
        invoke(runner, state_root, "--pipeline", passing_pipeline)
        out = str(tmp_path / "only.csv")
        result = invoke(runner, state_root, "--export-csv", out)

        assert result.exit_code == 0
        assert "Exported 2 step record(s)" in result.output
        assert os.path.exists(out)


class TestFatalErrors:
    def test_nothing_to_do(self, runner, state_root):
        assert invoke(runner, state_root).exit_code == 2

    def test_dry_run_requires_clear_history(self, runner, state_root, passing_pipeline):
        result = invoke(runner, state_root, "--pipeline", passing_pipeline, "--dry-run")
        assert result.exit_code == 2

    def test_invalid_pipeline(self, runner, state_root, write_pipeline):
        path = write_pipeline([{"name": "NoAction"}])
        result = invoke(runner, state_root, "--pipeline", path)
        assert result.exit_code == 2
        assert "Invalid pipeline" in result.output

    def test_missing_pipeline(self, runner, state_root, tmp_path):
        result = invoke(runner, state_root, "--pipeline", str(tmp_path / "missing.yaml"))
        assert result.exit_code == 2

    def test_invalid_config_value(self, runner, state_root, passing_pipeline):
        result = invoke(runner, state_root, "--pipeline", passing_pipeline, "--network-retry-count", "0")
        assert result.exit_code == 2

    def test_unwritable_state_root_does_not_stop_run(self, runner, tmp_path, passing_pipeline):
        """Status writes are best-effort; provisioning still completes."""
        blocker = tmp_path / "file"
        blocker.write_text("x")
        result = invoke(runner, str(blocker / "state"), "--pipeline", passing_pipeline)
        assert result.exit_code == 0
        assert "Success: 2" in result.output

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output
