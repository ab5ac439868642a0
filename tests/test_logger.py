"""
Tests for ProvisionLogger - structured provisioning events - and configure_logging.
"""

import json
import logging
from io import StringIO

import pytest

from provisioncore.logger import EVENTS_LOGGER_NAME, JsonFormatter, ProvisionLogger, configure_logging


@pytest.fixture
def captured_logs():
    """Capture log output for testing."""
    return StringIO()


@pytest.fixture
def events(captured_logs):
    """ProvisionLogger whose events go to captured output."""
    events_logger = logging.getLogger(EVENTS_LOGGER_NAME)
    handler = logging.StreamHandler(captured_logs)
    handler.setFormatter(logging.Formatter("%(message)s"))
    events_logger.addHandler(handler)
    previous_level = events_logger.level
    events_logger.setLevel(logging.DEBUG)

    yield ProvisionLogger(device="LAB-PC-01", run_id="run-1", service_name="test-service")

    events_logger.removeHandler(handler)
    events_logger.setLevel(previous_level)


def parse_log_line(captured_logs) -> dict:
    """Parse the last JSON log line."""
    lines = captured_logs.getvalue().strip().split("\n")
    if lines and lines[-1]:
        return json.loads(lines[-1])
    return {}


class TestStepEvents:
    """Tests for step.* events."""

    def test_step_running(self, events, captured_logs):
        events.log_step_running("InstallGit", attempt=2)

        log = parse_log_line(captured_logs)
        assert log["event"] == "step.running"
        assert log["step"] == "InstallGit"
        assert log["attempt"] == 2
        assert log["device"] == "LAB-PC-01"
        assert log["run_id"] == "run-1"
        assert log["service"] == "test-service"

    def test_step_succeeded(self, events, captured_logs):
        events.log_step_succeeded("InstallGit", exit_code=3010, description="Restart required", version="2.44.0")

        log = parse_log_line(captured_logs)
        assert log["event"] == "step.succeeded"
        assert log["exit_code"] == 3010
        assert log["version"] == "2.44.0"
        assert "duration_seconds" not in log

    def test_step_failed(self, events, captured_logs):
        events.log_step_failed(
            "InstallApps",
            exit_code=1603,
            description="Fatal error during installation",
            message="disk full",
            critical=True,
        )

        log = parse_log_line(captured_logs)
        assert log["event"] == "step.failed"
        assert log["level"] == "error"
        assert log["error_message"] == "disk full"
        assert log["critical"] is True

    def test_step_skipped(self, events, captured_logs):
        events.log_step_skipped("InstallApps", "prerequisite not satisfied: InstallTool", blocked_by=["InstallTool"])

        log = parse_log_line(captured_logs)
        assert log["event"] == "step.skipped"
        assert log["level"] == "warn"
        assert log["blocked_by"] == ["InstallTool"]


class TestRunAndDependencyEvents:
    def test_run_completed(self, events, captured_logs):
        events.log_run_completed(succeeded=3, failed=0, skipped=0)

        log = parse_log_line(captured_logs)
        assert log["event"] == "run.completed"
        assert log["level"] == "info"
        assert log["succeeded"] == 3
        assert "aborted_by" not in log

    def test_run_aborted(self, events, captured_logs):
        events.log_run_completed(succeeded=0, failed=1, skipped=0, aborted_by="InstallTool")
        log = parse_log_line(captured_logs)
        assert log["level"] == "error"
        assert log["aborted_by"] == "InstallTool"

    def test_dependency_satisfied(self, events, captured_logs):
        events.log_dependency_result("Git.Git", satisfied=True, changed=False, attempts=0, source="detected")

        log = parse_log_line(captured_logs)
        assert log["event"] == "dependency.satisfied"
        assert log["dependency"] == "Git.Git"
        assert log["changed"] is False
        assert log["attempts"] == 0

    def test_dependency_unsatisfied(self, events, captured_logs):
        events.log_dependency_result("Git.Git", satisfied=False, changed=False, attempts=3, message="no source")

        log = parse_log_line(captured_logs)
        assert log["event"] == "dependency.unsatisfied"
        assert log["error_message"] == "no source"


class TestConfigureLogging:
    """Tests for root logger setup."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        level = root.level
        yield
        for handler in list(root.handlers):
            if getattr(handler, "_provisioncore", False):
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)

    def _ours(self):
        return [h for h in logging.getLogger().handlers if getattr(h, "_provisioncore", False)]

    def test_repeat_calls_replace_handlers(self):
        configure_logging("info")
        configure_logging("debug")
        assert len(self._ours()) == 1
        assert logging.getLogger().level == logging.DEBUG

    def test_json_format(self):
        configure_logging("info", log_format="json")
        assert isinstance(self._ours()[0].formatter, JsonFormatter)

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "provision.log"
        configure_logging("info", log_file=str(log_file))

        logging.getLogger("provisioncore.test").info("hello file")
        for handler in self._ours():
            handler.flush()

        assert len(self._ours()) == 2
        assert "hello file" in log_file.read_text(encoding="utf-8")

    def test_json_formatter_fields(self):
        record = logging.LogRecord("provisioncore.x", logging.WARNING, __file__, 1, "disk %s", ("full",), None)
        entry = json.loads(JsonFormatter().format(record))
        assert entry["level"] == "warning"
        assert entry["logger"] == "provisioncore.x"
        assert entry["message"] == "disk full"
