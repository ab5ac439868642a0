"""
Logging setup and structured provisioning events.

configure_logging() wires the root logger for the CLI (text or JSON lines,
optional log file). ProvisionLogger emits one JSON entry per status-changing
event on the "provisioncore.events" logger so runs can be queried per device:

- step.running
- step.succeeded
- step.failed
- step.skipped
- run.completed
- dependency.satisfied
- dependency.unsatisfied

Usage:
    from provisioncore.logger import ProvisionLogger

    events = ProvisionLogger(device="LAB-PC-01", run_id="a1b2c3")
    events.log_step_failed("InstallApps", exit_code=1603, description="Fatal error during installation")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

__all__ = ["configure_logging", "JsonFormatter", "ProvisionLogger", "EVENTS_LOGGER_NAME"]

EVENTS_LOGGER_NAME = "provisioncore.events"

_events_logger = logging.getLogger(EVENTS_LOGGER_NAME)


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "info",
    log_format: str = "text",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Safe to call more than once; handlers installed by a previous call are
    replaced.

    Args:
        level: debug, info, warning or error
        log_format: "text" or "json"
        log_file: Optional file that receives the same records as stderr
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_provisioncore", False):
            root.removeHandler(handler)
            handler.close()

    if log_format == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, "_provisioncore", True)
        root.addHandler(handler)


class ProvisionLogger:
    """
    Structured logger for provisioning events.

    Each entry includes device and run identifiers for filtering, plus
    event-specific fields.
    """

    def __init__(
        self,
        device: str,
        run_id: str,
        service_name: str = "provisioncore",
    ):
        """
        Initialize the event logger.

        Args:
            device: Device being provisioned
            run_id: Identifier of this orchestrator run
            service_name: Service name for log attribution
        """
        self.device = device
        self.run_id = run_id
        self.service_name = service_name
        self._logger = _events_logger

    def _emit(self, event: str, level: str = "info", **fields: Any) -> None:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": self.service_name,
            "device": self.device,
            "run_id": self.run_id,
        }
        entry.update({k: v for k, v in fields.items() if v is not None})

        log_line = json.dumps(entry, default=str)
        if level == "error":
            self._logger.error(log_line)
        elif level == "warn":
            self._logger.warning(log_line)
        else:
            self._logger.info(log_line)

    def log_step_running(self, step: str, attempt: int = 1) -> None:
        """Log step start."""
        self._emit("step.running", step=step, attempt=attempt)

    def log_step_succeeded(
        self,
        step: str,
        exit_code: int,
        description: Optional[str] = None,
        version: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Log step success (including allow-listed non-zero codes)."""
        self._emit(
            "step.succeeded",
            step=step,
            exit_code=exit_code,
            description=description,
            version=version,
            duration_seconds=duration_seconds,
        )

    def log_step_failed(
        self,
        step: str,
        exit_code: Optional[int],
        description: Optional[str] = None,
        message: Optional[str] = None,
        critical: bool = False,
    ) -> None:
        """Log step failure."""
        self._emit(
            "step.failed",
            level="error",
            step=step,
            exit_code=exit_code,
            description=description,
            error_message=message,
            critical=critical,
        )

    def log_step_skipped(self, step: str, reason: str, blocked_by: Optional[list] = None) -> None:
        """Log a step skipped because of a failed or skipped prerequisite."""
        self._emit("step.skipped", level="warn", step=step, reason=reason, blocked_by=blocked_by)

    def log_dependency_result(
        self,
        dependency_id: str,
        satisfied: bool,
        changed: bool,
        attempts: int,
        source: Optional[str] = None,
        exit_code: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        """Log the final outcome of a dependency."""
        self._emit(
            "dependency.satisfied" if satisfied else "dependency.unsatisfied",
            level="info" if satisfied else "warn",
            dependency=dependency_id,
            changed=changed,
            attempts=attempts,
            source=source,
            exit_code=exit_code,
            error_message=message,
        )

    def log_run_completed(
        self,
        succeeded: int,
        failed: int,
        skipped: int,
        aborted_by: Optional[str] = None,
    ) -> None:
        """Log the end-of-run summary counts."""
        self._emit(
            "run.completed",
            level="error" if failed or aborted_by else "info",
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            aborted_by=aborted_by,
        )
