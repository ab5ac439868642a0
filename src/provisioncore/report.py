"""
End-of-run summary.

RunReport is a read-only view of what a run did. The caller decides how to
present it: format_text() gives the console summary, to_dict() is for JSON
export. A failed step is always shown with its classified description, never
with a bare numeric code alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from provisioncore.status_store import StepRecord, StepStatus

__all__ = ["FailedStep", "RunReport"]


# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    CYAN = "\033[96m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


class _NoColors:
    GREEN = YELLOW = RED = CYAN = RESET = BOLD = ""


@dataclass(frozen=True)
class FailedStep:
    """A failed step as shown in the summary."""
    name: str
    timestamp: Optional[str]
    exit_code: Optional[int]
    description: str
    message: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "timestamp": self.timestamp,
            "exit_code": self.exit_code,
            "description": self.description,
            "message": self.message,
        }


@dataclass(frozen=True)
class RunReport:
    """Outcome of one orchestrator run."""
    run_id: str
    records: Tuple[StepRecord, ...]
    failed_steps: Tuple[FailedStep, ...] = ()
    aborted_by: Optional[str] = None
    not_run: Tuple[str, ...] = ()
    resumed: Tuple[str, ...] = ()

    def _count(self, status: StepStatus) -> int:
        return sum(1 for r in self.records if r.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(StepStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(StepStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @property
    def exit_code(self) -> int:
        """0 when every step succeeded, 1 otherwise."""
        if self.failed or self.skipped or self.aborted_by or self.not_run:
            return 1
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "counts": {
                "success": self.succeeded,
                "failed": self.failed,
                "skipped": self.skipped,
            },
            "aborted_by": self.aborted_by,
            "not_run": list(self.not_run),
            "resumed": list(self.resumed),
            "failed_steps": [f.to_dict() for f in self.failed_steps],
            "steps": [r.to_dict() for r in self.records],
        }

    def format_text(self, use_colors: bool = False) -> str:
        """Human-readable summary."""
        c = Colors if use_colors else _NoColors

        lines: List[str] = [
            f"{c.BOLD}Provisioning Summary{c.RESET}",
            "=" * 40,
            f"Run: {self.run_id}",
            f"{c.GREEN}Success: {self.succeeded}{c.RESET}  "
            f"{c.RED}Failed: {self.failed}{c.RESET}  "
            f"{c.YELLOW}Skipped: {self.skipped}{c.RESET}",
        ]

        symbols = {
            StepStatus.SUCCESS: f"{c.GREEN}[OK]{c.RESET}",
            StepStatus.FAILED: f"{c.RED}[FAIL]{c.RESET}",
            StepStatus.SKIPPED: f"{c.YELLOW}[SKIP]{c.RESET}",
            StepStatus.RUNNING: f"{c.CYAN}[RUN]{c.RESET}",
            StepStatus.PENDING: "[ ]",
        }
        if self.records:
            lines.extend(["", f"{c.BOLD}Steps:{c.RESET}"])
            for record in self.records:
                note = " (previous run)" if record.step_name in self.resumed else ""
                lines.append(
                    f"  {symbols.get(record.status, '?')} {record.step_name}: "
                    f"{record.status.value}{note}"
                )

        if self.failed_steps:
            lines.extend(["", f"{c.BOLD}Failed steps:{c.RESET}"])
            for failed in self.failed_steps:
                code = "n/a" if failed.exit_code is None else str(failed.exit_code)
                lines.append(f"  {failed.name} at {failed.timestamp or 'unknown time'}")
                lines.append(f"    Exit code: {code} - {failed.description}")
                if failed.message:
                    lines.append(f"    Error: {failed.message}")

        if self.aborted_by:
            lines.extend([
                "",
                f"{c.RED}Run aborted: critical step '{self.aborted_by}' did not succeed{c.RESET}",
            ])
            if self.not_run:
                lines.append(f"  Not run: {', '.join(self.not_run)}")

        return "\n".join(lines)
