"""
Step definitions for the provisioning pipeline.

A step is an external collaborator: provisioncore only needs its `name` and a
`run()` returning an exit code and an optional message. Steps are built when
the pipeline is defined, executed at most once per run, and carry no status
of their own; outcomes live in the StatusStore.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, NamedTuple, Optional, Tuple

from provisioncore.errors import ConfigurationError
from provisioncore.exit_codes import ToolKind
from provisioncore.retry import RetryPolicy

__all__ = ["StepResult", "DeploymentStep", "CommandStep", "normalize_result"]


class StepResult(NamedTuple):
    """What a step reports back: exit code, message, and optionally a version."""
    exit_code: int
    message: Optional[str] = None
    version: Optional[str] = None


def normalize_result(value: Any) -> StepResult:
    """Accept StepResult, (code, message[, version]) tuples, a bare int, or None (success)."""
    if isinstance(value, StepResult):
        return value
    if value is None:
        return StepResult(0)
    if isinstance(value, bool):
        return StepResult(0 if value else 1)
    if isinstance(value, int):
        return StepResult(value)
    if isinstance(value, tuple) and 1 <= len(value) <= 3:
        code = value[0]
        if not isinstance(code, int) or isinstance(code, bool):
            raise TypeError(f"Step exit code must be an int, got {code!r}")
        message = None if len(value) < 2 or value[1] is None else str(value[1])
        version = None if len(value) < 3 or value[2] is None else str(value[2])
        return StepResult(code, message, version)
    raise TypeError(f"Unsupported step result: {value!r}")


@dataclass
class DeploymentStep:
    """
    A pipeline step backed by a Python callable.

    The callable runs in a child process (see provisioncore.process), so it
    may call sys.exit() or crash without affecting the orchestrator.

    Attributes:
        name: Unique step name (also its status store key)
        run_fn: Zero-argument callable returning a step result
        critical: Abort the whole run if this step fails
        depends_on: Names of earlier steps that must not be Failed/Skipped
        retry_policy: Retry behaviour for this step (None runs once)
        timeout_seconds: Child process timeout (None uses the configured default)
        exit_code_table: Exit code table used to classify the result
        app_name: Record successful versions in the AppRecord ledger under this name
    """
    name: str
    run_fn: Optional[Callable[[], Any]] = None
    critical: bool = False
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    retry_policy: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = None
    exit_code_table: ToolKind = ToolKind.INSTALLER_PACKAGE
    app_name: Optional[str] = None

    def __post_init__(self) -> None:
        self.depends_on = frozenset(self.depends_on)
        if type(self) is DeploymentStep and self.run_fn is None:
            raise ConfigurationError(f"Step '{self.name}' needs a run_fn")

    def run(self) -> StepResult:
        return normalize_result(self.run_fn())


@dataclass
class CommandStep(DeploymentStep):
    """
    A step that runs an external command as its child process.

    Attributes:
        argv: Command line
        env: Extra environment variables
        cwd: Working directory
        version: Version reported on success
    """
    argv: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    version: Optional[str] = None

    def __post_init__(self) -> None:
        super().__post_init__()
        self.argv = tuple(self.argv)
        if not self.argv:
            raise ConfigurationError(f"CommandStep '{self.name}' needs a non-empty argv")

    def run(self) -> StepResult:
        """Run the command in the current process; ProcessStepRunner uses argv directly."""
        from provisioncore.process import run_command

        outcome = run_command(self.argv, timeout=self.timeout_seconds, env=self.env, cwd=self.cwd)
        version = self.version if outcome.exit_code == 0 else None
        return StepResult(outcome.exit_code, outcome.message, version)
