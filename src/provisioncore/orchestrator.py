"""
Provisioning pipeline orchestrator.

Runs an ordered list of steps one at a time, each in its own child process.
Each step's outcome is persisted to the StatusStore, and the StatusStore is
the only source of truth when a run resumes after a crash or reboot.

Per step, in declared order:

1. Resume: a step whose stored status is Success is kept as-is unless it is
   forced to re-run.
2. Prerequisites: if any `depends_on` step is Failed or Skipped, the step is
   recorded as Skipped and not executed.
3. Execute: record Running, then run the step (retried per its RetryPolicy).
4. Classify the exit code with the step's table, then record Success or
   Failed.
5. Continue with the next step. Only a step marked `critical` that does not
   succeed aborts the run.

Status persistence is best-effort. A PersistenceError is logged and never
stops provisioning.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from provisioncore.config import ProvisionConfig
from provisioncore.errors import (
    ConfigurationError,
    PersistenceError,
    RecordNotFound,
    StepExecutionError,
    TransientNetworkError,
)
from provisioncore.exit_codes import ExitCategory, ExitCodeInfo, classify
from provisioncore.logger import ProvisionLogger
from provisioncore.network import NetworkStabilityChecker
from provisioncore.process import STEP_START_FAILED_EXIT_CODE, ProcessStepRunner, StepOutcome
from provisioncore.report import FailedStep, RunReport
from provisioncore.retry import NO_RETRY, RetryExecutor
from provisioncore.status_store import (
    ALLOWED_TRANSITIONS,
    TIMESTAMP_FORMAT,
    StatusStore,
    StepRecord,
    StepStatus,
    validate_key_name,
)
from provisioncore.steps import DeploymentStep

logger = logging.getLogger(__name__)

__all__ = ["Orchestrator", "FORCE_ALL"]

# force_rerun value that re-runs every step
FORCE_ALL = "all"

_BLOCKING_STATUSES = (StepStatus.FAILED, StepStatus.SKIPPED)


class _AttemptFailed(StepExecutionError):
    """One execution attempt of a step did not classify as success."""

    def __init__(self, step: DeploymentStep, outcome: StepOutcome, info: ExitCodeInfo):
        super().__init__(
            step.name,
            outcome.exit_code,
            outcome.message,
            retryable=info.category != ExitCategory.FATAL,
        )
        self.outcome = outcome
        self.info = info


class Orchestrator:
    """
    Runs a provisioning pipeline against a StatusStore.

    Args:
        steps: Pipeline in execution order
        store: Durable status store
        config: Run configuration (timeouts, device name, network settings)
        retry_executor: Executor used for per-step retry policies
        runner: Child process runner for steps
        events: Structured event logger
        run_id: Identifier for this run (generated if omitted)

    Raises:
        ConfigurationError: On duplicate or invalid step names, unknown
            dependencies, or dependencies on later steps
    """

    def __init__(
        self,
        steps: Sequence[DeploymentStep],
        store: StatusStore,
        config: Optional[ProvisionConfig] = None,
        retry_executor: Optional[RetryExecutor] = None,
        runner: Optional[ProcessStepRunner] = None,
        events: Optional[ProvisionLogger] = None,
        run_id: Optional[str] = None,
    ):
        self.config = config or ProvisionConfig()
        self.steps: Tuple[DeploymentStep, ...] = tuple(steps)
        self.store = store
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._retry = retry_executor or RetryExecutor(
            network=NetworkStabilityChecker.from_config(self.config)
        )
        self._runner = runner or ProcessStepRunner(self.config.default_step_timeout_seconds)
        self._events = events or ProvisionLogger(device=self.config.device_name, run_id=self.run_id)
        self._validate()

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]

    def _validate(self) -> None:
        seen: Set[str] = set()
        for step in self.steps:
            validate_key_name(step.name)
            if step.name in seen:
                raise ConfigurationError(f"Duplicate step name '{step.name}'")
            for dep in step.depends_on:
                if dep == step.name:
                    raise ConfigurationError(f"Step '{step.name}' depends on itself")
                if dep not in seen:
                    known = any(s.name == dep for s in self.steps)
                    reason = "a later step" if known else "an unknown step"
                    raise ConfigurationError(
                        f"Step '{step.name}' depends on {reason} '{dep}'"
                    )
            seen.add(step.name)

    # ------------------------------------------------------------------
    # Persistence helpers (best-effort)
    # ------------------------------------------------------------------

    def _write(
        self,
        step_name: str,
        status: StepStatus,
        exit_code: Optional[int] = None,
        error_message: Optional[str] = None,
        version: Optional[str] = None,
    ) -> StepRecord:
        try:
            return self.store.write(step_name, status, exit_code, error_message, version)
        except PersistenceError as e:
            logger.error("Could not persist %s=%s: %s", step_name, status.value, e)
            return StepRecord(
                step_name=step_name,
                status=status,
                timestamp=datetime.now().strftime(TIMESTAMP_FORMAT),
                exit_code=exit_code,
                error_message=error_message,
                version=version,
            )

    def _stored(self, step_name: str) -> Optional[StepRecord]:
        try:
            return self.store.read(step_name)
        except RecordNotFound:
            return None
        except PersistenceError as e:
            logger.error("Could not read status of %s: %s", step_name, e)
            return None

    def _dependency_status(
        self, dep: str, current: Dict[str, StepStatus]
    ) -> Optional[StepStatus]:
        try:
            return self.store.read(dep).status
        except RecordNotFound:
            return current.get(dep)
        except PersistenceError as e:
            logger.error("Could not read status of %s, using in-run status: %s", dep, e)
            return current.get(dep)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, step: DeploymentStep) -> Tuple[StepOutcome, ExitCodeInfo]:
        """Run a step under its retry policy; returns the final outcome and classification."""
        policy = step.retry_policy or NO_RETRY
        attempts = 0
        last: Dict[str, object] = {}

        def attempt() -> Tuple[StepOutcome, ExitCodeInfo]:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                self._events.log_step_running(step.name, attempt=attempts)
            try:
                outcome = self._runner.run(step)
            except Exception as e:
                logger.error("Runner failed for step %s: %s", step.name, e)
                outcome = StepOutcome(
                    exit_code=STEP_START_FAILED_EXIT_CODE,
                    message=f"step runner failed: {type(e).__name__}: {e}",
                )
            info = classify(outcome.exit_code, step.exit_code_table)
            last["outcome"], last["info"] = outcome, info
            if not info.is_success:
                raise _AttemptFailed(step, outcome, info)
            return outcome, info

        try:
            return self._retry.execute(
                attempt,
                policy,
                retry_if=lambda e: getattr(e, "retryable", False),
            )
        except _AttemptFailed as e:
            return e.outcome, e.info
        except TransientNetworkError as e:
            outcome = last["outcome"]
            message = f"{outcome.message or 'step failed'}; retry abandoned: {e}"
            return (
                StepOutcome(
                    exit_code=outcome.exit_code,
                    message=message,
                    version=outcome.version,
                    timed_out=outcome.timed_out,
                ),
                last["info"],
            )

    def _transition(self, step_name: str, current: Dict[str, StepStatus], to: StepStatus) -> None:
        frm = current.get(step_name, StepStatus.PENDING)
        if to not in ALLOWED_TRANSITIONS[frm]:
            raise RuntimeError(f"Illegal status transition for {step_name}: {frm.value} -> {to.value}")
        current[step_name] = to

    def run(self, force_rerun: Optional[Iterable[str]] = None) -> RunReport:
        """
        Run the pipeline.

        Args:
            force_rerun: Step names to execute even if already Success;
                include "all" to force every step

        Returns:
            RunReport summarizing this run
        """
        force: Set[str] = set(force_rerun or ())
        force_all = FORCE_ALL in force
        unknown = force - {FORCE_ALL} - set(self.step_names)
        if unknown:
            raise ConfigurationError(f"Unknown step(s) in force_rerun: {', '.join(sorted(unknown))}")

        logger.info("Starting run %s with %d step(s)", self.run_id, len(self.steps))

        current: Dict[str, StepStatus] = {}
        records: List[StepRecord] = []
        failed_steps: List[FailedStep] = []
        resumed: List[str] = []
        aborted_by: Optional[str] = None
        not_run: List[str] = []

        for index, step in enumerate(self.steps):
            forced = force_all or step.name in force

            if not forced:
                previous = self._stored(step.name)
                if previous is not None and previous.status == StepStatus.SUCCESS:
                    logger.info("Skipping step %s (already completed)", step.name)
                    current[step.name] = StepStatus.SUCCESS
                    records.append(previous)
                    resumed.append(step.name)
                    continue

            blocked_by = [
                dep
                for dep in sorted(step.depends_on)
                if self._dependency_status(dep, current) in _BLOCKING_STATUSES
            ]
            if blocked_by:
                reason = f"prerequisite not satisfied: {', '.join(blocked_by)}"
                logger.warning("Skipping step %s (%s)", step.name, reason)
                self._transition(step.name, current, StepStatus.SKIPPED)
                records.append(self._write(step.name, StepStatus.SKIPPED, error_message=reason))
                self._events.log_step_skipped(step.name, reason, blocked_by=blocked_by)
            else:
                records.append(self._run_step(step, current, failed_steps))

            if step.critical and current[step.name] != StepStatus.SUCCESS:
                aborted_by = step.name
                not_run = [s.name for s in self.steps[index + 1:]]
                logger.error(
                    "Critical step %s did not succeed; aborting run (%d step(s) not run)",
                    step.name,
                    len(not_run),
                )
                break

        report = RunReport(
            run_id=self.run_id,
            records=tuple(records),
            failed_steps=tuple(failed_steps),
            aborted_by=aborted_by,
            not_run=tuple(not_run),
            resumed=tuple(resumed),
        )
        self._events.log_run_completed(
            succeeded=report.succeeded,
            failed=report.failed,
            skipped=report.skipped,
            aborted_by=aborted_by,
        )
        logger.info(
            "Run %s finished: %d succeeded, %d failed, %d skipped",
            self.run_id,
            report.succeeded,
            report.failed,
            report.skipped,
        )
        return report

    def _run_step(
        self,
        step: DeploymentStep,
        current: Dict[str, StepStatus],
        failed_steps: List[FailedStep],
    ) -> StepRecord:
        logger.info("Running step %s", step.name)
        self._transition(step.name, current, StepStatus.RUNNING)
        self._write(step.name, StepStatus.RUNNING)
        self._events.log_step_running(step.name)

        outcome, info = self._execute(step)

        if info.is_success:
            self._transition(step.name, current, StepStatus.SUCCESS)
            record = self._write(
                step.name,
                StepStatus.SUCCESS,
                exit_code=outcome.exit_code,
                version=outcome.version,
            )
            self._events.log_step_succeeded(
                step.name,
                exit_code=outcome.exit_code,
                description=info.description,
                version=outcome.version,
                duration_seconds=round(outcome.duration_seconds, 3),
            )
            if step.app_name and outcome.version:
                try:
                    self.store.record_app(step.app_name, outcome.version)
                except PersistenceError as e:
                    logger.error("Could not record %s %s: %s", step.app_name, outcome.version, e)
            return record

        self._transition(step.name, current, StepStatus.FAILED)
        description = "Step timed out" if outcome.timed_out else info.description
        record = self._write(
            step.name,
            StepStatus.FAILED,
            exit_code=outcome.exit_code,
            error_message=outcome.message or description,
            version=outcome.version,
        )
        failed_steps.append(
            FailedStep(
                name=step.name,
                timestamp=record.timestamp,
                exit_code=outcome.exit_code,
                description=f"{info.name}: {description}",
                message=outcome.message,
            )
        )
        self._events.log_step_failed(
            step.name,
            exit_code=outcome.exit_code,
            description=description,
            message=outcome.message,
            critical=step.critical,
        )
        return record
