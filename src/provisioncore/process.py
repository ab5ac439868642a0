"""
Child process execution for steps and installer invocations.

A step's own process exit (sys.exit, os._exit, crashes) must never take down
the orchestrator, so every step runs in a child process and the parent only
observes the exit code and captured output.

- CommandStep and installer invocations run through subprocess.
- Python-callable steps run through multiprocessing. On platforms with fork
  the callable is inherited by the child; elsewhere it must be picklable.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from provisioncore.steps import CommandStep, DeploymentStep, normalize_result
from provisioncore.timeouts import DEFAULT_STEP_TIMEOUT_S, STEP_TIMEOUT_EXIT_CODE

logger = logging.getLogger(__name__)

__all__ = ["StepOutcome", "ProcessStepRunner", "run_command", "STEP_START_FAILED_EXIT_CODE"]

# Win32 ERROR_FILE_NOT_FOUND, reported when a command cannot be started
COMMAND_NOT_FOUND_EXIT_CODE = 2

# Win32 ERROR_INVALID_FUNCTION, reported when a step process cannot be started
STEP_START_FAILED_EXIT_CODE = 1

# Time a child gets to exit after reporting, or after terminate()
_EXIT_GRACE_S = 5.0

_MESSAGE_LIMIT = 500


@dataclass(frozen=True)
class StepOutcome:
    """What the parent observed from a child execution."""
    exit_code: int
    message: Optional[str] = None
    version: Optional[str] = None
    timed_out: bool = False
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def _tail(text: str) -> Optional[str]:
    text = (text or "").strip()
    if not text:
        return None
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[-1][-_MESSAGE_LIMIT:] if lines else None


def run_command(
    argv: Sequence[str],
    *,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
) -> StepOutcome:
    """
    Run a command as a child process with consistent logging.

    Never raises for a failing or missing command; the outcome carries the
    exit code (STEP_TIMEOUT_EXIT_CODE on timeout).
    """
    argv_list = list(argv)
    logger.info("CMD %s", _fmt_argv(argv_list))
    started = time.monotonic()
    try:
        p = subprocess.run(
            argv_list,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.error("CMD timed out after %ss: %s", timeout, _fmt_argv(argv_list))
        return StepOutcome(
            exit_code=STEP_TIMEOUT_EXIT_CODE,
            message=f"timeout after {timeout}s",
            timed_out=True,
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr),
            duration_seconds=time.monotonic() - started,
        )
    except OSError as e:
        logger.error("CMD could not start: %s (%s)", _fmt_argv(argv_list), e)
        return StepOutcome(
            exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
            message=f"could not start {argv_list[0]}: {e}",
            duration_seconds=time.monotonic() - started,
        )

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    message = None
    if p.returncode != 0:
        message = _tail(p.stderr) or _tail(p.stdout)
    return StepOutcome(
        exit_code=p.returncode,
        message=message,
        stdout=p.stdout or "",
        stderr=p.stderr or "",
        duration_seconds=time.monotonic() - started,
    )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def _limit(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return str(text)[:_MESSAGE_LIMIT]


def _child_main(step: DeploymentStep, conn) -> None:
    """Entry point in the child process; reports the step result over `conn`."""
    try:
        result = normalize_result(step.run())
        conn.send((result.exit_code, _limit(result.message), _limit(result.version)))
    except SystemExit:
        # Let the process exit code speak for itself.
        raise
    except BaseException as e:
        conn.send((1, _limit(f"{type(e).__name__}: {e}"), None))
    finally:
        conn.close()


def _mp_context():
    if "fork" in multiprocessing.get_all_start_methods():
        return multiprocessing.get_context("fork")
    return multiprocessing.get_context()


def _stop(proc) -> None:
    proc.terminate()
    proc.join(_EXIT_GRACE_S)
    if proc.is_alive():
        proc.kill()
        proc.join()


class ProcessStepRunner:
    """
    Runs a step in an isolated child process and reports its outcome.

    Never raises for a failing step: start failures, crashes and timeouts
    all come back as a StepOutcome.

    Args:
        default_timeout: Timeout for steps without their own timeout_seconds
    """

    def __init__(self, default_timeout: float = DEFAULT_STEP_TIMEOUT_S):
        self.default_timeout = default_timeout

    def run(self, step: DeploymentStep) -> StepOutcome:
        timeout = step.timeout_seconds or self.default_timeout
        if isinstance(step, CommandStep):
            outcome = run_command(step.argv, timeout=timeout, env=step.env, cwd=step.cwd)
            if outcome.exit_code == 0 and step.version:
                return StepOutcome(
                    exit_code=0,
                    version=step.version,
                    stdout=outcome.stdout,
                    stderr=outcome.stderr,
                    duration_seconds=outcome.duration_seconds,
                )
            return outcome
        return self._run_callable(step, timeout)

    def _run_callable(self, step: DeploymentStep, timeout: float) -> StepOutcome:
        ctx = _mp_context()
        parent_conn, child_conn = ctx.Pipe(duplex=False)
        started = time.monotonic()
        try:
            proc = ctx.Process(
                target=_child_main,
                args=(step, child_conn),
                name=f"step-{step.name}",
            )
            proc.start()
        except Exception as e:
            # Under spawn the step is pickled here; unpicklable steps fail to start.
            logger.error("Could not start step %s: %s", step.name, e)
            parent_conn.close()
            child_conn.close()
            return StepOutcome(
                exit_code=STEP_START_FAILED_EXIT_CODE,
                message=_limit(f"could not start step process: {type(e).__name__}: {e}"),
                duration_seconds=time.monotonic() - started,
            )
        child_conn.close()

        deadline = started + timeout
        try:
            # Read before join: a child blocked on a full pipe never exits.
            payload = None
            try:
                if parent_conn.poll(max(deadline - time.monotonic(), 0)):
                    payload = parent_conn.recv()
            except (EOFError, OSError):
                payload = None

            if payload is None:
                proc.join(max(deadline - time.monotonic(), 0))
            else:
                proc.join(max(deadline - time.monotonic(), _EXIT_GRACE_S))

            if proc.is_alive():
                _stop(proc)
                if payload is None:
                    logger.error("Step %s timed out after %ss; terminated", step.name, timeout)
                    return StepOutcome(
                        exit_code=STEP_TIMEOUT_EXIT_CODE,
                        message=f"timeout after {timeout}s",
                        timed_out=True,
                        duration_seconds=time.monotonic() - started,
                    )
                logger.warning("Step %s reported a result but did not exit; terminated", step.name)

            duration = time.monotonic() - started
            if payload is not None:
                exit_code, message, version = payload
                return StepOutcome(
                    exit_code=exit_code,
                    message=message,
                    version=version,
                    duration_seconds=duration,
                )

            # Child exited without reporting (sys.exit, os._exit, crash).
            exit_code = proc.exitcode if proc.exitcode is not None else 1
            if exit_code < 0:
                message = f"step process terminated by signal {-exit_code}"
            else:
                message = None if exit_code == 0 else f"step process exited with code {exit_code}"
            return StepOutcome(exit_code=exit_code, message=message, duration_seconds=duration)
        finally:
            parent_conn.close()
