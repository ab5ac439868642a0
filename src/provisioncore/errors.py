"""
Error taxonomy for provisioncore.

All errors derive from ProvisionError so callers can catch the whole family.

- TransientNetworkError: network gating failed; recovered locally by the
  retry primitives and surfaced only once retries are exhausted.
- StepExecutionError: a step returned a non-success exit code.
- DependencyUnsatisfiedError: every install path for a dependency failed.
  DependencyInstaller returns results instead of raising this; callers opt in
  via DependencyResult.raise_for_status().
- PersistenceError: the status store could not be read or written.
- ConfigurationError: invalid policy or pipeline values, raised at
  construction time before any step runs.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ProvisionError",
    "TransientNetworkError",
    "StepExecutionError",
    "DependencyUnsatisfiedError",
    "PersistenceError",
    "RecordNotFound",
    "ConfigurationError",
]


class ProvisionError(Exception):
    """Base class for provisioncore errors."""


class TransientNetworkError(ProvisionError):
    """Network was unreachable when an operation required it."""


class StepExecutionError(ProvisionError):
    """A step finished with an exit code that does not classify as success."""

    def __init__(
        self,
        step_name: str,
        exit_code: int,
        message: Optional[str] = None,
        retryable: bool = True,
    ):
        self.step_name = step_name
        self.exit_code = exit_code
        self.message = message
        self.retryable = retryable
        detail = f": {message}" if message else ""
        super().__init__(f"Step '{step_name}' failed with exit code {exit_code}{detail}")


class DependencyUnsatisfiedError(ProvisionError):
    """All sources and the direct-download fallback failed for a dependency."""

    def __init__(self, dependency_id: str, message: Optional[str] = None):
        self.dependency_id = dependency_id
        self.message = message
        super().__init__(
            f"Dependency '{dependency_id}' could not be satisfied"
            + (f": {message}" if message else "")
        )


class PersistenceError(ProvisionError):
    """The status store backend is unavailable or rejected a read/write."""


class RecordNotFound(PersistenceError):
    """No record exists for the requested key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No record for '{key}'")


class ConfigurationError(ProvisionError, ValueError):
    """Invalid configuration value (e.g. max_retries=0)."""
