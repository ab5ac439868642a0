"""
Pytest configuration and fixtures for provisioncore tests.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime
from typing import Generator, Iterable, List

import pytest

from provisioncore.process import StepOutcome
from provisioncore.status_store import MemoryTreeBackend, StatusStore


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> Generator[None, None, None]:
    """Keep PROVISIONCORE_* settings from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("PROVISIONCORE_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def state_root() -> Generator[str, None, None]:
    """Temporary root for a file-backed status tree."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "state")


# ============================================================================
# Timing and Network Fakes
# ============================================================================


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedNetwork:
    """Probe that returns scripted results, then the last one forever."""

    def __init__(self, results: Iterable[bool]):
        self._results = list(results)
        self.probes = 0

    def probe(self) -> bool:
        self.probes += 1
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


@pytest.fixture
def sleeper() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def network_up() -> ScriptedNetwork:
    return ScriptedNetwork([True])


# ============================================================================
# Store and Runner Fixtures
# ============================================================================


FIXED_NOW = datetime(2024, 3, 1, 9, 30, 0)


@pytest.fixture
def memory_store() -> StatusStore:
    """In-memory status store with a fixed clock."""
    return StatusStore(MemoryTreeBackend(), clock=lambda: FIXED_NOW)


class InlineRunner:
    """Runs steps in-process and records which ones were executed."""

    def __init__(self):
        self.executed: List[str] = []

    def run(self, step) -> StepOutcome:
        self.executed.append(step.name)
        result = step.run()
        return StepOutcome(
            exit_code=result.exit_code,
            message=result.message,
            version=result.version,
        )


@pytest.fixture
def inline_runner() -> InlineRunner:
    return InlineRunner()
