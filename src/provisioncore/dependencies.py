"""
Dependency resolution and installer bootstrap.

A dependency is a tool the pipeline needs (a package manager, a runtime).
For each dependency, DependencyInstaller ends in exactly one of these ways:

1. Detection: it is already present (changed=False, attempts=0).
2. Source success: one of the candidate sources installed it. Sources are
   tried in the order given. A "not found on this source" result moves to the
   next source, and so does any other failure, after it is logged.
3. Direct download: no source worked, and the fallback installer was
   downloaded and installed. Any exception here is terminal for the
   dependency.
4. Exhaustion: everything failed. The result is unsatisfied and nothing is
   raised; the caller decides how severe that is.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import httpx

from provisioncore.errors import DependencyUnsatisfiedError, ProvisionError, TransientNetworkError
from provisioncore.exit_codes import ExitCategory, ExitCodeInfo, ToolKind, classify, describe
from provisioncore.logger import ProvisionLogger
from provisioncore.process import StepOutcome, run_command
from provisioncore.retry import NO_RETRY, RetryExecutor, RetryPolicy
from provisioncore.steps import DeploymentStep, StepResult
from provisioncore.timeouts import DEFAULT_STEP_TIMEOUT_S, DOWNLOAD_TIMEOUT_S

logger = logging.getLogger(__name__)

__all__ = [
    "CandidateSource",
    "Dependency",
    "DependencyResult",
    "DependencyInstaller",
    "DependencyStep",
    "CommandProbe",
    "WhichProbe",
    "command_probe",
    "which_probe",
    "package_registration_probe",
    "download_file",
    "DEPENDENCY_FAILED_EXIT_CODE",
]

# Reported by DependencyStep when any dependency stays unsatisfied
# (Windows Installer ERROR_INSTALL_FAILURE)
DEPENDENCY_FAILED_EXIT_CODE = 1603

SOURCE_DETECTED = "detected"
SOURCE_DIRECT_DOWNLOAD = "direct-download"

CommandRunner = Callable[..., StepOutcome]
Downloader = Callable[[str, Path], Path]


@dataclass(frozen=True)
class CandidateSource:
    """One place a dependency can be installed from, and the command to do it."""
    source: str
    invocation: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "invocation", tuple(self.invocation))


@dataclass
class Dependency:
    """
    A required tool and the ways to obtain it.

    `satisfied`, `changed` and `attempts` are filled in by
    DependencyInstaller.ensure().
    """
    id: str
    display_name: Optional[str] = None
    candidate_sources: Sequence[CandidateSource] = ()
    fallback_installer_uri: Optional[str] = None
    fallback_installer_args: Sequence[str] = ()
    detect: Optional[Callable[[], bool]] = None
    version: Optional[str] = None
    retry_policy: RetryPolicy = NO_RETRY
    source_tool_kind: ToolKind = ToolKind.PACKAGE_MANAGER_TOOL
    satisfied: bool = field(default=False, init=False)
    changed: bool = field(default=False, init=False)
    attempts: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.candidate_sources = tuple(self.candidate_sources)
        self.fallback_installer_args = tuple(self.fallback_installer_args)
        if self.display_name is None:
            self.display_name = self.id


@dataclass(frozen=True)
class DependencyResult:
    """Outcome of ensuring one dependency."""
    id: str
    satisfied: bool
    changed: bool
    exit_code: Optional[int]
    message: Optional[str]
    attempts: int
    source: Optional[str] = None

    def raise_for_status(self) -> None:
        """Raise DependencyUnsatisfiedError if the dependency is not satisfied."""
        if not self.satisfied:
            raise DependencyUnsatisfiedError(self.id, self.message)


@dataclass(frozen=True)
class CommandProbe:
    """
    Detection probe that succeeds when `argv` exits 0.

    Probes are plain dataclasses so a step holding one can be pickled into a
    spawned step process.
    """
    argv: Tuple[str, ...]
    timeout: float = 60

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))

    def __call__(self) -> bool:
        return run_command(self.argv, timeout=self.timeout).exit_code == 0


@dataclass(frozen=True)
class WhichProbe:
    """Detection probe that succeeds when `executable` is on PATH."""
    executable: str

    def __call__(self) -> bool:
        return shutil.which(self.executable) is not None


def command_probe(argv: Sequence[str], timeout: float = 60) -> CommandProbe:
    """Probe that succeeds when `argv` exits 0."""
    return CommandProbe(tuple(argv), timeout)


def which_probe(executable: str) -> WhichProbe:
    """Probe that succeeds when `executable` is on PATH."""
    return WhichProbe(executable)


def package_registration_probe(package_id: str, tool: str = "winget") -> CommandProbe:
    """Probe that asks the package manager whether `package_id` is registered."""
    return command_probe(
        [tool, "list", "--id", package_id, "--exact", "--accept-source-agreements"]
    )


def download_file(
    uri: str,
    dest_dir: Path,
    client: Optional[httpx.Client] = None,
    timeout: float = DOWNLOAD_TIMEOUT_S,
) -> Path:
    """
    Stream `uri` into `dest_dir`, following redirects.

    The file name comes from the final URL, after redirects.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx responses
    """
    owns_client = client is None
    http = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        with http.stream("GET", uri) as response:
            response.raise_for_status()
            name = os.path.basename(response.url.path) or "installer.bin"
            target = Path(dest_dir) / name
            with open(target, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
        logger.info("Downloaded %s to %s", uri, target)
        return target
    finally:
        if owns_client:
            http.close()


def installer_command(path: Path, args: Sequence[str] = ()) -> List[str]:
    """Command line that installs a downloaded artifact."""
    suffix = path.suffix.lower()
    if suffix == ".msi":
        return ["msiexec", "/i", str(path), "/qn", "/norestart", *args]
    if suffix in (".msix", ".msixbundle", ".appx", ".appxbundle"):
        return [
            "powershell",
            "-NoProfile",
            "-NonInteractive",
            "-Command",
            f"Add-AppxPackage -Path '{path}'",
        ]
    return [str(path), *args]


class _RetryableInstall(ProvisionError):
    def __init__(self, info: ExitCodeInfo, message: Optional[str]):
        self.info = info
        self.message = message
        super().__init__(f"{info.name}: {message or info.description}")


class DependencyInstaller:
    """
    Ensures dependencies are present, trying sources in order.

    Args:
        retry_executor: Wraps each source invocation (per-dependency policy)
        command_runner: Runs an argv as a child process
        downloader: Fetches the direct-download fallback into a directory
        events: Structured event logger
        install_timeout: Timeout for each install command
    """

    def __init__(
        self,
        retry_executor: Optional[RetryExecutor] = None,
        command_runner: CommandRunner = run_command,
        downloader: Downloader = download_file,
        events: Optional[ProvisionLogger] = None,
        install_timeout: float = DEFAULT_STEP_TIMEOUT_S,
    ):
        self._retry = retry_executor or RetryExecutor()
        self._run = command_runner
        self._download = downloader
        self._events = events
        self.install_timeout = install_timeout

    def ensure(self, dependencies: Sequence[Dependency]) -> List[DependencyResult]:
        """Ensure each dependency in order; never raises for an unsatisfied one."""
        results = []
        for dependency in dependencies:
            result = self._ensure_one(dependency)
            dependency.satisfied = result.satisfied
            dependency.changed = result.changed
            dependency.attempts = result.attempts
            if self._events is not None:
                self._events.log_dependency_result(
                    dependency_id=result.id,
                    satisfied=result.satisfied,
                    changed=result.changed,
                    attempts=result.attempts,
                    source=result.source,
                    exit_code=result.exit_code,
                    message=result.message,
                )
            results.append(result)
        return results

    def _detect(self, dependency: Dependency) -> bool:
        if dependency.detect is None:
            return False
        try:
            return bool(dependency.detect())
        except Exception as e:
            logger.warning("Detection for %s failed: %s", dependency.id, e)
            return False

    def _ensure_one(self, dependency: Dependency) -> DependencyResult:
        if self._detect(dependency):
            logger.info("%s already present", dependency.display_name)
            return DependencyResult(
                id=dependency.id,
                satisfied=True,
                changed=False,
                exit_code=None,
                message="already present",
                attempts=0,
                source=SOURCE_DETECTED,
            )

        attempts = 0
        last_code: Optional[int] = None
        last_message: Optional[str] = None

        for candidate in dependency.candidate_sources:
            used, info, message = self._try_source(dependency, candidate)
            attempts += used
            if info is None:
                last_message = message
                continue
            last_code, last_message = info.code, message or info.description
            if info.is_success:
                logger.info(
                    "%s installed from %s (%s)",
                    dependency.display_name,
                    candidate.source,
                    describe(info.code, dependency.source_tool_kind),
                )
                return DependencyResult(
                    id=dependency.id,
                    satisfied=True,
                    changed=True,
                    exit_code=info.code,
                    message=info.description,
                    attempts=attempts,
                    source=candidate.source,
                )
            if info.source_miss:
                logger.info("%s not found on source %s", dependency.display_name, candidate.source)
            else:
                logger.warning(
                    "%s install from %s failed: %s",
                    dependency.display_name,
                    candidate.source,
                    describe(info.code, dependency.source_tool_kind),
                )

        if dependency.fallback_installer_uri:
            attempts += 1
            try:
                info, message = self._direct_install(dependency)
            except Exception as e:
                logger.error("Direct install of %s failed: %s", dependency.display_name, e)
                return DependencyResult(
                    id=dependency.id,
                    satisfied=False,
                    changed=False,
                    exit_code=last_code,
                    message=f"direct download failed: {e}",
                    attempts=attempts,
                )
            return DependencyResult(
                id=dependency.id,
                satisfied=info.is_success,
                changed=info.is_success,
                exit_code=info.code,
                message=info.description if info.is_success else (message or info.description),
                attempts=attempts,
                source=SOURCE_DIRECT_DOWNLOAD if info.is_success else None,
            )

        return DependencyResult(
            id=dependency.id,
            satisfied=False,
            changed=False,
            exit_code=last_code,
            message=last_message or "no install source available",
            attempts=attempts,
        )

    def _try_source(
        self, dependency: Dependency, candidate: CandidateSource
    ) -> Tuple[int, Optional[ExitCodeInfo], Optional[str]]:
        """
        Run one source's install command under the dependency's retry policy.

        Returns:
            (invocations made, classified result or None, message)
        """
        invocations = 0
        table = dependency.source_tool_kind

        def attempt() -> Tuple[ExitCodeInfo, Optional[str]]:
            nonlocal invocations
            invocations += 1
            outcome = self._run(candidate.invocation, timeout=self.install_timeout)
            info = classify(outcome.exit_code, table)
            if info.category == ExitCategory.RETRYABLE and not info.source_miss:
                raise _RetryableInstall(info, outcome.message)
            return info, outcome.message

        try:
            info, message = self._retry.execute(
                attempt,
                dependency.retry_policy,
                retry_if=lambda e: isinstance(e, _RetryableInstall),
            )
        except _RetryableInstall as e:
            return invocations, e.info, e.message
        except TransientNetworkError as e:
            logger.warning("Source %s skipped for %s: %s", candidate.source, dependency.id, e)
            return invocations, None, str(e)
        return invocations, info, message

    def _direct_install(self, dependency: Dependency) -> Tuple[ExitCodeInfo, Optional[str]]:
        uri = dependency.fallback_installer_uri
        logger.info("Falling back to direct download of %s from %s", dependency.display_name, uri)
        with tempfile.TemporaryDirectory(prefix="provisioncore-") as tmpdir:
            artifact = self._retry.execute(
                lambda: self._download(uri, Path(tmpdir)),
                dependency.retry_policy,
            )
            argv = installer_command(Path(artifact), dependency.fallback_installer_args)
            outcome = self._run(argv, timeout=self.install_timeout)
        info = classify(outcome.exit_code, ToolKind.INSTALLER_PACKAGE)
        log = logger.info if info.is_success else logger.error
        log(
            "Direct install of %s: %s",
            dependency.display_name,
            describe(info.code, ToolKind.INSTALLER_PACKAGE),
        )
        return info, outcome.message


@dataclass
class DependencyStep(DeploymentStep):
    """
    Pipeline step that ensures a list of dependencies.

    Succeeds only if every dependency ends up satisfied; otherwise reports
    DEPENDENCY_FAILED_EXIT_CODE with the unsatisfied ids.
    """
    dependencies: Sequence[Dependency] = ()
    installer: Optional[DependencyInstaller] = None

    def run(self) -> StepResult:
        installer = self.installer or DependencyInstaller()
        results = installer.ensure(list(self.dependencies))
        missing = [r for r in results if not r.satisfied]
        if missing:
            detail = "; ".join(f"{r.id}: {r.message}" for r in missing)
            return StepResult(DEPENDENCY_FAILED_EXIT_CODE, f"unsatisfied dependencies - {detail}")
        return StepResult(0)
