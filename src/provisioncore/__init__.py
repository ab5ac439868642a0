"""
provisioncore - resumable, resilient device provisioning.

Runs an ordered pipeline of installation steps, each in an isolated child
process, and records every step's outcome in a durable status tree so a run
can resume after a crash or reboot.

Key Features:
- Durable per-step status (Pending, Running, Success, Failed, Skipped)
- Exit code classification for package-manager and installer-package tools
- Network stability gating and per-step retry policies
- Dependency installation with ordered source fallback and direct download

Example usage:
    from provisioncore import CommandStep, Orchestrator, StatusStore, load_config

    store = StatusStore.from_config(load_config())
    steps = [CommandStep(name="InstallGit", argv=("winget", "install", "Git.Git"))]
    report = Orchestrator(steps, store).run()
    print(report.format_text())
"""

__version__ = "0.1.0"
__all__ = [
    "Orchestrator",
    "StatusStore",
    "StepStatus",
    "DeploymentStep",
    "CommandStep",
    "DependencyStep",
    "Dependency",
    "RetryPolicy",
    "load_config",
    "__version__",
]


# Lazy imports keep `provisioncore --version` cheap
def __getattr__(name: str):
    if name == "Orchestrator":
        from provisioncore.orchestrator import Orchestrator
        return Orchestrator
    if name in ("StatusStore", "StepStatus"):
        from provisioncore import status_store
        return getattr(status_store, name)
    if name in ("DeploymentStep", "CommandStep"):
        from provisioncore import steps
        return getattr(steps, name)
    if name in ("DependencyStep", "Dependency"):
        from provisioncore import dependencies
        return getattr(dependencies, name)
    if name == "RetryPolicy":
        from provisioncore.retry import RetryPolicy
        return RetryPolicy
    if name == "load_config":
        from provisioncore.config import load_config
        return load_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
