"""
provisioncore CLI - run a provisioning pipeline and manage its status history.

Usage:
    provisioncore --pipeline provision.yaml
    provisioncore --pipeline provision.yaml --force-rerun InstallGit
    provisioncore --export-csv status.csv
    provisioncore --clear-history --dry-run

Exit codes:
    0  every step succeeded
    1  at least one step failed or was skipped (or the run was aborted)
    2  fatal orchestrator error (bad pipeline/config, status store unusable)
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from typing import Optional, Tuple

import click

from provisioncore import __version__
from provisioncore.config import ProvisionConfig, load_config
from provisioncore.dependencies import DependencyInstaller
from provisioncore.errors import ConfigurationError, PersistenceError
from provisioncore.logger import ProvisionLogger, configure_logging
from provisioncore.network import NetworkStabilityChecker
from provisioncore.orchestrator import Orchestrator
from provisioncore.pipeline_file import build_steps, load_pipeline
from provisioncore.retry import RetryExecutor
from provisioncore.status_store import StatusStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STEPS_FAILED = 1
EXIT_FATAL = 2


def _open_store(config: ProvisionConfig) -> StatusStore:
    try:
        return StatusStore.from_config(config)
    except ConfigurationError:
        raise
    except Exception as e:
        raise PersistenceError(f"Cannot open status store: {e}") from e


def _export_csv(store: StatusStore, path: str, order=None) -> None:
    count = store.export_csv(path, order=order)
    click.echo(f"Exported {count} step record(s) to {path}")


def _clear_history(store: StatusStore, dry_run: bool) -> None:
    names = store.clear(dry_run=dry_run)
    if dry_run:
        click.echo(f"Would clear {len(names)} step record(s):")
    else:
        click.echo(f"Cleared {len(names)} step record(s):")
    for name in names:
        click.echo(f"  {name}")


def _run_pipeline(
    config: ProvisionConfig,
    store: StatusStore,
    pipeline_path: str,
    force_rerun: Tuple[str, ...],
    skip_network_check: bool,
    summary_format: str,
    export_csv: Optional[str],
) -> int:
    spec = load_pipeline(pipeline_path)
    checker = NetworkStabilityChecker.from_config(config)
    retry = RetryExecutor(network=checker)
    run_id = uuid.uuid4().hex[:12]

    events = ProvisionLogger(device=config.device_name, run_id=run_id)
    installer = DependencyInstaller(
        retry_executor=retry,
        events=events,
        install_timeout=config.default_step_timeout_seconds,
    )
    orchestrator = Orchestrator(
        steps=build_steps(spec, installer=installer),
        store=store,
        config=config,
        retry_executor=retry,
        events=events,
        run_id=run_id,
    )

    if not skip_network_check:
        stable = checker.wait_for_stability(
            config.network_retry_count,
            config.network_retry_delay_seconds,
            continuous_check=config.continuous_network_check,
        )
        if not stable:
            logger.error("Network is not stable; continuing, network-gated steps may fail")

    report = orchestrator.run(force_rerun=force_rerun)

    if summary_format == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(report.format_text(use_colors=sys.stdout.isatty()))

    if export_csv:
        try:
            _export_csv(store, export_csv, order=orchestrator.step_names)
        except (PersistenceError, OSError) as e:
            logger.error("CSV export failed: %s", e)

    return report.exit_code


@click.command()
@click.version_option(__version__)
@click.option(
    "--pipeline",
    "-p",
    "pipeline_path",
    type=click.Path(dir_okay=False),
    help="Pipeline definition (YAML or JSON)",
)
@click.option("--state-root", help="Root of the persisted status tree")
@click.option(
    "--network-retry-count",
    type=int,
    default=None,
    help="Network stability attempts before starting (default 5)",
)
@click.option(
    "--network-retry-delay-seconds",
    type=int,
    default=None,
    help="Delay between network stability attempts (default 10)",
)
@click.option(
    "--continuous-network-check/--no-continuous-network-check",
    default=None,
    help="Require consecutive confirmation probes before declaring the network stable",
)
@click.option("--skip-network-check", is_flag=True, help="Do not wait for network stability")
@click.option(
    "--force-rerun",
    multiple=True,
    metavar="STEP|all",
    help="Re-run a step even if it already succeeded (repeatable; 'all' for every step)",
)
@click.option("--export-csv", type=click.Path(dir_okay=False), help="Dump all step records to CSV")
@click.option("--clear-history", is_flag=True, help="Remove all persisted step records")
@click.option("--dry-run", is_flag=True, help="With --clear-history, list records without removing")
@click.option(
    "--summary-format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Summary output format",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default=None,
    help="Logging level",
)
def main(
    pipeline_path: Optional[str],
    state_root: Optional[str],
    network_retry_count: Optional[int],
    network_retry_delay_seconds: Optional[int],
    continuous_network_check: Optional[bool],
    skip_network_check: bool,
    force_rerun: Tuple[str, ...],
    export_csv: Optional[str],
    clear_history: bool,
    dry_run: bool,
    summary_format: str,
    log_level: Optional[str],
):
    """Run a device provisioning pipeline with durable, resumable step status."""
    overrides = {
        "state_root": state_root,
        "network_retry_count": network_retry_count,
        "network_retry_delay_seconds": network_retry_delay_seconds,
        "continuous_network_check": continuous_network_check,
        "log_level": log_level,
    }
    try:
        config = load_config(**{k: v for k, v in overrides.items() if v is not None})
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FATAL)

    configure_logging(config.log_level, config.log_format, config.log_file)

    if dry_run and not clear_history:
        click.echo("Error: --dry-run is only valid with --clear-history", err=True)
        sys.exit(EXIT_FATAL)
    if not (pipeline_path or export_csv or clear_history):
        click.echo("Error: nothing to do; pass --pipeline, --export-csv or --clear-history", err=True)
        sys.exit(EXIT_FATAL)

    try:
        store = _open_store(config)
        if clear_history:
            _clear_history(store, dry_run)
            if not pipeline_path and not export_csv:
                sys.exit(EXIT_OK)
        if not pipeline_path:
            _export_csv(store, export_csv)
            sys.exit(EXIT_OK)
        code = _run_pipeline(
            config,
            store,
            pipeline_path,
            force_rerun,
            skip_network_check,
            summary_format,
            export_csv,
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FATAL)
    except (PersistenceError, OSError) as e:
        logger.error("Status store error: %s", e)
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_FATAL)

    sys.exit(code)


if __name__ == "__main__":
    main()
