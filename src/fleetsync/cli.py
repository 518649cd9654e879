"""
Main CLI entry point for FleetSync.

Runs the whole fleet by default. Exit status is 0 when every job
succeeded and 1 on any precondition failure or job failure.
"""

import sys
import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import get_default_config_path, load_config
from .destinations import DestinationProber
from .engine import TransferEngine
from .environment import CheckStatus, EnvironmentReport, PreconditionValidator
from .errors import ConfigError, PreconditionError
from .logs import DEFAULT_RETENTION_DAYS, setup_logging
from .runner import FleetRunner


# Global console instance for rich output
console = Console()


def show_environment_report(env_report: EnvironmentReport):
    """Display the precondition report."""
    table = Table(title="Preconditions", show_header=True, header_style="bold magenta")
    table.add_column("Check", style="cyan", width=20)
    table.add_column("Status", width=10)
    table.add_column("Details", style="dim")

    for check in env_report.checks:
        if check.status == CheckStatus.PASS:
            status_text = "[green]PASS[/green]"
        else:
            status_text = "[red]FAIL[/red]"

        details = check.message
        if check.details:
            details = f"{details} ({check.details})"
        table.add_row(check.name, status_text, details)

    console.print(table)

    failed_checks = [c for c in env_report.checks if c.status == CheckStatus.FAIL]
    if failed_checks:
        console.print("Fix suggestions:", style="bold red")
        for check in failed_checks:
            if check.fix_suggestion:
                console.print(f"  • {check.name}: {check.fix_suggestion}", style="red")


def check_environment(config_path, target_host) -> bool:
    """Run preconditions and destination probes without starting any job."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"Configuration error: {e}", style="bold red")
        return False

    engine = TransferEngine(config.engine_path, config.engine_config_path)
    validator = PreconditionValidator(config, engine, target_host=target_host)
    try:
        validator.run_all_checks()
    except PreconditionError:
        show_environment_report(validator.report)
        return False
    show_environment_report(validator.report)

    valid, invalid = DestinationProber(engine).partition(config.jobs)
    for item in valid:
        console.print(f"  ✅ {item.destination}", style="green")
    for item in invalid:
        console.print(f"  ❌ {item.job.destination}: {item.reason}", style="red")

    return bool(valid)


@click.command()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help=f'Configuration file (default: {get_default_config_path()})')
@click.option('--target-host', help='Host serving the source volume, checked before the run')
@click.option('--silent', is_flag=True, help='Do not send desktop notifications')
@click.option('--log-retention-days', type=click.IntRange(min=1), default=DEFAULT_RETENTION_DAYS,
              show_default=True, help='Delete log files older than this many days')
@click.option('--check-env', is_flag=True, help='Check preconditions and destinations, then exit')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.version_option(__version__, prog_name='FleetSync')
def main(config_path, target_host, silent, log_retention_days, check_env, verbose):
    """
    FleetSync - Supervised parallel bulk transfers.

    Validates the host, measures upload bandwidth once, then runs one
    transfer engine process per configured job until all have exited.
    """
    if check_env:
        setup_logging(verbose=verbose, console=console)
        is_ready = check_environment(config_path, target_host)
        if not is_ready:
            console.print("❌ Host is not ready for a run", style="bold red")
            sys.exit(1)
        console.print("✅ Host is ready for a run", style="bold green")
        sys.exit(0)

    runner = FleetRunner(
        config_path=config_path,
        target_host=target_host,
        silent=silent,
        log_retention_days=log_retention_days,
        verbose=verbose,
        console=console
    )
    sys.exit(runner.run())


if __name__ == "__main__":
    main()
