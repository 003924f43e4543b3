"""CLI entry point for nori-tests.

Usage:
    nori-tests FOLDER [--output report.json] [--stream] [--keep-containers]
                      [--dry-run] [--privileged] [--prefer-session]

Exits 0 when every test reports success, 1 otherwise.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from nori_tests import __version__
from nori_tests.core.auth import API_KEY_ENV, AuthMethod, get_auth_config, get_auth_method
from nori_tests.core.config import CONFIG_FILE_NAME, ConfigError, load_runner_config
from nori_tests.core.discovery import discover_tests
from nori_tests.core.models import TestReport
from nori_tests.core.report import write_report
from nori_tests.core.runner import RunOptions, TestRunner

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _is_interactive() -> bool:
    return sys.stdin.isatty()


def _resolve_auth(prefer_session: bool) -> AuthMethod:
    """Select credentials, prompting for an API key on a TTY if none exist."""
    method = get_auth_method(prefer_session=prefer_session)

    if method.type == "none":
        if not _is_interactive():
            raise click.ClickException(
                f"{API_KEY_ENV} environment variable is not set and no session file was found"
            )
        api_key = click.prompt(
            f"{API_KEY_ENV} not found. Please enter your API key",
            hide_input=True,
            default="",
            show_default=False,
        ).strip()
        if not api_key:
            raise click.ClickException(f"{API_KEY_ENV} is required")
        return AuthMethod(type="api-key", api_key=api_key)

    if method.has_both:
        if method.type == "api-key":
            console.print(
                "[yellow]Both an API key and a session file were found; using the API key. "
                "Pass --prefer-session to use the session file instead.[/yellow]"
            )
        else:
            console.print(
                "[yellow]Both an API key and a session file were found; "
                "using the session file (--prefer-session).[/yellow]"
            )
    return method


def _print_summary(report: TestReport) -> None:
    table = Table(title="Summary", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Total", str(report.total_tests))
    table.add_row("Passed", f"[green]{report.passed}[/green]")
    table.add_row("Failed", f"[red]{report.failed}[/red]" if report.failed else "0")
    table.add_row("Time", f"{report.duration_ms}ms")
    console.print()
    console.print(table)


@click.command()
@click.version_option(version=__version__, prog_name="nori-tests")
@click.argument("folder", type=click.Path(path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write a JSON report to this file")
@click.option("--keep-containers", is_flag=True, help="Keep containers after tests for debugging")
@click.option("--dry-run", is_flag=True, help="Discover tests without running them")
@click.option("--stream", is_flag=True, help="Show agent output in real time")
@click.option("--privileged", is_flag=True, help="Run containers in privileged mode (needed for docker-in-docker)")
@click.option("--prefer-session", is_flag=True, help="Use the session file even when an API key is set")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Config file (default: ./{CONFIG_FILE_NAME})",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(
    folder: Path,
    output: Path | None,
    keep_containers: bool,
    dry_run: bool,
    stream: bool,
    privileged: bool,
    prefer_session: bool,
    config_path: Path | None,
    verbose: bool,
) -> None:
    """Run the markdown tests in FOLDER with an AI agent in isolated containers.

    Each *.md file is a prompt. The agent writes a status file to report
    success or failure.

    Example:
        nori-tests ./integration-tests --output report.json --stream
    """
    _configure_logging(verbose)

    folder_path = folder.resolve()
    if not folder_path.is_dir():
        console.print(f"[red]Error:[/red] Folder does not exist: {escape(str(folder_path))}")
        sys.exit(1)

    try:
        config = load_runner_config(config_path or Path.cwd() / CONFIG_FILE_NAME)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    options = RunOptions(
        keep_containers=keep_containers,
        dry_run=dry_run,
        privileged=privileged,
        stream=stream,
    )
    if not dry_run:
        options.auth = get_auth_config(_resolve_auth(prefer_session))

    test_files = discover_tests(folder_path, config.test_extension)
    console.print(
        Panel(
            f"Test folder: {escape(str(folder_path))}\nTests found: {len(test_files)}",
            title=f"nori-tests v{__version__}",
        )
    )

    if not test_files:
        console.print("[yellow]No test files found.[/yellow]")
        if output:
            write_report(TestReport.from_results([], 0), output)
        sys.exit(0)

    if dry_run:
        console.print(f"\n[yellow]{escape('[DRY RUN]')} Would run the following tests:[/yellow]")
        for index, test_file in enumerate(test_files, start=1):
            console.print(f"  {index}. {escape(test_file.name)}")

    try:
        report = TestRunner(config=config, console=console).run(folder_path, options)
    except Exception as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    _print_summary(report)

    if output:
        output_path = write_report(report, output)
        console.print(f"\nReport written to: {escape(str(output_path))}")

    sys.exit(0 if report.success else 1)


if __name__ == "__main__":
    main()
