from __future__ import annotations

import asyncio
import logging
import os
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from bacify.config import (
    DEFAULT_TOLERANCE,
    PathMode,
    RepositoryConfig,
    VerifyOptions,
    default_exclude_file,
    default_workers,
    repository_config_from_env,
)
from bacify.errors import ConfigError, OperationCancelled, RepositoryError
from bacify.models import Finding
from bacify.report import VerificationReport
from bacify.snapshot_client import ResticClient, SnapshotQueryClient
from bacify.timeutil import format_ns, parse_duration
from bacify.verifier import verify_backup


EXIT_CONFIG_ERROR = 2
EXIT_REPOSITORY_ERROR = 3
EXIT_INTERRUPTED = 130

app = typer.Typer(help="Verify that the latest restic snapshot still matches the local files.")
console = Console()


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _build_client(config: RepositoryConfig, executable: str) -> SnapshotQueryClient:
    return ResticClient(config, executable=executable)


def _render_findings(title: str, findings: list[Finding]) -> None:
    if not findings:
        return

    table = Table(title=title)
    table.add_column("Path")
    table.add_column("Detail")

    for finding in findings:
        detail = ", ".join(f"{key}={value}" for key, value in finding.detail)
        table.add_row(finding.path, detail)

    console.print(table)


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_report(report: VerificationReport) -> None:
    snapshot = report.snapshot
    console.print(
        f"Snapshot [bold]{snapshot.short_id or snapshot.id}[/bold] "
        f"taken {format_ns(snapshot.creation_time_ns)} | source {report.scan_root}"
    )

    _render_findings(
        "Missing files that should be in the backup (created before the snapshot)",
        report.missing,
    )
    _render_findings("Changed files found that have the same modified time", report.mismatched)
    _render_path_summary(
        "Skipped (scan issues)",
        [f"{issue.path} ({issue.message})" for issue in report.scan_issues],
        "yellow",
    )

    if report.degraded_birth_times:
        console.print(
            f"[yellow]{report.degraded_birth_times} file(s) had no creation time; "
            "their modification time was used instead.[/yellow]"
        )

    stale = report.stale_error
    if stale is not None:
        console.print(f"[red]{stale}[/red]")

    console.print(
        f"Scanned: {report.files_scanned} | Content checks: {report.content_checks} | "
        f"Missing: {len(report.missing)} | Mismatched: {len(report.mismatched)}"
    )
    if report.is_clean:
        console.print("[green]Verification succeeded.[/green]")
    else:
        console.print("[red]Verification failed.[/red]")


async def _verify_async(
    *,
    relative_path: bool,
    max_age: str | None,
    root: Path | None,
    exclude_file: Path | None,
    workers: int | None,
    tolerance: str | None,
    restic: str,
    stats: bool = False,
) -> int:
    try:
        options = VerifyOptions(
            path_mode=PathMode.RELATIVE if relative_path else PathMode.ABSOLUTE,
            max_age=parse_duration(max_age) if max_age else None,
            root=root,
            exclude_file=exclude_file or default_exclude_file(),
            workers=workers or default_workers(),
            tolerance=parse_duration(tolerance) if tolerance else DEFAULT_TOLERANCE,
            show_stats=stats,
        )
        repository = repository_config_from_env()
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return EXIT_CONFIG_ERROR

    client = _build_client(repository, restic)
    try:
        report = await verify_backup(client, options)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return EXIT_CONFIG_ERROR
    except RepositoryError as exc:
        console.print(f"[red]Repository error:[/red] {exc}")
        return EXIT_REPOSITORY_ERROR
    except OperationCancelled:
        console.print("[yellow]Verification interrupted.[/yellow] No verdict was reached.")
        return EXIT_INTERRUPTED

    _render_report(report)
    return report.exit_code


@app.command()
def verify(
    relative_path: bool = typer.Option(
        False,
        "--relative-path",
        "-r",
        help="Compare paths relative to the snapshot source instead of as absolute paths.",
    ),
    max_age: str | None = typer.Option(
        None,
        "--max-age",
        "-m",
        help="Fail when the latest snapshot is older than this duration (e.g. 3d, 2w).",
    ),
    root: Path | None = typer.Option(
        None,
        "--root",
        help="Local directory to verify. Defaults to the snapshot's first source path.",
    ),
    exclude_file: Path | None = typer.Option(
        None,
        "--exclude-file",
        help="File with one excluded path prefix per line. Defaults to ~/.backup_exclude.",
    ),
    workers: int | None = typer.Option(
        None,
        "--workers",
        min=1,
        help="Worker threads for scanning and hashing. Defaults to the CPU count.",
    ),
    tolerance: str | None = typer.Option(
        None,
        "--tolerance",
        help="Slack applied to creation times before a file counts as missing (default 1s).",
    ),
    stats: bool = typer.Option(False, "--stats", help="Log restic statistics for the snapshot first."),
    restic: str = typer.Option("restic", "--restic", help="restic executable to run."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every file decision."),
) -> None:
    """Check the latest snapshot for missing files and silently changed content."""
    _configure_logging(verbose)
    try:
        code = asyncio.run(
            _verify_async(
                relative_path=relative_path,
                max_age=max_age,
                root=root,
                exclude_file=exclude_file,
                workers=workers,
                tolerance=tolerance,
                restic=restic,
                stats=stats,
            )
        )
    except KeyboardInterrupt:
        console.print("[yellow]Verification interrupted.[/yellow] No verdict was reached.")
        code = EXIT_INTERRUPTED
    raise typer.Exit(code=code)


@app.command()
def version() -> None:
    """Print the installed bacify version."""
    try:
        console.print(package_version("bacify"))
    except PackageNotFoundError:
        console.print("unknown")
