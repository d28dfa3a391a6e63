from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path

from bacify.age_guard import check_backup_age
from bacify.analyzer import DriftAnalyzer
from bacify.config import VerifyOptions
from bacify.errors import ConfigError
from bacify.filters import build_exclude_filter
from bacify.models import SnapshotInfo
from bacify.report import VerificationReport, build_report
from bacify.scanner import scan_local_tree
from bacify.snapshot_client import SnapshotQueryClient


logger = logging.getLogger(__name__)


def resolve_scan_root(root: Path | None, snapshot: SnapshotInfo) -> Path:
    if root is not None:
        candidate = Path(root).expanduser()
    elif snapshot.source_root:
        candidate = Path(snapshot.source_root)
    else:
        raise ConfigError(f"Snapshot {snapshot.short_id or snapshot.id} records no source path; pass --root")

    if not candidate.is_dir():
        raise ConfigError(f"Couldn't find source directory {candidate}")
    return candidate.resolve()


async def _log_snapshot_stats(client: SnapshotQueryClient, snapshot: SnapshotInfo) -> None:
    snapshot_stats = getattr(client, "snapshot_stats", None)
    if snapshot_stats is None:
        logger.debug("Snapshot client offers no statistics")
        return
    stats = await asyncio.to_thread(snapshot_stats, snapshot.id)
    logger.info(
        "Snapshot %s holds %s file(s), %s byte(s) restore size",
        snapshot.short_id or snapshot.id,
        stats.get("total_file_count", "?"),
        stats.get("total_size", "?"),
    )


async def verify_backup(
    client: SnapshotQueryClient,
    options: VerifyOptions,
    *,
    stop_event: threading.Event | None = None,
) -> VerificationReport:
    """Compare the local tree against the latest snapshot and build a report.

    The scan and the snapshot listing run concurrently; the analysis starts
    once both are complete. ``stop_event`` is set whenever this coroutine
    exits so worker threads still reading files give up promptly.
    """
    stop_event = stop_event or threading.Event()
    try:
        snapshot = await asyncio.to_thread(client.latest_snapshot)
        root = resolve_scan_root(options.root, snapshot)
        exclude_filter = build_exclude_filter(options.exclude_file)
        logger.info(
            "Verifying %s against snapshot %s (%d exclude rule(s))",
            root,
            snapshot.short_id or snapshot.id,
            len(exclude_filter),
        )

        if options.show_stats:
            await _log_snapshot_stats(client, snapshot)

        scan_result, snapshot_files = await asyncio.gather(
            asyncio.to_thread(
                scan_local_tree,
                root,
                exclude_filter=exclude_filter,
                workers=options.workers,
                stop_event=stop_event,
            ),
            asyncio.to_thread(client.list_files, snapshot.id),
        )

        analyzer = DriftAnalyzer(
            snapshot,
            snapshot_files,
            path_mode=options.path_mode,
            exclude_filter=exclude_filter,
            tolerance_ns=options.tolerance_ns,
            workers=options.workers,
            stop_event=stop_event,
        )
        analysis = await asyncio.to_thread(analyzer.analyze, scan_result.entries)
    finally:
        stop_event.set()

    age_check = (
        check_backup_age(snapshot.creation_time_ns, options.max_age)
        if options.max_age is not None
        else None
    )

    return build_report(
        snapshot,
        str(root),
        analysis,
        age_check=age_check,
        scan_issues=scan_result.issues,
        files_scanned=len(scan_result.entries),
        degraded_birth_times=scan_result.degraded_count,
    )
