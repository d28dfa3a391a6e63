from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from bacify.config import PathMode, default_workers
from bacify.errors import RepositoryError, ScanError
from bacify.filters import ExcludeFilter
from bacify.models import (
    Finding,
    FindingKind,
    LocalFileEntry,
    ScanIssue,
    SnapshotFileEntry,
    SnapshotInfo,
)
from bacify.scanner import hash_local_file
from bacify.snapshot_client import local_lookup_key, normalize_snapshot_path
from bacify.timeutil import NS_PER_SECOND, format_ns


logger = logging.getLogger(__name__)

LocalHasher = Callable[..., str]


@dataclass(slots=True)
class AnalysisResult:
    findings: list[Finding]
    issues: list[ScanIssue]
    files_checked: int
    content_checks: int

    @property
    def has_findings(self) -> bool:
        return bool(self.findings)


@dataclass(slots=True)
class _ContentCheck:
    local: LocalFileEntry
    snapshot: SnapshotFileEntry


class FindingSink:
    """Append-only collection of findings shared by the hashing workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._findings: list[Finding] = []

    def append(self, finding: Finding) -> None:
        with self._lock:
            self._findings.append(finding)

    def findings(self) -> list[Finding]:
        with self._lock:
            return sorted(self._findings)

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)


def build_snapshot_lookup(
    files: Iterable[SnapshotFileEntry],
    path_mode: PathMode,
    source_root: str | None = None,
) -> dict[str, SnapshotFileEntry]:
    lookup: dict[str, SnapshotFileEntry] = {}
    for entry in files:
        key = normalize_snapshot_path(entry.path, path_mode, source_root)
        if key in lookup:
            raise RepositoryError(f"Snapshot lists {key!r} more than once; refusing to compare")
        lookup[key] = entry
    return lookup


def _detail(**values: str) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(values.items()))


class DriftAnalyzer:
    def __init__(
        self,
        snapshot: SnapshotInfo,
        snapshot_files: Sequence[SnapshotFileEntry],
        *,
        path_mode: PathMode = PathMode.ABSOLUTE,
        exclude_filter: ExcludeFilter | None = None,
        tolerance_ns: int = NS_PER_SECOND,
        workers: int | None = None,
        stop_event: threading.Event | None = None,
        hasher: LocalHasher = hash_local_file,
    ) -> None:
        self._snapshot = snapshot
        self._path_mode = path_mode
        self._exclude_filter = exclude_filter or ExcludeFilter()
        self._tolerance_ns = max(0, tolerance_ns)
        self._workers = max(1, workers or default_workers())
        self._stop_event = stop_event
        self._hasher = hasher
        self._lookup = build_snapshot_lookup(snapshot_files, path_mode, snapshot.source_root)

    def analyze(self, local_entries: Iterable[LocalFileEntry]) -> AnalysisResult:
        sink = FindingSink()
        checks: list[_ContentCheck] = []
        files_checked = 0
        missing_cutoff_ns = self._snapshot.creation_time_ns - self._tolerance_ns

        for entry in local_entries:
            if self._exclude_filter.excludes(entry.path):
                continue
            files_checked += 1

            counterpart = self._lookup.get(local_lookup_key(entry, self._path_mode))
            if counterpart is None:
                if entry.birth_time_ns < missing_cutoff_ns:
                    logger.debug("Missing in backup: %s", entry.path)
                    sink.append(self._missing_finding(entry))
                else:
                    logger.debug("Not in backup (too new): %s", entry.path)
                continue

            # Any mtime change explains a content change, so only equal mtimes are hashed.
            if entry.mtime_ns == counterpart.mtime_ns:
                checks.append(_ContentCheck(local=entry, snapshot=counterpart))

        issues = self._run_content_checks(checks, sink)
        return AnalysisResult(
            findings=sink.findings(),
            issues=sorted(issues, key=lambda issue: issue.path),
            files_checked=files_checked,
            content_checks=len(checks),
        )

    def _missing_finding(self, entry: LocalFileEntry) -> Finding:
        return Finding(
            path=entry.path,
            kind=FindingKind.MISSING_FROM_BACKUP,
            detail=_detail(
                birth_time=format_ns(entry.birth_time_ns),
                birth_time_degraded=str(entry.birth_time_degraded).lower(),
                snapshot_time=format_ns(self._snapshot.creation_time_ns),
            ),
        )

    def _run_content_checks(self, checks: list[_ContentCheck], sink: FindingSink) -> list[ScanIssue]:
        if not checks:
            return []
        issues: list[ScanIssue] = []

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="bacify-hash") as executor:
            futures: dict[Future[ScanIssue | None], str] = {
                executor.submit(self._check_content, check, sink): check.local.path for check in checks
            }
            try:
                for future in as_completed(futures):
                    issue = future.result()
                    if issue is not None:
                        issues.append(issue)
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        return issues

    def _check_content(self, check: _ContentCheck, sink: FindingSink) -> ScanIssue | None:
        try:
            local_digest = self._hasher(check.local, stop_event=self._stop_event)
        except ScanError as exc:
            logger.warning("Could not read %s: %s", check.local.path, exc.issue.message)
            return exc.issue

        snapshot_digest = check.snapshot.resolve_digest(self._stop_event)
        if local_digest == snapshot_digest:
            logger.debug("Same content in backup: %s", check.local.path)
            return None

        logger.warning("Same modified timestamp but different content in backup: %s", check.local.path)
        sink.append(
            Finding(
                path=check.local.path,
                kind=FindingKind.CONTENT_MISMATCH,
                detail=_detail(
                    local_digest=local_digest,
                    mtime=format_ns(check.local.mtime_ns),
                    snapshot_digest=snapshot_digest,
                ),
            )
        )
        return None
