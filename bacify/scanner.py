from __future__ import annotations

import hashlib
import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path, PurePath

from bacify.config import default_workers
from bacify.errors import ConfigError, OperationCancelled, ScanError
from bacify.filters import ExcludeFilter
from bacify.models import LocalFileEntry, ScanIssue, ScanIssueReason, ScanResult


logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def sha256_file(
    path: str | Path,
    chunk_size: int = HASH_CHUNK_SIZE,
    *,
    stop_event: threading.Event | None = None,
) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        while True:
            if stop_event is not None and stop_event.is_set():
                raise OperationCancelled(f"Hashing of {path} was cancelled")
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def hash_local_file(entry: LocalFileEntry, *, stop_event: threading.Event | None = None) -> str:
    try:
        return sha256_file(entry.path, stop_event=stop_event)
    except OSError as exc:
        raise ScanError(_issue_from_oserror(entry.path, exc)) from exc


def _issue_from_oserror(path: str, exc: OSError) -> ScanIssue:
    if isinstance(exc, FileNotFoundError):
        return ScanIssue(path=path, reason=ScanIssueReason.VANISHED, message="vanished during scan")
    if isinstance(exc, PermissionError):
        return ScanIssue(path=path, reason=ScanIssueReason.PERMISSION_DENIED, message="permission denied")
    return ScanIssue(path=path, reason=ScanIssueReason.READ_FAILED, message=exc.strerror or str(exc))


def _birth_time_ns(stat: os.stat_result) -> int | None:
    value = getattr(stat, "st_birthtime_ns", None)
    if value:
        return int(value)
    seconds = getattr(stat, "st_birthtime", None)
    if seconds:
        return int(seconds * 1_000_000_000)
    return None


def entry_from_stat(path: str, relative_path: str, stat: os.stat_result) -> LocalFileEntry:
    birth_time_ns = _birth_time_ns(stat)
    return LocalFileEntry(
        path=path,
        relative_path=relative_path,
        birth_time_ns=stat.st_mtime_ns if birth_time_ns is None else birth_time_ns,
        mtime_ns=stat.st_mtime_ns,
        size=stat.st_size,
        birth_time_degraded=birth_time_ns is None,
    )


@dataclass(slots=True)
class _DirectoryListing:
    entries: list[LocalFileEntry] = field(default_factory=list)
    issues: list[ScanIssue] = field(default_factory=list)
    subdirectories: list[str] = field(default_factory=list)


def _relative(root: str, path: str) -> str:
    return PurePath(os.path.relpath(path, root)).as_posix()


def _scan_directory(
    root: str,
    directory: str,
    exclude_filter: ExcludeFilter,
    stop_event: threading.Event | None,
) -> _DirectoryListing:
    listing = _DirectoryListing()
    if stop_event is not None and stop_event.is_set():
        raise OperationCancelled("Scan was cancelled")

    try:
        with os.scandir(directory) as it:
            children = sorted(it, key=lambda item: item.name)
    except OSError as exc:
        issue = _issue_from_oserror(directory, exc)
        logger.warning("Skipping directory %s: %s", directory, issue.message)
        listing.issues.append(issue)
        return listing

    for child in children:
        path = child.path
        try:
            if child.is_symlink():
                logger.debug("Not following symlink: %s", path)
                continue
            if child.is_dir(follow_symlinks=False):
                if exclude_filter.excludes(path):
                    logger.debug("Pruning excluded directory: %s", path)
                    continue
                listing.subdirectories.append(path)
                continue
            if not child.is_file(follow_symlinks=False):
                continue
            if exclude_filter.excludes(path):
                logger.debug("Skipping excluded file: %s", path)
                continue
            stat = child.stat(follow_symlinks=False)
        except OSError as exc:
            issue = _issue_from_oserror(path, exc)
            logger.warning("Skipping %s: %s", path, issue.message)
            listing.issues.append(issue)
            continue

        listing.entries.append(entry_from_stat(path, _relative(root, path), stat))

    return listing


def scan_local_tree(
    root: Path,
    *,
    exclude_filter: ExcludeFilter | None = None,
    workers: int | None = None,
    stop_event: threading.Event | None = None,
) -> ScanResult:
    """Walk ``root`` on a thread pool and return per-file metadata.

    Symlinks are never followed and excluded directories are pruned before
    they are listed. Files that vanish or cannot be read are recorded as
    issues and the walk continues.
    """
    root_path = Path(root).resolve()
    if not root_path.is_dir():
        raise ConfigError(f"Couldn't find source directory {root_path}")

    exclude_filter = exclude_filter or ExcludeFilter()
    root_str = str(root_path)
    entries: list[LocalFileEntry] = []
    issues: list[ScanIssue] = []

    if exclude_filter.excludes(root_str):
        logger.info("Scan root %s is excluded, nothing to scan", root_str)
        return ScanResult(entries=entries, issues=issues)

    max_workers = max(1, workers or default_workers())
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bacify-scan") as executor:
        pending: set[Future[_DirectoryListing]] = {
            executor.submit(_scan_directory, root_str, root_str, exclude_filter, stop_event)
        }
        try:
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    listing = future.result()
                    entries.extend(listing.entries)
                    issues.extend(listing.issues)
                    for directory in listing.subdirectories:
                        pending.add(
                            executor.submit(
                                _scan_directory, root_str, directory, exclude_filter, stop_event
                            )
                        )
        except BaseException:
            for future in pending:
                future.cancel()
            raise

    entries.sort(key=lambda entry: entry.path)
    issues.sort(key=lambda issue: issue.path)
    result = ScanResult(entries=entries, issues=issues)
    if result.degraded_count:
        logger.warning(
            "Filesystem under %s does not report creation times; %d file(s) use their "
            "modification time as birth time for the missing-file check",
            root_str,
            result.degraded_count,
        )
    logger.debug("Scanned %d file(s) under %s", len(entries), root_str)
    return result
