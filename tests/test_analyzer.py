from __future__ import annotations

import threading
from pathlib import Path

import pytest

from bacify.analyzer import DriftAnalyzer, FindingSink, build_snapshot_lookup
from bacify.config import PathMode
from bacify.errors import RepositoryError, ScanError
from bacify.filters import ExcludeFilter
from bacify.models import (
    ExcludeRule,
    Finding,
    FindingKind,
    ScanIssue,
    ScanIssueReason,
    SnapshotFileEntry,
    SnapshotInfo,
)
from bacify.scanner import hash_local_file
from bacify.snapshot_client import normalize_snapshot_path

from conftest import FIXED_MTIME_NS, local_entry, sha256_bytes


SECOND_NS = 1_000_000_000
CREATION_NS = FIXED_MTIME_NS + 3_600 * SECOND_NS
SNAPSHOT = SnapshotInfo(id="abc123", short_id="abc123", creation_time_ns=CREATION_NS)


class CountingHasher:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, entry, *, stop_event=None) -> str:
        with self._lock:
            self.calls.append(entry.path)
        return hash_local_file(entry, stop_event=stop_event)


def _analyzer(files, **kwargs) -> DriftAnalyzer:
    kwargs.setdefault("workers", 2)
    return DriftAnalyzer(SNAPSHOT, files, **kwargs)


def test_same_mtime_different_content_is_a_mismatch(tmp_path: Path, write_file):
    path = write_file(tmp_path / "a" / "b.txt", b"changed")
    snapshot_file = SnapshotFileEntry(
        path=str(path), mtime_ns=FIXED_MTIME_NS, size=8, content_digest=sha256_bytes(b"original")
    )

    result = _analyzer([snapshot_file]).analyze([local_entry(path, birth_time_ns=0)])

    assert [(f.kind, f.path) for f in result.findings] == [(FindingKind.CONTENT_MISMATCH, str(path))]
    detail = result.findings[0].detail_map
    assert detail["local_digest"] == sha256_bytes(b"changed")
    assert detail["snapshot_digest"] == sha256_bytes(b"original")


def test_same_mtime_same_content_is_clean(tmp_path: Path, write_file):
    path = write_file(tmp_path / "a.txt", b"same")
    snapshot_file = SnapshotFileEntry(
        path=str(path), mtime_ns=FIXED_MTIME_NS, size=4, content_digest=sha256_bytes(b"same")
    )

    result = _analyzer([snapshot_file]).analyze([local_entry(path, birth_time_ns=0)])

    assert result.findings == []
    assert result.content_checks == 1


def test_file_born_before_snapshot_and_absent_is_missing(tmp_path: Path):
    path = tmp_path / "a" / "new.txt"

    result = _analyzer([]).analyze([local_entry(path, birth_time_ns=CREATION_NS - 60 * SECOND_NS)])

    assert [(f.kind, f.path) for f in result.findings] == [(FindingKind.MISSING_FROM_BACKUP, str(path))]


@pytest.mark.parametrize(
    "birth_time_ns",
    [CREATION_NS, CREATION_NS + 1, CREATION_NS + 3_600 * SECOND_NS, CREATION_NS - SECOND_NS // 2],
)
def test_file_born_at_or_after_snapshot_is_never_missing(tmp_path: Path, birth_time_ns):
    result = _analyzer([]).analyze([local_entry(tmp_path / "late.txt", birth_time_ns=birth_time_ns)])
    assert result.findings == []


def test_zero_tolerance_flags_anything_strictly_older(tmp_path: Path):
    entry = local_entry(tmp_path / "a.txt", birth_time_ns=CREATION_NS - 1)

    assert _analyzer([], tolerance_ns=0).analyze([entry]).findings
    assert not _analyzer([]).analyze([entry]).findings


def test_different_mtime_is_never_hashed(tmp_path: Path, write_file):
    path = write_file(tmp_path / "a.txt", b"different bytes")
    snapshot_file = SnapshotFileEntry(
        path=str(path), mtime_ns=FIXED_MTIME_NS - SECOND_NS, size=1, content_digest=sha256_bytes(b"x")
    )
    hasher = CountingHasher()

    result = _analyzer([snapshot_file], hasher=hasher).analyze([local_entry(path, birth_time_ns=0)])

    assert result.findings == []
    assert result.content_checks == 0
    assert hasher.calls == []


def test_snapshot_digest_is_only_loaded_for_gated_entries(tmp_path: Path, write_file):
    gated = write_file(tmp_path / "gated.txt", b"g")
    skipped = write_file(tmp_path / "skipped.txt", b"s", mtime_ns=FIXED_MTIME_NS + SECOND_NS)
    loaded: list[str] = []

    def loader_for(path: Path, content: bytes):
        def _load(stop_event=None) -> str:
            loaded.append(str(path))
            return sha256_bytes(content)

        return _load

    files = [
        SnapshotFileEntry(path=str(gated), mtime_ns=FIXED_MTIME_NS, size=1, digest_loader=loader_for(gated, b"g")),
        SnapshotFileEntry(path=str(skipped), mtime_ns=FIXED_MTIME_NS, size=1, digest_loader=loader_for(skipped, b"s")),
    ]
    local = [
        local_entry(gated, birth_time_ns=0),
        local_entry(skipped, birth_time_ns=0, mtime_ns=FIXED_MTIME_NS + SECOND_NS),
    ]

    result = _analyzer(files).analyze(local)

    assert result.findings == []
    assert loaded == [str(gated)]


def test_excluded_files_produce_no_findings(tmp_path: Path, write_file):
    excluded_dir = tmp_path / "excluded"
    mismatched = write_file(excluded_dir / "m.txt", b"local")
    missing = excluded_dir / "gone.txt"
    files = [
        SnapshotFileEntry(path=str(mismatched), mtime_ns=FIXED_MTIME_NS, size=1, content_digest=sha256_bytes(b"x"))
    ]
    hasher = CountingHasher()
    exclude_filter = ExcludeFilter((ExcludeRule(str(excluded_dir)),))

    result = _analyzer(files, exclude_filter=exclude_filter, hasher=hasher).analyze(
        [local_entry(mismatched, birth_time_ns=0), local_entry(missing, birth_time_ns=0)]
    )

    assert result.findings == []
    assert result.files_checked == 0
    assert hasher.calls == []


def test_repeated_analysis_is_identical(tmp_path: Path, write_file):
    changed = write_file(tmp_path / "changed.txt", b"now")
    files = [
        SnapshotFileEntry(path=str(changed), mtime_ns=FIXED_MTIME_NS, size=3, content_digest=sha256_bytes(b"then"))
    ]
    local = [
        local_entry(changed, birth_time_ns=0),
        local_entry(tmp_path / "m1.txt", birth_time_ns=0),
        local_entry(tmp_path / "m2.txt", birth_time_ns=0),
    ]
    analyzer = _analyzer(files, workers=4)

    first = analyzer.analyze(local)
    second = analyzer.analyze(list(reversed(local)))

    assert first.findings == second.findings
    assert len(first.findings) == 3


def test_relative_mode_strips_snapshot_source_root(tmp_path: Path, write_file):
    path = write_file(tmp_path / "docs" / "a.txt", b"new")
    snapshot = SnapshotInfo(id="rel", creation_time_ns=CREATION_NS, paths=("/home/user/docs",))
    files = [
        SnapshotFileEntry(
            path="/home/user/docs/docs/a.txt", mtime_ns=FIXED_MTIME_NS, size=3, content_digest=sha256_bytes(b"old")
        )
    ]
    entry = local_entry(path, birth_time_ns=0, relative_path="docs/a.txt")

    result = DriftAnalyzer(snapshot, files, path_mode=PathMode.RELATIVE, workers=1).analyze([entry])

    assert [f.kind for f in result.findings] == [FindingKind.CONTENT_MISMATCH]


def test_absolute_mode_does_not_match_relative_paths(tmp_path: Path, write_file):
    path = write_file(tmp_path / "a.txt")
    files = [SnapshotFileEntry(path="a.txt", mtime_ns=FIXED_MTIME_NS, size=1, content_digest="x")]

    result = _analyzer(files).analyze([local_entry(path, birth_time_ns=0, relative_path="a.txt")])

    assert [f.kind for f in result.findings] == [FindingKind.MISSING_FROM_BACKUP]


@pytest.mark.parametrize(
    ("path", "mode", "root", "expected"),
    [
        ("/home/u/docs/a.txt", PathMode.ABSOLUTE, "/home/u/docs", "/home/u/docs/a.txt"),
        ("/home/u/docs/a.txt", PathMode.RELATIVE, "/home/u/docs", "a.txt"),
        ("/docs/sub/a.txt", PathMode.RELATIVE, "/home/u/docs", "sub/a.txt"),
        ("/a.txt", PathMode.RELATIVE, ".", "a.txt"),
        ("/other/a.txt", PathMode.RELATIVE, None, "other/a.txt"),
    ],
)
def test_normalize_snapshot_path(path, mode, root, expected):
    assert normalize_snapshot_path(path, mode, root) == expected


def test_duplicate_snapshot_paths_are_rejected():
    files = [
        SnapshotFileEntry(path="/x/a.txt", mtime_ns=1, size=1),
        SnapshotFileEntry(path="/x/a.txt", mtime_ns=2, size=1),
    ]
    with pytest.raises(RepositoryError):
        build_snapshot_lookup(files, PathMode.ABSOLUTE)


def test_local_read_failure_is_recorded_not_fatal(tmp_path: Path):
    path = tmp_path / "locked.txt"
    files = [SnapshotFileEntry(path=str(path), mtime_ns=FIXED_MTIME_NS, size=1, content_digest="x")]

    def failing_hasher(entry, *, stop_event=None):
        raise ScanError(ScanIssue(path=entry.path, reason=ScanIssueReason.PERMISSION_DENIED, message="denied"))

    result = _analyzer(files, hasher=failing_hasher).analyze([local_entry(path, birth_time_ns=0)])

    assert result.findings == []
    assert [issue.reason for issue in result.issues] == [ScanIssueReason.PERMISSION_DENIED]


def test_repository_failure_while_reading_digest_aborts(tmp_path: Path, write_file):
    path = write_file(tmp_path / "a.txt")

    def broken_loader(stop_event=None) -> str:
        raise RepositoryError("restic dump failed")

    files = [SnapshotFileEntry(path=str(path), mtime_ns=FIXED_MTIME_NS, size=1, digest_loader=broken_loader)]

    with pytest.raises(RepositoryError):
        _analyzer(files).analyze([local_entry(path, birth_time_ns=0)])


def test_finding_sink_returns_sorted_findings():
    sink = FindingSink()
    sink.append(Finding(path="/b", kind=FindingKind.MISSING_FROM_BACKUP))
    sink.append(Finding(path="/a", kind=FindingKind.CONTENT_MISMATCH))

    assert [f.path for f in sink.findings()] == ["/a", "/b"]
    assert len(sink) == 2
