from __future__ import annotations

import hashlib
import os
import time
from pathlib import Path
from typing import Sequence

import pytest

from bacify.errors import RepositoryError
from bacify.models import LocalFileEntry, SnapshotFileEntry, SnapshotInfo


FIXED_MTIME_NS = 1_700_000_000 * 1_000_000_000
DAY_NS = 86_400 * 1_000_000_000


class InMemorySnapshotClient:
    """Snapshot client backed by plain Python objects."""

    def __init__(
        self,
        info: SnapshotInfo,
        files: Sequence[SnapshotFileEntry] = (),
        *,
        error: Exception | None = None,
    ) -> None:
        self.info = info
        self.files = list(files)
        self.error = error
        self.list_calls: list[str] = []

    def latest_snapshot(self) -> SnapshotInfo:
        if self.error is not None:
            raise self.error
        return self.info

    def list_files(self, snapshot_id: str) -> list[SnapshotFileEntry]:
        self.list_calls.append(snapshot_id)
        if snapshot_id != self.info.id:
            raise RepositoryError(f"unknown snapshot {snapshot_id}")
        return list(self.files)


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def local_entry(
    path: str | Path,
    *,
    birth_time_ns: int,
    mtime_ns: int = FIXED_MTIME_NS,
    size: int = 0,
    relative_path: str | None = None,
) -> LocalFileEntry:
    path = str(path)
    return LocalFileEntry(
        path=path,
        relative_path=relative_path if relative_path is not None else Path(path).name,
        birth_time_ns=birth_time_ns,
        mtime_ns=mtime_ns,
        size=size,
    )


@pytest.fixture
def write_file():
    def _write(path: Path, content: bytes = b"data", *, mtime_ns: int = FIXED_MTIME_NS) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        os.utime(path, ns=(mtime_ns, mtime_ns))
        return path

    return _write


@pytest.fixture
def future_snapshot() -> SnapshotInfo:
    # Taken after every file in the test tree, whatever birth time the filesystem reports.
    return SnapshotInfo(id="f" * 64, short_id="ffffffff", creation_time_ns=time.time_ns() + DAY_NS)


@pytest.fixture
def missing_exclude_file(tmp_path: Path) -> Path:
    return tmp_path / "no-such-exclude-file"
