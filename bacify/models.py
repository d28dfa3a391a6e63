from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from bacify.errors import RepositoryError


@dataclass(slots=True, frozen=True)
class LocalFileEntry:
    path: str
    relative_path: str
    birth_time_ns: int
    mtime_ns: int
    size: int
    # Set when the filesystem exposes no creation time and mtime stands in for it.
    birth_time_degraded: bool = False


@dataclass(slots=True, frozen=True)
class SnapshotFileEntry:
    path: str
    mtime_ns: int
    size: int
    content_digest: str | None = None
    digest_loader: Callable[[threading.Event | None], str] | None = field(default=None, compare=False, repr=False)

    def resolve_digest(self, stop_event: threading.Event | None = None) -> str:
        if self.content_digest is not None:
            return self.content_digest
        if self.digest_loader is None:
            raise RepositoryError(f"No content digest available for snapshot entry {self.path}")
        return self.digest_loader(stop_event)


@dataclass(slots=True, frozen=True)
class SnapshotInfo:
    id: str
    creation_time_ns: int
    paths: tuple[str, ...] = ()
    short_id: str = ""
    hostname: str = ""

    @property
    def source_root(self) -> str | None:
        return self.paths[0] if self.paths else None


@dataclass(slots=True, frozen=True)
class ExcludeRule:
    prefix: str


class FindingKind(str, Enum):
    MISSING_FROM_BACKUP = "MissingFromBackup"
    CONTENT_MISMATCH = "ContentMismatch"


@dataclass(slots=True, frozen=True, order=True)
class Finding:
    path: str
    kind: FindingKind
    detail: tuple[tuple[str, str], ...] = ()

    @property
    def detail_map(self) -> dict[str, str]:
        return dict(self.detail)


class ScanIssueReason(str, Enum):
    VANISHED = "vanished"
    PERMISSION_DENIED = "permission_denied"
    READ_FAILED = "read_failed"


@dataclass(slots=True, frozen=True)
class ScanIssue:
    path: str
    reason: ScanIssueReason
    message: str


@dataclass(slots=True)
class ScanResult:
    entries: list[LocalFileEntry]
    issues: list[ScanIssue]

    @property
    def degraded_count(self) -> int:
        return sum(1 for entry in self.entries if entry.birth_time_degraded)
