from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import timedelta

    from bacify.models import ScanIssue


class BacifyError(Exception):
    """Base class for every error raised by bacify."""


class ConfigError(BacifyError):
    """Missing credentials, malformed durations or an unusable scan root."""


class RepositoryError(BacifyError):
    """The backup repository could not be queried or returned unusable data."""


class ScanError(BacifyError):
    """A per-file scan condition. Recorded, never fatal for the whole scan."""

    def __init__(self, issue: "ScanIssue") -> None:
        super().__init__(f"{issue.path}: {issue.message}")
        self.issue = issue


class StaleBackupError(BacifyError):
    def __init__(self, age: "timedelta", max_age: "timedelta") -> None:
        super().__init__(f"Backup is too old: last snapshot is {age} old, maximum allowed is {max_age}")
        self.age = age
        self.max_age = max_age


class OperationCancelled(BacifyError):
    """Scanning or hashing was stopped because the run is shutting down."""
