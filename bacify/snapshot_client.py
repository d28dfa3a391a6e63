from __future__ import annotations

import functools
import hashlib
import json
import logging
import posixpath
import subprocess
import tempfile
import threading
from typing import Any, Callable, Protocol, Sequence

from bacify.config import PathMode, RepositoryConfig
from bacify.errors import OperationCancelled, RepositoryError
from bacify.models import LocalFileEntry, SnapshotFileEntry, SnapshotInfo
from bacify.timeutil import format_ns, parse_rfc3339_ns


logger = logging.getLogger(__name__)

DUMP_CHUNK_SIZE = 1024 * 1024
NO_SNAPSHOT_HINT = (
    "Couldn't find any snapshots. Did you set RESTIC_REPOSITORY and RESTIC_PASSWORD? "
    "Is restic installed?"
)


class SnapshotQueryClient(Protocol):
    def latest_snapshot(self) -> SnapshotInfo: ...

    def list_files(self, snapshot_id: str) -> Sequence[SnapshotFileEntry]: ...


def normalize_snapshot_path(path: str, mode: PathMode, source_root: str | None = None) -> str:
    """Map a path recorded in the snapshot onto the key used for local entries.

    In relative mode the snapshot's source root is stripped. Relative backups
    may record only the last component of that root, so that form is tried
    as well before falling back to dropping the leading slash.
    """
    if mode is PathMode.ABSOLUTE:
        return path

    stripped = path.lstrip("/")
    root = posixpath.normpath(source_root).strip("/") if source_root else ""
    candidates = [root, posixpath.basename(root)] if root and root != "." else []
    for candidate in candidates:
        if not candidate:
            continue
        if stripped == candidate:
            return ""
        if stripped.startswith(f"{candidate}/"):
            return stripped[len(candidate) + 1 :]
    return stripped


def local_lookup_key(entry: LocalFileEntry, mode: PathMode) -> str:
    return entry.relative_path if mode is PathMode.RELATIVE else entry.path


def _message_type(item: dict[str, Any]) -> str | None:
    value = item.get("message_type") or item.get("struct_type")
    return str(value) if value else None


def _snapshot_info_from_json(item: Any) -> SnapshotInfo:
    if not isinstance(item, dict):
        raise RepositoryError("No snapshot data available")
    snapshot_id = item.get("id")
    if not isinstance(snapshot_id, str) or not snapshot_id:
        raise RepositoryError("Invalid snapshot id")
    raw_time = item.get("time")
    try:
        creation_time_ns = parse_rfc3339_ns(str(raw_time))
    except ValueError as exc:
        raise RepositoryError(f"Invalid snapshot time: {raw_time!r}") from exc
    paths = item.get("paths") or []
    if not isinstance(paths, list):
        raise RepositoryError("Invalid snapshot paths")
    return SnapshotInfo(
        id=snapshot_id,
        creation_time_ns=creation_time_ns,
        paths=tuple(str(path) for path in paths),
        short_id=str(item.get("short_id") or snapshot_id[:8]),
        hostname=str(item.get("hostname") or ""),
    )


class ResticClient:
    """Snapshot queries answered by the ``restic`` command line.

    Credentials come from the ``RepositoryConfig`` passed in and are handed
    to each child process explicitly. Every failure raises ``RepositoryError``
    and nothing is retried.
    """

    def __init__(
        self,
        config: RepositoryConfig,
        *,
        executable: str = "restic",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self._config = config
        self._executable = executable
        self._runner = runner
        self._popen = popen

    def _command(self, *args: str) -> list[str]:
        return [self._executable, *args]

    def _run(self, *args: str) -> str:
        command = self._command(*args)
        logger.debug("Running %s", " ".join(command))
        try:
            completed = self._runner(
                command,
                env=self._config.child_env(),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="surrogateescape",
                check=False,
            )
        except FileNotFoundError as exc:
            raise RepositoryError(f"{self._executable} not found. Is restic installed?") from exc
        except OSError as exc:
            raise RepositoryError(f"Could not run {self._executable}: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise RepositoryError(
                f"`restic {args[0]}` failed with exit code {completed.returncode}"
                + (f": {stderr}" if stderr else "")
            )
        return completed.stdout or ""

    def latest_snapshot(self) -> SnapshotInfo:
        output = self._run("snapshots", "--json", "--latest", "1")
        if not output.strip():
            raise RepositoryError(NO_SNAPSHOT_HINT)
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise RepositoryError(f"Could not parse restic snapshot list: {exc}") from exc
        if not isinstance(payload, list) or not payload:
            raise RepositoryError(NO_SNAPSHOT_HINT)

        # --latest 1 yields one snapshot per host/path group; the newest one wins.
        snapshots = [_snapshot_info_from_json(item) for item in payload]
        latest = max(snapshots, key=lambda info: info.creation_time_ns)
        logger.info("Latest snapshot %s taken at %s", latest.short_id, format_ns(latest.creation_time_ns))
        return latest

    def snapshot_stats(self, snapshot_id: str) -> dict[str, Any]:
        output = self._run("stats", "--json", snapshot_id)
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise RepositoryError(f"Could not parse restic stats output: {exc}") from exc
        if not isinstance(payload, dict):
            raise RepositoryError("Unexpected restic stats output")
        return payload

    def list_files(self, snapshot_id: str) -> list[SnapshotFileEntry]:
        output = self._run("ls", "--json", snapshot_id)
        entries: list[SnapshotFileEntry] = []
        saw_snapshot = False

        for line_number, line in enumerate(output.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError as exc:
                raise RepositoryError(
                    f"Could not parse restic ls output at line {line_number}: {exc}"
                ) from exc
            if not isinstance(item, dict):
                raise RepositoryError(f"Unexpected restic ls record at line {line_number}")

            kind = _message_type(item)
            if kind == "snapshot":
                saw_snapshot = True
                continue
            if kind != "node" or item.get("type") != "file":
                continue
            entries.append(self._entry_from_node(snapshot_id, item))

        if not saw_snapshot:
            raise RepositoryError(f"restic ls returned no data for snapshot {snapshot_id}")
        logger.debug("Snapshot %s lists %d file(s)", snapshot_id, len(entries))
        return entries

    def _entry_from_node(self, snapshot_id: str, node: dict[str, Any]) -> SnapshotFileEntry:
        path = node.get("path")
        if not isinstance(path, str) or not path:
            raise RepositoryError(f"Snapshot node without a path: {node!r}")
        try:
            mtime_ns = parse_rfc3339_ns(str(node.get("mtime")))
        except ValueError as exc:
            raise RepositoryError(f"Invalid mtime for {path}: {node.get('mtime')!r}") from exc
        return SnapshotFileEntry(
            path=path,
            mtime_ns=mtime_ns,
            size=int(node.get("size") or 0),
            digest_loader=functools.partial(self.dump_digest, snapshot_id, path),
        )

    def dump_digest(
        self,
        snapshot_id: str,
        path: str,
        stop_event: threading.Event | None = None,
    ) -> str:
        """SHA-256 of a file's content as stored in the snapshot, streamed from ``restic dump``."""
        command = self._command("dump", snapshot_id, path)
        logger.debug("Running %s", " ".join(command))
        digest = hashlib.sha256()
        # Only stdout is a pipe; stderr is spooled to a file and read after exit.
        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = self._popen(
                    command,
                    env=self._config.child_env(),
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                )
            except OSError as exc:
                raise RepositoryError(f"Could not run {self._executable}: {exc}") from exc

            with process:
                assert process.stdout is not None
                while True:
                    if stop_event is not None and stop_event.is_set():
                        process.kill()
                        raise OperationCancelled(f"Reading {path} from snapshot was cancelled")
                    chunk = process.stdout.read(DUMP_CHUNK_SIZE)
                    if not chunk:
                        break
                    digest.update(chunk)
                returncode = process.wait()

            stderr_file.seek(0)
            stderr = stderr_file.read()

        if returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise RepositoryError(
                f"`restic dump` failed for {path} with exit code {returncode}"
                + (f": {message}" if message else "")
            )
        return digest.hexdigest()
