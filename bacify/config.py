from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Mapping

from bacify.errors import ConfigError
from bacify.timeutil import timedelta_ns


EXCLUDE_FILENAME = ".backup_exclude"
DEFAULT_TOLERANCE = timedelta(seconds=1)
PASSWORD_ENV_NAMES = ("RESTIC_PASSWORD", "RESTIC_PASSWORD_FILE", "RESTIC_PASSWORD_COMMAND")


class PathMode(str, Enum):
    ABSOLUTE = "absolute"
    RELATIVE = "relative"


@dataclass(slots=True)
class RepositoryConfig:
    """Opaque repository location and credential handed to the snapshot client."""

    repository: str
    password: str | None = None
    password_file: str | None = None
    password_command: str | None = None

    def child_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        for name in ("RESTIC_REPOSITORY", *PASSWORD_ENV_NAMES):
            env.pop(name, None)
        env["RESTIC_REPOSITORY"] = self.repository
        if self.password is not None:
            env["RESTIC_PASSWORD"] = self.password
        if self.password_file is not None:
            env["RESTIC_PASSWORD_FILE"] = self.password_file
        if self.password_command is not None:
            env["RESTIC_PASSWORD_COMMAND"] = self.password_command
        return env


@dataclass(slots=True)
class VerifyOptions:
    path_mode: PathMode = PathMode.ABSOLUTE
    max_age: timedelta | None = None
    root: Path | None = None
    exclude_file: Path = field(default_factory=lambda: default_exclude_file())
    workers: int = field(default_factory=lambda: default_workers())
    tolerance: timedelta = DEFAULT_TOLERANCE
    show_stats: bool = False

    @property
    def tolerance_ns(self) -> int:
        return timedelta_ns(self.tolerance)


def repository_config_from_env(env: Mapping[str, str] | None = None) -> RepositoryConfig:
    env = os.environ if env is None else env
    repository = env.get("RESTIC_REPOSITORY", "").strip()
    if not repository:
        raise ConfigError("RESTIC_REPOSITORY is not set. Point it at the repository to verify.")

    values = {name: env.get(name) or None for name in PASSWORD_ENV_NAMES}
    if not any(values.values()):
        raise ConfigError(
            "No repository credential found. Set RESTIC_PASSWORD, RESTIC_PASSWORD_FILE "
            "or RESTIC_PASSWORD_COMMAND."
        )

    return RepositoryConfig(
        repository=repository,
        password=values["RESTIC_PASSWORD"],
        password_file=values["RESTIC_PASSWORD_FILE"],
        password_command=values["RESTIC_PASSWORD_COMMAND"],
    )


def default_exclude_file() -> Path:
    return Path.home() / EXCLUDE_FILENAME


def default_workers() -> int:
    return os.cpu_count() or 1
