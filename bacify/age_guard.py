from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from bacify.errors import StaleBackupError
from bacify.timeutil import now_ns as _now_ns


@dataclass(slots=True, frozen=True)
class AgeCheck:
    age: timedelta
    max_age: timedelta

    @property
    def is_stale(self) -> bool:
        return self.age > self.max_age

    @property
    def error(self) -> StaleBackupError | None:
        if not self.is_stale:
            return None
        return StaleBackupError(self.age, self.max_age)

    def raise_if_stale(self) -> None:
        error = self.error
        if error is not None:
            raise error


def check_backup_age(
    creation_time_ns: int,
    max_age: timedelta,
    *,
    now_ns: int | None = None,
) -> AgeCheck:
    current_ns = _now_ns() if now_ns is None else now_ns
    age = timedelta(microseconds=(current_ns - creation_time_ns) // 1_000)
    return AgeCheck(age=age, max_age=max_age)
