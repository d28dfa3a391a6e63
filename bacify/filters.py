from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from bacify.errors import ConfigError
from bacify.models import ExcludeRule


logger = logging.getLogger(__name__)


def _matches_prefix(path: str, prefix: str) -> bool:
    # Component-wise: "/a/cache" covers "/a/cache" and "/a/cache/x" but not "/a/cache_old".
    if len(prefix) > 1:
        prefix = prefix.rstrip("/") or "/"
    if path == prefix:
        return True
    anchor = prefix if prefix.endswith("/") else f"{prefix}/"
    return path.startswith(anchor)


def is_excluded(path: str, rules: Iterable[ExcludeRule]) -> bool:
    return any(_matches_prefix(path, rule.prefix) for rule in rules)


@dataclass(slots=True, frozen=True)
class ExcludeFilter:
    rules: tuple[ExcludeRule, ...] = ()

    def excludes(self, path: str) -> bool:
        return bool(self.rules) and is_excluded(path, self.rules)

    def __len__(self) -> int:
        return len(self.rules)


def parse_exclude_rules(text: str) -> tuple[ExcludeRule, ...]:
    return tuple(ExcludeRule(prefix=line) for line in text.splitlines() if line.strip())


def load_exclude_rules(path: Path) -> tuple[ExcludeRule, ...]:
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        logger.debug("No exclude file at %s, nothing is excluded", path)
        return ()
    except OSError as exc:
        raise ConfigError(f"Could not read exclude file {path}: {exc}") from exc

    rules = parse_exclude_rules(os.fsdecode(raw))
    logger.debug("Loaded %d exclude rule(s) from %s", len(rules), path)
    return rules


def build_exclude_filter(path: Path) -> ExcludeFilter:
    return ExcludeFilter(rules=load_exclude_rules(path))
