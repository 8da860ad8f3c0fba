"""Age and count based rotation of backup, snapshot, archive and log files."""

import os
import time
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ConfigurationError


SECONDS_PER_DAY = 86400

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """Both limits apply: a file survives only if it passes the age test and the count test."""

    max_age_days: int
    max_count: int

    def validate(self) -> None:
        if self.max_age_days < 1:
            raise ConfigurationError(f"Retention days must be >= 1, got {self.max_age_days}")
        if self.max_count < 1:
            raise ConfigurationError(f"Retention count must be >= 1, got {self.max_count}")


@dataclass(frozen=True)
class FilePopulation:
    """Files in one directory (non-recursive) matching one glob pattern."""

    directory: Path
    pattern: str

    def list_files(self) -> List[Path]:
        directory = Path(self.directory)
        if not directory.is_dir():
            return []
        return [p for p in directory.glob(self.pattern) if p.is_file()]

    def __str__(self) -> str:
        return str(Path(self.directory) / self.pattern)


@dataclass
class RotationResult:
    """Outcome of one rotation; failed deletions are warnings, not errors."""

    population: FilePopulation
    deleted: List[Path] = field(default_factory=list)
    failed: List[Tuple[Path, str]] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.failed)


def _whole_days_old(path: Path, now: float) -> int:
    return int((now - path.stat().st_mtime) // SECONDS_PER_DAY)


def _sort_oldest_first(files: List[Path]) -> List[Path]:
    return sorted(files, key=lambda p: (p.stat().st_mtime, p.name))


def rotate(population: FilePopulation, policy: RetentionPolicy, notifier=None,
           now: Optional[float] = None, dry_run: bool = False) -> RotationResult:
    """Delete files of a population that break the age or count limit.

    The age pass removes every file whose age in whole days exceeds
    ``max_age_days - 1``, so a 30 day window keeps files up to 29 whole days
    old and a 1 day window keeps only files from the last 24 hours.
    The count pass then re-lists the population and removes the oldest files
    beyond ``max_count``, ordered by mtime with the name as tie breaker.

    Args:
        population: Directory and glob pattern to rotate
        policy: Retention limits, validated upstream
        notifier: Optional NotificationManager; falls back to module logging
        now: Reference time as a POSIX timestamp, defaults to the current time
        dry_run: Report what would be deleted without deleting

    Returns:
        RotationResult listing deleted paths and failed deletions
    """
    log = notifier or logger
    now = time.time() if now is None else now
    result = RotationResult(population=population)
    age_limit = policy.max_age_days - 1
    removed = set()

    def delete(path: Path, why: str) -> None:
        if dry_run:
            log.info(f"[dry-run] Would delete {path} ({why})")
            result.deleted.append(path)
            removed.add(path)
            return
        try:
            os.remove(path)
        except OSError as e:
            log.warning(f"Could not delete {path} ({why}): {e}")
            result.failed.append((path, str(e)))
            return
        log.info(f"Deleted {path} ({why})")
        result.deleted.append(path)
        removed.add(path)

    for path in population.list_files():
        try:
            age = _whole_days_old(path, now)
        except OSError as e:
            log.warning(f"Could not stat {path}: {e}")
            result.failed.append((path, str(e)))
            continue
        if age > age_limit:
            delete(path, f"{age} days old, retention {policy.max_age_days} days")

    try:
        remaining = _sort_oldest_first([p for p in population.list_files() if p not in removed])
    except OSError as e:
        # A file vanished between listing and stat; skip the count pass this run.
        log.warning(f"Could not list {population} for count rotation: {e}")
        result.failed.append((Path(population.directory), str(e)))
        return result

    excess = len(remaining) - policy.max_count
    if excess > 0:
        for path in remaining[:excess]:
            delete(path, f"over the limit of {policy.max_count} files")

    if result.deleted:
        log.info(f"Rotation of {population}: {len(result.deleted)} file(s) removed")
    return result
