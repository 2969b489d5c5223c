from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from .errors import JobNotFound, StoreUnavailable
from .interfaces import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    records_removed: int
    entries_removed: int


class Reaper:
    """Periodically evicts expired job records and on-disk artifacts.

    The record purge and the directory walk are independent: a failure in
    one does not stop the other. Top-level entries named after a job that is
    still alive are never deleted, whatever their age.
    """

    def __init__(
        self,
        store: JobStore,
        roots: Iterable[str | Path],
        *,
        ttl: float,
        interval: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._roots = [Path(r) for r in roots]
        self._ttl = ttl
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("Reaper started (ttl=%ss, interval=%ss)", self._ttl, self._interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Reaper sweep failed")
            await asyncio.sleep(self._interval)

    def sweep(self) -> SweepResult:
        cutoff = self._clock() - self._ttl
        records = self._purge_records(cutoff)
        entries = sum(self._purge_root(root, cutoff) for root in self._roots)
        if records or entries:
            logger.info("Reaper removed %d job records and %d artifacts", records, entries)
        return SweepResult(records, entries)

    def _purge_records(self, cutoff: float) -> int:
        try:
            return self._store.remove_older_than(datetime.fromtimestamp(cutoff, tz=timezone.utc))
        except StoreUnavailable:
            logger.exception("Job store unavailable, skipping record purge")
            return 0

    def _purge_root(self, root: Path, cutoff: float) -> int:
        try:
            entries = list(root.iterdir())
        except FileNotFoundError:
            return 0
        except OSError:
            logger.warning("Unable to scan %s", root, exc_info=True)
            return 0

        removed = 0
        for entry in entries:
            try:
                if last_modified(entry) >= cutoff or self._is_alive(entry.name):
                    continue
                delete_tree(entry)
                removed += 1
            except OSError:
                logger.warning("Unable to delete %s", entry, exc_info=True)
        return removed

    def _is_alive(self, job_id: str) -> bool:
        try:
            return self._store.get(job_id).alive
        except JobNotFound:
            return False
        except StoreUnavailable:
            logger.warning("Job store unavailable, keeping %s", job_id)
            return True


def last_modified(path: Path) -> float:
    """Newest modification time of ``path`` or anything beneath it."""
    newest = path.stat().st_mtime
    if path.is_dir() and not path.is_symlink():
        for dirpath, dirnames, filenames in os.walk(path, onerror=_log_walk_error):
            for name in dirnames + filenames:
                try:
                    newest = max(newest, os.lstat(os.path.join(dirpath, name)).st_mtime)
                except OSError:
                    logger.warning("Unable to stat %s", os.path.join(dirpath, name), exc_info=True)
    return newest


def delete_tree(path: Path) -> None:
    """Delete ``path`` depth-first, logging entries that cannot be removed.

    Raises ``OSError`` only if ``path`` itself survives.
    """
    if path.is_dir() and not path.is_symlink():
        for dirpath, dirnames, filenames in os.walk(path, topdown=False, onerror=_log_walk_error):
            for name in filenames:
                _remove(Path(dirpath) / name, os.unlink)
            for name in dirnames:
                child = Path(dirpath) / name
                _remove(child, os.unlink if child.is_symlink() else os.rmdir)
        path.rmdir()
    else:
        path.unlink()


def _remove(path: Path, op: Callable[[Path], None]) -> None:
    try:
        op(path)
    except OSError:
        logger.warning("Error when trying to delete %s", path, exc_info=True)


def _log_walk_error(err: OSError) -> None:
    logger.warning("Unable to scan %s: %s", err.filename, err)
