from __future__ import annotations

import asyncio
import logging
import shutil
import time
from typing import Callable

from .blob_store import BlobStore
from .jobs import JobRunner
from .registry import SessionRegistry


logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0


class CleanupSweeper:
    """Reclaims abandoned sessions and their directories.

    - non-terminal (``created``/``processing``) older than the timeout: removed,
      and a still-running job is cancelled;
    - terminal (``complete``/``error``) older than ``retention_factor`` x
      timeout: removed;
    - session directories with no registry entry, older than the timeout:
      deleted.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: BlobStore,
        *,
        timeout_seconds: float,
        retention_factor: float = 2.0,
        interval_seconds: float | None = None,
        jobs: JobRunner | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._store = store
        self._jobs = jobs
        self._timeout = float(timeout_seconds)
        self._terminal_timeout = self._timeout * max(1.0, float(retention_factor))
        self._interval = float(interval_seconds) if interval_seconds else self._timeout / 2
        self._clock = clock

    @property
    def interval(self) -> float:
        return max(MIN_INTERVAL_SECONDS, self._interval)

    def sweep(self, now: float | None = None) -> int:
        """Run one pass; returns the number of sessions reclaimed."""
        now = self._clock() if now is None else now
        removed = 0
        for session in self._registry.snapshot():
            age = now - session.start_time
            terminal = session.status.is_terminal
            if terminal and age <= self._terminal_timeout:
                continue
            if not terminal and age <= self._timeout:
                continue

            if self._jobs is not None and not terminal:
                self._jobs.cancel(session.session_id)
            self._registry.remove(session.session_id)
            self._store.remove_session(session.session_id)
            removed += 1
            logger.info(
                "[Cleanup] Removed %s session %s (age %ds)",
                session.status.value,
                session.session_id,
                int(age),
            )

        orphans = self._store.orphan_dirs(self._registry.session_ids(), older_than=now - self._timeout)
        for path in orphans:
            shutil.rmtree(path, ignore_errors=True)
        if orphans:
            logger.info("[Cleanup] Deleted %d orphan session director%s", len(orphans), "y" if len(orphans) == 1 else "ies")
        if removed:
            logger.info("[Cleanup] Sweep reclaimed %d session(s)", removed)
        return removed

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("[Cleanup] Sweep failed; retrying next interval")
