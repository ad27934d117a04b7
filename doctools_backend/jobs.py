from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Mapping

from .blob_store import BlobStore
from .errors import ConflictError, NotFoundError, ToolExecutionError, ValidationError, sanitize_message
from .ordering import FileSelection, order_file_ids
from .registry import Session, SessionRegistry, SessionStatus
from .tools import ToolExecutor


logger = logging.getLogger(__name__)


def download_url(session_id: str, output_file: str) -> str:
    return f"/download/{session_id}/{output_file}"


class JobRunner:
    """Executes one tool invocation per execute request, in the background.

    ``submit`` validates synchronously, flips the session to ``processing``
    and schedules the work; the outcome reaches the registry later and is
    observed by polling only.
    """

    def __init__(self, registry: SessionRegistry, store: BlobStore, executor: ToolExecutor) -> None:
        self._registry = registry
        self._store = store
        self._executor = executor
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        session_id: str,
        tool: str,
        files: FileSelection,
        options: Mapping[str, Any] | None = None,
    ) -> Session:
        """Start a job and return the ``processing`` session.

        Raises NotFoundError, ValidationError or ConflictError; nothing is
        changed in the registry when one of these is raised.
        """
        session = self._registry.get(session_id)
        sid = session.session_id
        if session.status is SessionStatus.PROCESSING:
            raise ConflictError("A job is already running for this session.")
        if session.status.is_terminal:
            raise ConflictError("This session already finished; create a new session to retry.")
        options = dict(options or {})

        file_ids = order_file_ids(files)
        self._executor.validate(tool, file_ids, options)
        known = set(session.uploads)
        inputs: list[Path] = []
        for file_id in file_ids:
            if file_id not in known:
                raise ValidationError(f"File '{file_id}' was not uploaded to this session.")
            path = self._store.resolve(sid, file_id)
            if not path.is_file():
                raise ValidationError(f"File '{file_id}' is no longer available.")
            inputs.append(path)

        started = self._registry.begin_job(sid, tool)
        logger.info("[%s] Starting '%s' with %d file(s): %s", sid, tool, len(inputs), ", ".join(file_ids))

        task = asyncio.create_task(self._run(sid, tool, inputs, options), name=f"job-{sid}")
        self._tasks[sid] = task
        task.add_done_callback(lambda _t, key=sid: self._tasks.pop(key, None))
        return started

    async def _run(self, session_id: str, tool: str, inputs: list[Path], options: dict[str, Any]) -> None:
        # Every exit path must leave the session terminal; a session stuck in
        # processing is never reclaimed by anything but the sweeper.
        try:
            try:
                session_dir = self._store.session_dir(session_id)
                output_file = await self._executor.execute(tool, session_id, session_dir, inputs, options)
            finally:
                # Inputs are consumed whatever the outcome, before it becomes visible.
                self._store.discard(inputs)
        except asyncio.CancelledError:
            logger.warning("[%s] Job '%s' cancelled", session_id, tool)
            self._finish(session_id, SessionStatus.ERROR, message=f"'{tool}' was cancelled.")
            raise
        except ToolExecutionError as exc:
            logger.error("[%s] Job '%s' failed: %s", session_id, tool, exc.message)
            message = sanitize_message(exc.message, roots=(self._store.root,)) or f"'{tool}' failed."
            self._finish(session_id, SessionStatus.ERROR, message=message)
        except Exception:
            logger.exception("[%s] Unexpected failure in job '%s'", session_id, tool)
            self._finish(session_id, SessionStatus.ERROR, message=f"Unexpected failure while running '{tool}'.")
        else:
            logger.info("[%s] Job '%s' complete: %s", session_id, tool, output_file)
            self._finish(
                session_id,
                SessionStatus.COMPLETE,
                download_url=download_url(session_id, output_file),
                output_file=output_file,
            )

    def _finish(self, session_id: str, status: SessionStatus, **payload: Any) -> None:
        try:
            self._registry.transition(session_id, status, **payload)
        except NotFoundError:
            # Reclaimed by the sweeper while running; nobody is polling any more.
            logger.info("[%s] Session gone before job finished; outcome dropped", session_id)
        except Exception:
            logger.exception("[%s] Could not record job outcome", session_id)

    def cancel(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait_idle(self) -> None:
        """Wait until every in-flight job has delivered its outcome."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
