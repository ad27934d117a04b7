"""In-memory Session Registry.

Single source of truth for job state while the process runs. Restarting the
process loses every entry; the blob store is purged at startup to match.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .blob_store import BlobStore
from .errors import ConflictError, NotFoundError
from .security import normalize_session_id


logger = logging.getLogger(__name__)


class SessionStatus(str, enum.Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.ERROR)


_ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.PROCESSING}),
    SessionStatus.PROCESSING: frozenset({SessionStatus.COMPLETE, SessionStatus.ERROR}),
    SessionStatus.COMPLETE: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


@dataclass(slots=True)
class Session:
    session_id: str
    status: SessionStatus = SessionStatus.CREATED
    start_time: float = 0.0
    updated_at: float = 0.0
    tool: str | None = None
    download_url: str | None = None
    output_file: str | None = None
    message: str | None = None
    uploads: tuple[str, ...] = field(default_factory=tuple)

    def to_public(self) -> dict[str, Any]:
        """Projection returned by the status endpoint; unset fields are omitted."""
        body: dict[str, Any] = {
            "sessionId": self.session_id,
            "status": self.status.value,
            "startTime": int(self.start_time * 1000),
        }
        if self.tool:
            body["tool"] = self.tool
        if self.download_url:
            body["downloadUrl"] = self.download_url
        if self.message:
            body["message"] = self.message
        return body


class SessionRegistry:
    """Maps session ids to :class:`Session` entries.

    Every read returns a copy and every mutation happens under one lock, so a
    poll never observes a half-applied transition.
    """

    def __init__(self, store: BlobStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def create(self) -> Session:
        """Provision storage, then register a ``created`` session.

        Raises StorageError (and registers nothing) if the directory cannot
        be created.
        """
        session_id = str(uuid.uuid4())
        self._store.provision(session_id)
        now = self._clock()
        session = Session(session_id=session_id, start_time=now, updated_at=now)
        with self._lock:
            self._sessions[session_id] = session
            return replace(session)

    def get(self, session_id: str) -> Session:
        with self._lock:
            return replace(self._require(session_id))

    def add_upload(self, session_id: str, file_id: str) -> Session:
        with self._lock:
            session = self._require(session_id)
            if session.status is not SessionStatus.CREATED:
                raise ConflictError("Session no longer accepts uploads.")
            session.uploads = session.uploads + (file_id,)
            session.updated_at = self._clock()
            return replace(session)

    def begin_job(self, session_id: str, tool: str) -> Session:
        """Atomically move a ``created`` session to ``processing``."""
        with self._lock:
            session = self._require(session_id)
            if session.status is SessionStatus.PROCESSING:
                raise ConflictError("A job is already running for this session.")
            return self._apply(session, SessionStatus.PROCESSING, tool=tool)

    def transition(self, session_id: str, new_status: SessionStatus, **payload: Any) -> Session:
        """Overwrite status and its associated fields in one step.

        Accepted payload keys: ``tool``, ``download_url``, ``output_file``,
        ``message``. Fields that do not belong to the new status are cleared.
        """
        with self._lock:
            return self._apply(self._require(session_id), SessionStatus(new_status), **payload)

    def remove(self, session_id: str) -> bool:
        """Drop an entry. Removing an absent entry is a no-op."""
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            return False
        with self._lock:
            return self._sessions.pop(sid, None) is not None

    def snapshot(self) -> list[Session]:
        with self._lock:
            return [replace(s) for s in self._sessions.values()]

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def _require(self, session_id: str) -> Session:
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            raise NotFoundError() from None
        session = self._sessions.get(sid)
        if session is None:
            raise NotFoundError()
        return session

    def _apply(
        self,
        session: Session,
        new_status: SessionStatus,
        *,
        tool: str | None = None,
        download_url: str | None = None,
        output_file: str | None = None,
        message: str | None = None,
    ) -> Session:
        if new_status not in _ALLOWED_TRANSITIONS[session.status]:
            raise ConflictError(
                f"Session cannot move from '{session.status.value}' to '{new_status.value}'."
            )
        if new_status is SessionStatus.COMPLETE and not (download_url and output_file):
            raise ValueError("complete requires download_url and output_file")
        if new_status is SessionStatus.ERROR and not message:
            raise ValueError("error requires a message")

        session.status = new_status
        if tool is not None:
            session.tool = tool
        complete = new_status is SessionStatus.COMPLETE
        session.download_url = download_url if complete else None
        session.output_file = output_file if complete else None
        session.message = message if new_status is SessionStatus.ERROR else None
        session.updated_at = self._clock()
        logger.debug("[%s] status -> %s", session.session_id, new_status.value)
        return replace(session)
