from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable
from urllib.parse import quote

from anyio.to_thread import run_sync

from .blob_store import BlobStore
from .errors import NotFoundError
from .registry import SessionRegistry, SessionStatus
from .security import original_name


logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 256 * 1024


@dataclass(frozen=True)
class DownloadTarget:
    session_id: str
    path: Path
    attachment_name: str
    size: int


def resolve_download(registry: SessionRegistry, store: BlobStore, session_id: str, file_name: str) -> DownloadTarget:
    """Locate the finished output of a session.

    Raises ValidationError when ``file_name`` would leave the session
    directory, NotFoundError when the session is not complete or the file is
    not its output or is gone.
    """
    session = registry.get(session_id)
    path = store.resolve(session.session_id, file_name)
    if session.status is not SessionStatus.COMPLETE or session.output_file != file_name:
        raise NotFoundError("File not found or session expired.")
    try:
        size = path.stat().st_size
    except OSError:
        raise NotFoundError("File not found or session expired.") from None
    if not path.is_file():
        raise NotFoundError("File not found or session expired.")
    return DownloadTarget(
        session_id=session.session_id,
        path=path,
        attachment_name=original_name(file_name) or file_name,
        size=size,
    )


def content_disposition(filename: str) -> str:
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


async def stream_and_reclaim(
    path: Path,
    on_complete: Callable[[], None],
    *,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    chunk_size: int = DOWNLOAD_CHUNK_BYTES,
) -> AsyncIterator[bytes]:
    """Yield ``path`` in chunks; call ``on_complete`` once the last chunk went out.

    Reads run in a worker thread, so every chunk is a checkpoint where a
    client disconnect can cancel the stream. ``is_disconnected`` is asked once
    more after the last chunk, since a server may accept writes to a dead
    socket without complaint. If the client went away ``on_complete`` is not
    called and the file stays downloadable.
    """
    finished = False
    try:
        with path.open("rb") as fh:
            while True:
                chunk = await run_sync(fh.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finished = is_disconnected is None or not await is_disconnected()
    finally:
        if finished:
            on_complete()
        else:
            logger.info("Download of %s interrupted; session kept for retry", path.name)


def reclaim_session(registry: SessionRegistry, store: BlobStore, session_id: str) -> Callable[[], None]:
    """Callback removing a session's directory and registry entry after download."""

    def _reclaim() -> None:
        store.remove_session(session_id)
        registry.remove(session_id)
        logger.info("[%s] Download complete; session reclaimed", session_id)

    return _reclaim
