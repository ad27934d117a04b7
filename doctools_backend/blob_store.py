from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from .config import UPLOAD_CHUNK_BYTES
from .errors import NotFoundError, PayloadTooLargeError, StorageError, ValidationError
from .security import is_safe_basename, new_file_id, normalize_session_id, safe_join


logger = logging.getLogger(__name__)

ChunkReader = Callable[[int], Awaitable[bytes]]


class BlobStore:
    """Per-session directories under a single uploads root.

    A session directory has the session id as its name and the same lifetime
    as the registry entry; nothing in it is shared across sessions.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def session_dir(self, session_id: str) -> Path:
        try:
            sid = normalize_session_id(session_id)
        except ValueError:
            raise NotFoundError() from None
        return self._root / sid

    def provision(self, session_id: str) -> Path:
        path = self.session_dir(session_id)
        try:
            path.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise StorageError("Could not provision session storage.") from exc
        return path

    async def save_upload(
        self,
        session_id: str,
        original_name: str | None,
        read_chunk: ChunkReader,
        *,
        max_bytes: int,
    ) -> str:
        """Stream an upload to disk and return its file id.

        The partial file is removed when the size limit is exceeded or the
        write fails.
        """
        directory = self.session_dir(session_id)
        if not directory.is_dir():
            raise NotFoundError()

        file_id = new_file_id(original_name)
        target = safe_join(directory, file_id)
        size = 0
        try:
            with target.open("xb") as out:
                while True:
                    chunk = await read_chunk(UPLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > max_bytes:
                        raise PayloadTooLargeError(f"File exceeds the {_format_size(max_bytes)} limit.")
                    out.write(chunk)
        except PayloadTooLargeError:
            target.unlink(missing_ok=True)
            raise
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise StorageError("Could not store the uploaded file.") from exc

        if size == 0:
            target.unlink(missing_ok=True)
            raise ValidationError("Uploaded file is empty.")
        return file_id

    def resolve(self, session_id: str, file_name: str) -> Path:
        """Path of a file inside the session directory (containment checked)."""
        if not is_safe_basename(file_name):
            raise ValidationError("Invalid file name.")
        try:
            return safe_join(self.session_dir(session_id), file_name)
        except ValueError:
            raise ValidationError("Invalid file name.") from None

    def discard(self, paths: Iterable[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not delete %s", path.name, exc_info=True)

    def remove_session(self, session_id: str) -> None:
        path = self.session_dir(session_id)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            if path.exists():
                logger.error("[%s] Session directory could not be fully removed", path.name)

    def _session_dirs(self) -> list[Path]:
        if not self._root.exists():
            return []
        found: list[Path] = []
        for child in self._root.iterdir():
            if not child.is_dir():
                continue
            try:
                normalize_session_id(child.name)
            except ValueError:
                continue
            found.append(child)
        return found

    def orphan_dirs(self, known_ids: Iterable[str], older_than: float) -> list[Path]:
        """Session-shaped directories with no registry entry, older than the cutoff."""
        known = set(known_ids)
        orphans: list[Path] = []
        for child in self._session_dirs():
            if child.name in known:
                continue
            try:
                mtime = child.stat().st_mtime
            except OSError:
                continue
            if mtime < older_than:
                orphans.append(child)
        return orphans

    def purge_all(self) -> int:
        """Delete every session directory; used at startup when the registry is empty."""
        deleted = 0
        for child in self._session_dirs():
            shutil.rmtree(child, ignore_errors=True)
            deleted += 1
        return deleted

    def ensure_root(self) -> None:
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError("Uploads root is not writable.") from exc


def _format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):g}MB"
    return f"{size / 1024:g}KB"
