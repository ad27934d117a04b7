"""Error taxonomy shared by the registry, job runner and HTTP layer."""
from __future__ import annotations

import re
from typing import Iterable


class DocToolsError(Exception):
    """Base class; ``http_status`` is what the HTTP layer answers with."""

    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DocToolsError):
    """Session or file absent or expired. Never carries internal detail."""

    http_status = 404

    def __init__(self, message: str = "Session not found or expired.") -> None:
        super().__init__(message)


class ValidationError(DocToolsError):
    http_status = 400


class PayloadTooLargeError(ValidationError):
    http_status = 413


class ConflictError(DocToolsError):
    http_status = 409


class StorageError(DocToolsError):
    http_status = 500


class ToolExecutionError(DocToolsError):
    """External tool failed, timed out or produced no output.

    Recorded into the session's ``message``; never raised to an HTTP caller.
    """


MAX_MESSAGE_CHARS = 200

_ABS_PATH_RE = re.compile(r"(?<![\w.])(?:[A-Za-z]:)?(?:[\\/][^\s'\"\\/:]+)+[\\/]?")


def _basename(m: re.Match) -> str:
    parts = [p for p in re.split(r"[\\/]", m.group(0)) if p]
    return parts[-1] if parts else ""


def _strip_known_roots(text: str, roots: Iterable[object]) -> str:
    # Known directories may contain spaces; everything generated below them
    # (session ids, file ids, work dirs) never does.
    for root in sorted({str(r).rstrip("\\/") for r in roots} - {""}, key=len, reverse=True):
        pattern = re.escape(root) + r"(?:[\\/][^\s'\"\\/]+)*[\\/]?"
        text = re.sub(pattern, _basename, text)
    return text


def sanitize_message(text: str, limit: int = MAX_MESSAGE_CHARS, *, roots: Iterable[object] = ()) -> str:
    """Reduce a failure description to something safe to show a client.

    Paths under ``roots`` and other absolute paths collapse to their base
    name, only the first non-empty line survives, and the result is truncated.
    """
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    first = lines[0] if lines else ""

    cleaned = _ABS_PATH_RE.sub(_basename, _strip_known_roots(first, roots))
    if len(cleaned) > limit:
        cleaned = cleaned[: limit - 3].rstrip() + "..."
    return cleaned
