from __future__ import annotations

import re
import secrets
import time
import uuid
from pathlib import Path


_SESSION_ID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$")

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")
MAX_NAME_CHARS = 100

# <13-digit epoch ms>-<8 hex>-<sanitized original name>
_FILE_ID_PREFIX_RE = re.compile(r"^\d{13}-[0-9a-f]{8}-")
# <stem>_<label>_<8 hex>.<ext>, appended to generated outputs
_OUTPUT_SUFFIX_RE = re.compile(r"_[a-z0-9-]+_[0-9a-f]{8}(\.\w+)$")


def normalize_session_id(session_id: str) -> str:
    """Validate and normalize a session id.

    Session ids double as directory names, so only canonical UUID strings are
    accepted.
    """
    if not isinstance(session_id, str):
        raise ValueError("Invalid session id")
    session_id = session_id.strip()
    if not _SESSION_ID_RE.match(session_id):
        raise ValueError("Invalid session id")
    return str(uuid.UUID(session_id))


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in (".", ".."):
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name or "\x00" in name:
        return False
    return True


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir."""
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved


def sanitize_filename(name: str | None) -> str:
    """Map a client-supplied name onto [A-Za-z0-9._-], at most 100 chars."""
    base = Path(str(name or "").replace("\\", "/")).name
    cleaned = _UNSAFE_CHARS_RE.sub("_", base)[:MAX_NAME_CHARS]
    cleaned = cleaned.lstrip(".")
    return cleaned or "upload"


def new_file_id(original_name: str | None) -> str:
    millis = int(time.time() * 1000)
    return f"{millis:013d}-{secrets.token_hex(4)}-{sanitize_filename(original_name)}"


def output_file_name(source_file_id: str, label: str, suffix: str) -> str:
    """Name for a generated output derived from its first input."""
    stem = Path(original_name(source_file_id)).stem or "document"
    return f"{stem}_{label}_{secrets.token_hex(4)}{suffix}"


def original_name(file_id: str) -> str:
    """Recover the user-facing name from a file id or an output file name."""
    if not file_id:
        return ""
    if _FILE_ID_PREFIX_RE.match(file_id):
        return _FILE_ID_PREFIX_RE.sub("", file_id)
    return _OUTPUT_SUFFIX_RE.sub(r"\1", file_id)
