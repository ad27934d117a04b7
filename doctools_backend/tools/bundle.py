from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Sequence

from ..security import is_safe_basename


def bundle_outputs(files: Sequence[Path], destination: Path) -> Path:
    """Pack multi-file tool output (split pages, rendered images) into one ZIP.

    Entries are stored flat under their base names, in the order given.
    """
    if not files:
        raise ValueError("Nothing to bundle")
    seen: set[str] = set()
    with zipfile.ZipFile(destination, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in files:
            arcname = path.name
            if not is_safe_basename(arcname) or arcname in seen:
                raise ValueError("Invalid bundle entry")
            seen.add(arcname)
            zf.write(path, arcname=arcname)
    return destination


def _page_number(path: Path) -> int:
    digits = "".join(ch for ch in path.stem if ch.isdigit())
    return int(digits) if digits else 0


def collect_pages(directory: Path, pattern: str) -> list[Path]:
    """Files matching ``pattern`` sorted by their numeric page index."""
    return sorted((p for p in directory.glob(pattern) if p.is_file()), key=lambda p: (_page_number(p), p.name))
