"""Input ordering for execute requests.

Merge-like tools concatenate their inputs, so the order the executor sees
must be the order the client declared, never upload arrival order.
"""
from __future__ import annotations

import re
from typing import Mapping, Sequence, Union

from .errors import ValidationError


FileSelection = Union[Sequence[str], Mapping[str, str]]

_FIELD_INDEX_RE = re.compile(r"^[A-Za-z_]*[-_\[]?(\d+)\]?$")


def field_index(field_name: str) -> int:
    """Embedded index of a multipart-style field name (``file-3`` -> 3)."""
    match = _FIELD_INDEX_RE.match(field_name.strip())
    if not match:
        raise ValidationError(f"File field '{field_name}' has no position index.")
    return int(match.group(1))


def order_file_ids(files: FileSelection) -> list[str]:
    """Return file ids in client-declared order.

    A list is taken as-is. A mapping of field names to file ids is re-sorted
    numerically by the index embedded in each field name, so ``file-10``
    follows ``file-9`` whatever order the fields arrived in.
    """
    if isinstance(files, Mapping):
        indexed: dict[int, str] = {}
        for name, file_id in files.items():
            position = field_index(str(name))
            if position in indexed:
                raise ValidationError(f"Duplicate file position {position}.")
            indexed[position] = file_id
        ordered = [indexed[position] for position in sorted(indexed)]
    elif isinstance(files, (str, bytes)):
        raise ValidationError("'files' must be a list of file ids.")
    else:
        ordered = list(files)

    if not ordered:
        raise ValidationError("At least one file is required.")
    for file_id in ordered:
        if not isinstance(file_id, str) or not file_id:
            raise ValidationError("File ids must be non-empty strings.")
    if len(set(ordered)) != len(ordered):
        raise ValidationError("The same file was listed more than once.")
    return ordered
