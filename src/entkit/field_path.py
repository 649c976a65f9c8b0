"""Dotted field paths over open-ended entity records."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, List, Sequence, Union

FieldPath = Union[str, Sequence[str]]

_MISSING = object()


@dataclass
class FieldPathError(Exception):
    message: str
    path: str
    segment: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        if self.segment is None:
            return f"{self.message} (path={self.path!r})"
        return f"{self.message} (segment={self.segment!r}, path={self.path!r})"


def split_path(path: FieldPath) -> List[str]:
    """Return the segments of ``path``; ``"user.name"`` and ``["user", "name"]`` are equivalent."""
    if isinstance(path, str):
        segments = path.split(".") if path else []
    elif isinstance(path, (list, tuple)):
        segments = [str(seg) for seg in path]
    else:
        raise FieldPathError("Path must be a string or a sequence of strings", repr(path))
    if any(seg == "" for seg in segments):
        raise FieldPathError("Empty path segment", ".".join(segments))
    return segments


def path_key(path: FieldPath) -> str:
    return ".".join(split_path(path))


def _step(current: Any, segment: str) -> Any:
    if isinstance(current, dict):
        return current.get(segment, _MISSING)
    if isinstance(current, list) and segment.isdigit():
        idx = int(segment)
        if idx < len(current):
            return current[idx]
    return _MISSING


def read_path(obj: Any, path: FieldPath, default: Any = None) -> Any:
    """Read a value by dotted path; any missing hop yields ``default``."""
    if obj is None:
        return default
    current = obj
    for segment in split_path(path):
        current = _step(current, segment)
        if current is _MISSING or current is None:
            return default
    return current


def write_path(obj: dict, path: FieldPath, value: Any) -> dict:
    """Return a copy of ``obj`` with ``value`` stored at ``path``.

    Intermediate objects are created as needed. Traversing into a scalar raises
    ``FieldPathError``.
    """
    segments = split_path(path)
    if not segments:
        raise FieldPathError("Cannot write to an empty path", "")
    result = copy.deepcopy(obj) if isinstance(obj, dict) else {}
    current: Any = result
    for idx, segment in enumerate(segments[:-1]):
        nxt = _step(current, segment)
        if nxt is _MISSING or nxt is None:
            nxt = {}
            if isinstance(current, dict):
                current[segment] = nxt
            else:
                raise FieldPathError("Cannot create list element", ".".join(segments), segment)
        elif not isinstance(nxt, (dict, list)):
            raise FieldPathError("Cannot traverse into non-container", ".".join(segments[: idx + 1]), segment)
        current = nxt
    last = segments[-1]
    if isinstance(current, list):
        if not last.isdigit() or int(last) >= len(current):
            raise FieldPathError("List index out of range", ".".join(segments), last)
        current[int(last)] = value
    else:
        current[last] = value
    return result


def nested_payload(path: FieldPath, value: Any) -> dict:
    """Build the partial update body for one field: ``user.name`` -> ``{"user": {"name": value}}``."""
    return write_path({}, path, value)
