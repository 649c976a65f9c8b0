"""Deterministic JSON for persisted preferences and cell text."""

from __future__ import annotations

import json
import math
from datetime import date, datetime
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a preference value cannot be stored as canonical JSON."""


_SCALARS = (str, int, bool)


def _check(obj: Any, path: str = "$") -> None:
    if obj is None or isinstance(obj, _SCALARS):
        return
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"{path}: {obj!r} is not a finite number")
        return
    if isinstance(obj, (list, tuple)):
        for idx, item in enumerate(obj):
            _check(item, f"{path}[{idx}]")
        return
    if isinstance(obj, dict):
        bad = [k for k in obj if not isinstance(k, str)]
        if bad:
            raise CanonicalJsonTypeError(f"{path}: object keys must be strings, got {type(bad[0]).__name__}")
        for key, value in obj.items():
            _check(value, f"{path}.{key}")
        return
    raise CanonicalJsonTypeError(f"{path}: {type(obj).__name__} is not JSON-serializable")


def canonical_dumps(obj: Any) -> str:
    """Serialize a preference value so equal values always produce equal text.

    Object keys are sorted at every depth, tuples are written as lists, list
    order is kept, non-ASCII is written as-is and there is no whitespace.
    """
    _check(obj)
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def _loose_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def loose_dumps(obj: Any) -> str:
    """Serialize any cell value for display, search and export.

    Never raises: unknown types fall back to ``str``. Key order is kept as
    received so the text matches what the server sent.
    """
    try:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=_loose_default)
    except (TypeError, ValueError):
        return str(obj)
