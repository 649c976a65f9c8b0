"""Entity console kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, loose_dumps
from .field_path import FieldPathError, nested_payload, path_key, read_path, split_path, write_path

__all__ = [
    "CanonicalJsonTypeError",
    "FieldPathError",
    "canonical_dumps",
    "loose_dumps",
    "nested_payload",
    "path_key",
    "read_path",
    "split_path",
    "write_path",
]
