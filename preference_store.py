"""Per-resource persisted UI preferences (visible columns, page size, sort, filters)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict

from entkit.canonical_json import canonical_dumps


logger = logging.getLogger("entkit.preferences")

Validator = Callable[[Any], bool]


def preference_key(resource_key: str, setting_name: str, version: int = 1) -> str:
    return f"{resource_key}.{setting_name}.v{version}"


def dedupe(value: Any) -> Any:
    """Lists are persisted with set semantics; first occurrence wins."""
    if not isinstance(value, (list, tuple)):
        return value
    seen: set[str] = set()
    out = []
    for item in value:
        marker = canonical_dumps(item)
        if marker in seen:
            continue
        seen.add(marker)
        out.append(item)
    return out


class PreferenceStore:
    """Key/value preference storage.

    Reads never fail: missing, corrupt or rejected values give back the
    caller's default. Writes are fire-and-forget and only log on error.
    Subclasses implement the raw string accessors.
    """

    def _get_raw(self, key: str) -> str | None:
        raise NotImplementedError

    def _set_raw(self, key: str, raw: str) -> None:
        raise NotImplementedError

    def _delete_raw(self, key: str) -> None:
        raise NotImplementedError

    def read(
        self,
        resource_key: str,
        setting_name: str,
        default: Any,
        *,
        version: int = 1,
        validate: Validator | None = None,
    ) -> Any:
        key = preference_key(resource_key, setting_name, version)
        try:
            raw = self._get_raw(key)
        except Exception as exc:
            logger.warning("pref_read_failed key=%s error=%s", key, exc)
            return default
        if raw is None or raw == "":
            return default
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.info("pref_corrupt key=%s", key)
            return default
        if validate is not None:
            try:
                if not validate(value):
                    return default
            except Exception:
                return default
        return value

    def write(self, resource_key: str, setting_name: str, value: Any, *, version: int = 1) -> None:
        key = preference_key(resource_key, setting_name, version)
        try:
            self._set_raw(key, canonical_dumps(dedupe(value)))
        except Exception as exc:
            logger.warning("pref_write_failed key=%s error=%s", key, exc)

    def remove(self, resource_key: str, setting_name: str, *, version: int = 1) -> None:
        key = preference_key(resource_key, setting_name, version)
        try:
            self._delete_raw(key)
        except Exception as exc:
            logger.warning("pref_remove_failed key=%s error=%s", key, exc)


class MemoryPreferenceStore(PreferenceStore):
    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    def _get_raw(self, key: str) -> str | None:
        return self._values.get(key)

    def _set_raw(self, key: str, raw: str) -> None:
        self._values[key] = raw

    def _delete_raw(self, key: str) -> None:
        self._values.pop(key, None)

    def raw(self, key: str) -> str | None:
        return self._values.get(key)

    def keys(self) -> list[str]:
        return sorted(self._values.keys())


class JsonFilePreferenceStore(PreferenceStore):
    """All preferences in one JSON object on disk, rewritten atomically."""

    def __init__(self, path: str | os.PathLike) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("pref_file_corrupt path=%s", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".prefs-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, sort_keys=True)
            os.replace(tmp, self._path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _get_raw(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def _set_raw(self, key: str, raw: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = raw
            self._save(data)

    def _delete_raw(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)
