"""Resource definition validation (JSON-declared resources)."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Tuple

from app.resources_normalize import normalize_resource
from resource_config import FallbackPolicy, FieldType, TabKind, is_forced_readonly


Issue = Dict[str, Any]


ALLOWED_TOP_KEYS = {
    "resource_key",
    "id_field",
    "title_singular",
    "title_plural",
    "route_base",
    "operations",
    "fields",
    "tabs",
    "default_visible",
    "segments",
    "filters",
    "fallbacks",
    "status_filter",
    "status_field",
    "status_options",
    "page_sizes",
    "default_page_size",
    "pref_version",
}
ALLOWED_OPERATIONS = {"list", "get", "update", "remove", "update_status"}
ALLOWED_OPERATION_KEYS = {"path", "method"}
ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
ALLOWED_FIELD_KEYS = {"name", "label", "type", "editable", "options", "sortable"}
ALLOWED_TAB_KEYS = {
    "kind",
    "enabled",
    "label",
    "list_path",
    "create_path",
    "update_path",
    "delete_path",
    "comment_list_path",
    "comment_create_path",
    "columns",
    "fallback",
    "placeholder_rows",
    "ranges",
}
ALLOWED_FALLBACK_OPERATIONS = {"list", "get"}
RESOURCE_KEY_RE = re.compile(r"^[a-z][a-z0-9_]*$")
PATH_PLACEHOLDER_RE = re.compile(r"\{([^{}]*)\}")
ALLOWED_PLACEHOLDERS = {"id", "sub_id"}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _get(obj: dict, key: str, default=None):
    return obj.get(key, default) if isinstance(obj, dict) else default


def _reject_unknown_keys(errors: list[Issue], obj: dict, allowed: set[str], path: str) -> None:
    for key in obj.keys():
        if key not in allowed:
            errors.append(_issue("RESOURCE_UNKNOWN_KEY", f"unknown key {key!r}", f"{path}.{key}"))


def _validate_path_template(value: Any, path: str, errors: list[Issue]) -> None:
    if not isinstance(value, str) or not value.startswith("/"):
        errors.append(_issue("RESOURCE_PATH_INVALID", "path must be a string starting with '/'", path))
        return
    for name in PATH_PLACEHOLDER_RE.findall(value):
        if name not in ALLOWED_PLACEHOLDERS:
            errors.append(
                _issue(
                    "RESOURCE_PATH_PLACEHOLDER_INVALID",
                    f"unsupported placeholder {{{name}}}",
                    path,
                    {"allowed": sorted(ALLOWED_PLACEHOLDERS)},
                )
            )


def _validate_fields(fields: Any, path: str, id_field: str, errors: list[Issue], warnings: list[Issue]) -> set[str]:
    names: set[str] = set()
    if not isinstance(fields, list):
        errors.append(_issue("RESOURCE_FIELDS_INVALID", "fields must be a list", path))
        return names
    allowed_types = {t.value for t in FieldType}
    for i, field in enumerate(fields):
        fpath = f"{path}[{i}]"
        if not isinstance(field, dict):
            errors.append(_issue("RESOURCE_FIELD_INVALID", "field must be an object", fpath))
            continue
        _reject_unknown_keys(errors, field, ALLOWED_FIELD_KEYS, fpath)
        name = _get(field, "name")
        if not isinstance(name, str) or not name.strip() or any(not seg for seg in name.split(".")):
            errors.append(_issue("RESOURCE_FIELD_NAME_INVALID", "field.name must be a dotted path", f"{fpath}.name"))
            continue
        if name in names:
            errors.append(_issue("RESOURCE_FIELD_DUPLICATE", f"duplicate field {name!r}", f"{fpath}.name"))
        names.add(name)
        ftype = _get(field, "type", "text")
        if ftype not in allowed_types:
            errors.append(
                _issue("RESOURCE_FIELD_TYPE_INVALID", f"unsupported field type {ftype!r}", f"{fpath}.type", {"allowed": sorted(allowed_types)})
            )
        options = _get(field, "options")
        if ftype == "select" and not options:
            warnings.append(_issue("RESOURCE_SELECT_NO_OPTIONS", "select field has no options; any value is accepted", f"{fpath}.options"))
        if options is not None and not isinstance(options, list):
            errors.append(_issue("RESOURCE_FIELD_OPTIONS_INVALID", "options must be a list", f"{fpath}.options"))
        if _get(field, "editable") and is_forced_readonly(name, id_field):
            warnings.append(_issue("RESOURCE_FIELD_READONLY", f"{name!r} is an identifier or timestamp and is never editable", f"{fpath}.editable"))
    return names


def _validate_tabs(tabs: Any, errors: list[Issue], warnings: list[Issue], id_field: str) -> None:
    if not isinstance(tabs, list):
        errors.append(_issue("RESOURCE_TABS_INVALID", "tabs must be a list", "tabs"))
        return
    kinds = {k.value for k in TabKind}
    seen: set[str] = set()
    for i, tab in enumerate(tabs):
        tpath = f"tabs[{i}]"
        if not isinstance(tab, dict):
            errors.append(_issue("RESOURCE_TAB_INVALID", "tab must be an object", tpath))
            continue
        _reject_unknown_keys(errors, tab, ALLOWED_TAB_KEYS, tpath)
        kind = _get(tab, "kind")
        if kind not in kinds:
            errors.append(_issue("RESOURCE_TAB_KIND_INVALID", f"unsupported tab kind {kind!r}", f"{tpath}.kind", {"allowed": sorted(kinds)}))
            continue
        if kind in seen:
            errors.append(_issue("RESOURCE_TAB_DUPLICATE", f"duplicate tab {kind!r}", f"{tpath}.kind"))
        seen.add(kind)
        for key in ("list_path", "create_path", "update_path", "delete_path", "comment_list_path", "comment_create_path"):
            value = _get(tab, key)
            if value is None:
                continue
            if isinstance(value, dict):
                value = value.get("path")
            _validate_path_template(value, f"{tpath}.{key}", errors)
        if _get(tab, "enabled", True) and not _get(tab, "list_path"):
            warnings.append(_issue("RESOURCE_TAB_LOCAL_ONLY", "tab has no list_path and only holds local rows", tpath))
        fallback = _get(tab, "fallback")
        if fallback is not None and fallback not in {p.value for p in FallbackPolicy}:
            errors.append(_issue("RESOURCE_FALLBACK_INVALID", f"unsupported fallback {fallback!r}", f"{tpath}.fallback"))
        if "columns" in tab:
            _validate_fields(_get(tab, "columns"), f"{tpath}.columns", id_field, errors, warnings)


def validate_resource(definition: dict) -> tuple[list[Issue], list[Issue]]:
    errors: list[Issue] = []
    warnings: list[Issue] = []

    if not isinstance(definition, dict):
        errors.append(_issue("RESOURCE_INVALID", "resource definition must be an object", None))
        return errors, warnings

    _reject_unknown_keys(errors, definition, ALLOWED_TOP_KEYS, "$")
    key = _get(definition, "resource_key")
    if not isinstance(key, str) or not RESOURCE_KEY_RE.match(key):
        errors.append(_issue("RESOURCE_KEY_INVALID", "resource_key must be lower snake case", "resource_key"))
    id_field = _get(definition, "id_field") or "id"
    if not isinstance(id_field, str):
        errors.append(_issue("RESOURCE_ID_FIELD_INVALID", "id_field must be a string", "id_field"))
        id_field = "id"

    operations = _get(definition, "operations", {})
    if not isinstance(operations, dict):
        errors.append(_issue("RESOURCE_OPERATIONS_INVALID", "operations must be an object", "operations"))
        operations = {}
    for name, op in operations.items():
        opath = f"operations.{name}"
        if name not in ALLOWED_OPERATIONS:
            errors.append(_issue("RESOURCE_OPERATION_UNKNOWN", f"unknown operation {name!r}", opath, {"allowed": sorted(ALLOWED_OPERATIONS)}))
            continue
        if not isinstance(op, dict):
            errors.append(_issue("RESOURCE_OPERATION_INVALID", "operation must be a path or {path, method}", opath))
            continue
        _reject_unknown_keys(errors, op, ALLOWED_OPERATION_KEYS, opath)
        _validate_path_template(op.get("path"), f"{opath}.path", errors)
        method = op.get("method")
        if method is not None and (not isinstance(method, str) or method.upper() not in ALLOWED_METHODS):
            errors.append(_issue("RESOURCE_METHOD_INVALID", f"unsupported method {method!r}", f"{opath}.method"))
    if "list" not in operations:
        warnings.append(_issue("RESOURCE_NO_LIST", "resource has no list operation; list views stay empty", "operations"))

    names = _validate_fields(_get(definition, "fields", []), "fields", id_field, errors, warnings)
    _validate_tabs(_get(definition, "tabs", []), errors, warnings, id_field)

    visible = _get(definition, "default_visible")
    if visible is not None:
        if not isinstance(visible, list):
            errors.append(_issue("RESOURCE_DEFAULT_VISIBLE_INVALID", "default_visible must be a list", "default_visible"))
        else:
            for i, col in enumerate(visible):
                if col not in names:
                    errors.append(_issue("RESOURCE_DEFAULT_VISIBLE_UNKNOWN", f"unknown column {col!r}", f"default_visible[{i}]"))

    fallbacks = _get(definition, "fallbacks")
    if fallbacks is not None:
        if not isinstance(fallbacks, dict):
            errors.append(_issue("RESOURCE_FALLBACKS_INVALID", "fallbacks must be an object", "fallbacks"))
        else:
            for op, policy in fallbacks.items():
                if op not in ALLOWED_FALLBACK_OPERATIONS:
                    errors.append(_issue("RESOURCE_FALLBACK_OPERATION_INVALID", f"no fallback for {op!r}", f"fallbacks.{op}"))
                elif policy not in {p.value for p in FallbackPolicy}:
                    errors.append(_issue("RESOURCE_FALLBACK_INVALID", f"unsupported fallback {policy!r}", f"fallbacks.{op}"))

    filters = _get(definition, "filters")
    if filters is not None:
        if not isinstance(filters, list):
            errors.append(_issue("RESOURCE_FILTERS_INVALID", "filters must be a list", "filters"))
        else:
            for i, spec in enumerate(filters):
                if not isinstance(spec, dict) or not isinstance(spec.get("name"), str) or not isinstance(spec.get("paths"), list) or not spec.get("paths"):
                    errors.append(_issue("RESOURCE_FILTER_INVALID", "filter needs a name and a non-empty paths list", f"filters[{i}]"))

    segments = _get(definition, "segments")
    if segments is not None:
        if not isinstance(segments, list):
            errors.append(_issue("RESOURCE_SEGMENTS_INVALID", "segments must be a list", "segments"))
        else:
            for i, seg in enumerate(segments):
                if not isinstance(seg, dict) or not isinstance(seg.get("key"), str):
                    errors.append(_issue("RESOURCE_SEGMENT_INVALID", "segment needs a key", f"segments[{i}]"))
                elif "match" in seg and not isinstance(seg.get("match"), dict):
                    errors.append(_issue("RESOURCE_SEGMENT_INVALID", "segment.match must be an object", f"segments[{i}].match"))

    page_sizes = _get(definition, "page_sizes")
    if page_sizes is not None:
        if not isinstance(page_sizes, list) or not page_sizes or not all(isinstance(n, int) and n > 0 for n in page_sizes):
            errors.append(_issue("RESOURCE_PAGE_SIZES_INVALID", "page_sizes must be positive integers", "page_sizes"))
            page_sizes = None
    default_page_size = _get(definition, "default_page_size")
    if default_page_size is not None and default_page_size not in (page_sizes or [10, 25, 50, 100]):
        errors.append(_issue("RESOURCE_PAGE_SIZE_INVALID", "default_page_size must be one of page_sizes", "default_page_size"))

    pref_version = _get(definition, "pref_version")
    if pref_version is not None and (not isinstance(pref_version, int) or pref_version < 1):
        errors.append(_issue("RESOURCE_PREF_VERSION_INVALID", "pref_version must be a positive integer", "pref_version"))

    return errors, warnings


def validate_resource_raw(raw: dict) -> tuple[dict, list[Issue], list[Issue]]:
    normalized = normalize_resource(raw)
    errors, warnings = validate_resource(normalized)
    return normalized, errors, warnings
