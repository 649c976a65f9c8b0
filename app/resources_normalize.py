"""Resource definition normalization for legacy JSON shapes."""

from __future__ import annotations

from typing import Any


_TYPE_ALIASES = {
    "string": "text",
    "enum": "select",
    "datetime": "date",
    "int": "number",
    "float": "number",
}

_OPERATION_ALIASES = {
    "delete": "remove",
    "status": "update_status",
    "updateStatus": "update_status",
}


def _title_case(value: str) -> str:
    parts = [p for p in value.replace("-", "_").replace(".", "_").split("_") if p]
    return " ".join(p[:1].upper() + p[1:] for p in parts) if parts else value


def _normalize_options(options: Any) -> list:
    if not isinstance(options, list):
        return []
    if options and all(isinstance(opt, str) for opt in options):
        return [{"value": opt, "label": _title_case(opt)} for opt in options]
    return list(options)


def _normalize_field(item: dict) -> dict:
    item = dict(item)
    if "name" not in item:
        item["name"] = item.pop("id", None) or item.pop("key", None)
    ftype = item.get("type") or "text"
    item["type"] = _TYPE_ALIASES.get(ftype, ftype)
    options = item.get("options") or item.get("values")
    item.pop("values", None)
    if options is not None:
        item["options"] = _normalize_options(options)
    return item


def _normalize_fields(fields: Any) -> list[dict]:
    if isinstance(fields, list):
        normalized = []
        for f in fields:
            if isinstance(f, str):
                normalized.append({"name": f, "type": "text"})
            elif isinstance(f, dict):
                normalized.append(_normalize_field(f))
        return normalized
    if isinstance(fields, dict):
        items = []
        for fid, fdef in fields.items():
            if isinstance(fdef, dict):
                item = dict(fdef)
                item.setdefault("name", fid)
                items.append(_normalize_field(item))
            elif isinstance(fdef, str):
                items.append(_normalize_field({"name": fid, "label": fdef}))
        return items
    return []


def _normalize_operations(raw: Any) -> dict:
    if not isinstance(raw, dict):
        return {}
    ops = {}
    for name, value in raw.items():
        name = _OPERATION_ALIASES.get(name, name)
        if value is None:
            continue
        if isinstance(value, str):
            ops[name] = {"path": value}
        elif isinstance(value, dict):
            ops[name] = dict(value)
        else:
            ops[name] = value
    return ops


def _normalize_tab(item: dict) -> dict:
    item = dict(item)
    if "kind" not in item:
        item["kind"] = item.pop("id", None) or item.pop("type", None)
    for camel, snake in (
        ("listPath", "list_path"),
        ("createPath", "create_path"),
        ("updatePath", "update_path"),
        ("deletePath", "delete_path"),
        ("commentListPath", "comment_list_path"),
        ("commentCreatePath", "comment_create_path"),
    ):
        if camel in item and snake not in item:
            item[snake] = item.pop(camel)
    if "columns" in item:
        item["columns"] = _normalize_fields(item.get("columns"))
    item.setdefault("enabled", True)
    return item


def _normalize_tabs(tabs: Any) -> list[dict]:
    if isinstance(tabs, list):
        normalized = []
        for tab in tabs:
            if isinstance(tab, str):
                normalized.append({"kind": tab, "enabled": True})
            elif isinstance(tab, dict):
                normalized.append(_normalize_tab(tab))
        return normalized
    if isinstance(tabs, dict):
        normalized = []
        for kind, tdef in tabs.items():
            if isinstance(tdef, bool):
                normalized.append({"kind": kind, "enabled": tdef})
            elif isinstance(tdef, dict):
                item = dict(tdef)
                item.setdefault("kind", kind)
                normalized.append(_normalize_tab(item))
        return normalized
    return []


def normalize_resource(raw: dict) -> dict:
    if not isinstance(raw, dict):
        return {}

    normalized: dict = {}
    key = raw.get("resource_key") or raw.get("resourceKey") or raw.get("key") or raw.get("id")
    normalized["resource_key"] = key
    normalized["id_field"] = raw.get("id_field") or raw.get("idField") or "id"
    normalized["title_singular"] = raw.get("title_singular") or raw.get("singular")
    normalized["title_plural"] = raw.get("title_plural") or raw.get("plural") or (_title_case(key) if isinstance(key, str) else None)
    normalized["route_base"] = raw.get("route_base") or raw.get("routeBase") or (f"/{key}" if isinstance(key, str) else "")
    normalized["operations"] = _normalize_operations(raw.get("operations") or raw.get("endpoints"))
    normalized["fields"] = _normalize_fields(raw.get("fields"))
    normalized["tabs"] = _normalize_tabs(raw.get("tabs"))

    visible = raw.get("default_visible") or raw.get("defaultVisible") or raw.get("columns")
    if isinstance(visible, list):
        normalized["default_visible"] = [
            (c.get("name") or c.get("field_id")) if isinstance(c, dict) else c for c in visible
        ]

    for key_name in (
        "segments",
        "filters",
        "fallbacks",
        "status_filter",
        "status_field",
        "status_options",
        "page_sizes",
        "default_page_size",
        "pref_version",
    ):
        if key_name in raw:
            normalized[key_name] = raw[key_name]
    return normalized
