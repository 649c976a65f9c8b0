"""Declarative per-resource configuration consumed by the list and detail engines."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, NamedTuple, Tuple, Union
from urllib.parse import quote

from entkit.field_path import path_key, split_path


PathBuilder = Union[str, Callable[..., str]]

# Identifiers and timestamps are never inline-editable.
NON_EDITABLE_PATTERN = re.compile(
    r"^(id|uuid|[a-z0-9]+_id|[a-z][a-zA-Z0-9]*Id|created_at|updated_at|deleted_at|createdAt|updatedAt|deletedAt|timestamp)$"
)

STATUS_ACTIONS = {
    "activate": "active",
    "suspend": "suspended",
    "block": "disabled",
}

DEFAULT_STATUS_OPTIONS = ("active", "suspended", "disabled")
DEFAULT_PAGE_SIZES = (10, 25, 50, 100)


class FallbackPolicy(str, Enum):
    RETURN_EMPTY = "return_empty"
    RETURN_PLACEHOLDER = "return_placeholder"
    RETHROW = "rethrow"


class FieldType(str, Enum):
    TEXT = "text"
    SELECT = "select"
    DATE = "date"
    NUMBER = "number"


class TabKind(str, Enum):
    RELATED = "related"
    TASKS = "tasks"
    DOCUMENTS = "documents"
    COMMUNICATION = "communication"
    BILLING = "billing"
    AUDIT = "audit"
    ACTIVITY = "activity"


INFORMATION_TAB = "information"


@dataclass
class ResourceConfigError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


@dataclass(frozen=True)
class Endpoint:
    """One remote operation: an HTTP method plus a path template or builder.

    Templates use ``{id}`` for the entity id and ``{sub_id}`` for a sub-resource
    id (task, document, comment). Callables receive the ids positionally.
    """

    path: PathBuilder
    method: str = "GET"

    def build(self, *ids: Any) -> str:
        if callable(self.path):
            return self.path(*ids)
        names = {}
        if len(ids) > 0:
            names["id"] = quote(str(ids[0]), safe="")
        if len(ids) > 1:
            names["sub_id"] = quote(str(ids[1]), safe="")
        try:
            return self.path.format_map(names)
        except KeyError as exc:
            raise ResourceConfigError(
                "ENDPOINT_TEMPLATE_INVALID",
                f"missing value for {exc.args[0]!r}",
                str(self.path),
            ) from exc


def endpoint(value: Any, method: str) -> Endpoint | None:
    """Coerce a path string, builder or Endpoint to an Endpoint with a default method."""
    if value is None:
        return None
    if isinstance(value, Endpoint):
        return value
    if isinstance(value, str) or callable(value):
        return Endpoint(value, method)
    raise ResourceConfigError("ENDPOINT_INVALID", "endpoint must be a path, builder or Endpoint", repr(value))


@dataclass(frozen=True)
class Operations:
    list: Endpoint | None = None
    get: Endpoint | None = None
    update: Endpoint | None = None
    remove: Endpoint | None = None
    update_status: Endpoint | None = None

    @classmethod
    def from_paths(
        cls,
        list: PathBuilder | None = None,
        get: PathBuilder | None = None,
        update: PathBuilder | None = None,
        remove: PathBuilder | None = None,
        update_status: PathBuilder | None = None,
    ) -> "Operations":
        return cls(
            list=endpoint(list, "GET"),
            get=endpoint(get, "GET"),
            update=endpoint(update, "PATCH"),
            remove=endpoint(remove, "DELETE"),
            update_status=endpoint(update_status, "PATCH"),
        )


@dataclass(frozen=True)
class Capabilities:
    can_list: bool = False
    can_get: bool = False
    can_update: bool = False
    can_remove: bool = False
    can_update_status: bool = False

    @classmethod
    def from_operations(cls, operations: Operations) -> "Capabilities":
        return cls(
            can_list=operations.list is not None,
            can_get=operations.get is not None,
            can_update=operations.update is not None,
            can_remove=operations.remove is not None,
            can_update_status=operations.update_status is not None,
        )

    def as_dict(self) -> dict:
        return {
            "list": self.can_list,
            "get": self.can_get,
            "update": self.can_update,
            "remove": self.can_remove,
            "update_status": self.can_update_status,
        }


class Option(NamedTuple):
    value: Any
    label: str


def _coerce_options(options: Any) -> Tuple[Option, ...]:
    items = []
    for opt in options or ():
        if isinstance(opt, Option):
            items.append(opt)
        elif isinstance(opt, dict) and "value" in opt:
            items.append(Option(opt["value"], str(opt.get("label", opt["value"]))))
        elif isinstance(opt, (tuple, list)) and len(opt) == 2:
            items.append(Option(opt[0], str(opt[1])))
        else:
            items.append(Option(opt, str(opt)))
    return tuple(items)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str | None = None
    type: FieldType = FieldType.TEXT
    editable: bool = False
    options: Tuple[Option, ...] = ()
    sortable: bool = True
    csv: Callable[[dict], Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", path_key(self.name))
        object.__setattr__(self, "type", FieldType(self.type))
        object.__setattr__(self, "options", _coerce_options(self.options))

    @property
    def key(self) -> str:
        return self.name

    @property
    def title(self) -> str:
        return self.label or self.name

    def option_values(self) -> list:
        return [opt.value for opt in self.options]


@dataclass(frozen=True)
class TabConfig:
    kind: TabKind
    enabled: bool = True
    label: str | None = None
    list_path: Endpoint | None = None
    create_path: Endpoint | None = None
    update_path: Endpoint | None = None
    delete_path: Endpoint | None = None
    comment_list_path: Endpoint | None = None
    comment_create_path: Endpoint | None = None
    columns: Tuple[FieldSpec, ...] = ()
    fallback: FallbackPolicy = FallbackPolicy.RETURN_EMPTY
    placeholder_rows: Tuple[dict, ...] = ()
    ranges: Tuple[str, ...] = ("14d", "30d", "90d")

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", TabKind(self.kind))
        object.__setattr__(self, "fallback", FallbackPolicy(self.fallback))
        object.__setattr__(self, "list_path", endpoint(self.list_path, "GET"))
        object.__setattr__(self, "create_path", endpoint(self.create_path, "POST"))
        object.__setattr__(self, "update_path", endpoint(self.update_path, "PATCH"))
        object.__setattr__(self, "delete_path", endpoint(self.delete_path, "DELETE"))
        object.__setattr__(self, "comment_list_path", endpoint(self.comment_list_path, "GET"))
        object.__setattr__(self, "comment_create_path", endpoint(self.comment_create_path, "POST"))
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "placeholder_rows", tuple(self.placeholder_rows))

    @property
    def title(self) -> str:
        return self.label or self.kind.value.title()


@dataclass(frozen=True)
class SegmentSpec:
    key: str
    label: str
    match: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FilterSpec:
    name: str
    paths: Tuple[str, ...]
    allowed: Tuple[str, ...] = ()
    query_param: str | None = None

    @property
    def setting_name(self) -> str:
        return f"{self.name}Filter"


DEFAULT_SEGMENTS = (
    SegmentSpec("all", "All"),
    SegmentSpec("active", "Active", {"status": "active"}),
)

DEFAULT_FALLBACKS = {
    "list": FallbackPolicy.RETURN_EMPTY,
    "get": FallbackPolicy.RETURN_PLACEHOLDER,
}


def is_forced_readonly(name: str, id_field: str) -> bool:
    if name == id_field:
        return True
    last = split_path(name)[-1]
    return bool(NON_EDITABLE_PATTERN.match(last))


@dataclass(frozen=True)
class ResourceConfig:
    """Static description of one resource type.

    Instances are immutable; the engines read capabilities once at construction
    instead of probing for optional operations at each call site.
    """

    resource_key: str
    id_field: str = "id"
    operations: Operations = field(default_factory=Operations)
    fields: Tuple[FieldSpec, ...] = ()
    tabs: Tuple[TabConfig, ...] = ()
    title_singular: str | None = None
    title_plural: str | None = None
    route_base: str = ""
    default_visible: Tuple[str, ...] = ()
    segments: Tuple[SegmentSpec, ...] = DEFAULT_SEGMENTS
    status_filter: bool = True
    status_field: str = "status"
    status_options: Tuple[str, ...] = DEFAULT_STATUS_OPTIONS
    filters: Tuple[FilterSpec, ...] = ()
    fallbacks: Mapping[str, FallbackPolicy] = field(default_factory=dict)
    parse_list: Callable[[Any], Any] | None = None
    parse_entity: Callable[[Any], Any] | None = None
    pref_version: int = 1
    page_sizes: Tuple[int, ...] = DEFAULT_PAGE_SIZES
    default_page_size: int = 100
    capabilities: Capabilities = field(init=False)

    def __post_init__(self) -> None:
        if not isinstance(self.resource_key, str) or not self.resource_key.strip():
            raise ResourceConfigError("RESOURCE_KEY_REQUIRED", "resource_key must be a non-empty string", "resource_key")
        if not self.id_field:
            raise ResourceConfigError("ID_FIELD_REQUIRED", "id_field must be a non-empty string", "id_field")

        fields = []
        seen: set[str] = set()
        for idx, spec in enumerate(self.fields):
            if spec.name in seen:
                raise ResourceConfigError("FIELD_DUPLICATE", f"duplicate field {spec.name!r}", f"fields[{idx}]")
            seen.add(spec.name)
            if spec.editable and is_forced_readonly(spec.name, self.id_field):
                spec = replace(spec, editable=False)
            fields.append(spec)
        object.__setattr__(self, "fields", tuple(fields))

        tab_kinds: set[TabKind] = set()
        for idx, tab in enumerate(self.tabs):
            if tab.kind in tab_kinds:
                raise ResourceConfigError("TAB_DUPLICATE", f"duplicate tab {tab.kind.value!r}", f"tabs[{idx}]")
            tab_kinds.add(tab.kind)
        object.__setattr__(self, "tabs", tuple(self.tabs))

        for key in self.default_visible:
            if key not in seen:
                raise ResourceConfigError("DEFAULT_VISIBLE_UNKNOWN", f"unknown column {key!r}", "default_visible")
        object.__setattr__(self, "default_visible", tuple(self.default_visible))

        if self.default_page_size not in self.page_sizes:
            raise ResourceConfigError("PAGE_SIZE_INVALID", "default_page_size must be one of page_sizes", "default_page_size")

        fallbacks = dict(DEFAULT_FALLBACKS)
        for op, policy in (self.fallbacks or {}).items():
            fallbacks[op] = FallbackPolicy(policy)
        object.__setattr__(self, "fallbacks", fallbacks)
        object.__setattr__(self, "capabilities", Capabilities.from_operations(self.operations))

    @property
    def singular(self) -> str:
        return self.title_singular or "record"

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def fields_by_name(self) -> Dict[str, FieldSpec]:
        return {spec.name: spec for spec in self.fields}

    def tab(self, kind: TabKind | str) -> TabConfig | None:
        try:
            kind = TabKind(kind)
        except ValueError:
            return None
        for tab in self.tabs:
            if tab.kind == kind:
                return tab
        return None

    def enabled_tabs(self) -> list[TabConfig]:
        return [tab for tab in self.tabs if tab.enabled]

    def segment(self, key: str) -> SegmentSpec | None:
        for seg in self.segments:
            if seg.key == key:
                return seg
        return None

    def filter_spec(self, name: str) -> FilterSpec | None:
        for spec in self.filters:
            if spec.name == name:
                return spec
        return None

    def fallback_for(self, operation: str) -> FallbackPolicy:
        return self.fallbacks.get(operation, FallbackPolicy.RETURN_EMPTY)

    def detail_route(self, entity_id: Any) -> str:
        return f"{self.route_base}/{entity_id}"

    def edit_route(self, entity_id: Any) -> str:
        return f"{self.route_base}/{entity_id}/edit"
