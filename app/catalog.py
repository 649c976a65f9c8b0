"""Built-in resource catalog plus JSON-declared resources."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from app.resources_validate import validate_resource_raw
from entkit.field_path import read_path
from resource_config import (
    Endpoint,
    FieldSpec,
    FieldType,
    FilterSpec,
    Operations,
    ResourceConfig,
    ResourceConfigError,
    SegmentSpec,
    TabConfig,
    TabKind,
    endpoint,
)


logger = logging.getLogger("entkit.catalog")

STATUS_OPTIONS = ("active", "suspended", "disabled")
BILLING_FILTER = FilterSpec("billing", ("billingStatus", "activePlan.interval"), ("monthly", "annually"), "billingStatus")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _first(*values: Any) -> Any:
    for value in values:
        if not _blank(value):
            return value
    return None


def _person_name(row: dict) -> str | None:
    user = row.get("user") if isinstance(row.get("user"), dict) else {}
    split = " ".join(str(p) for p in (user.get("first_name"), user.get("last_name")) if p).strip()
    return _first(user.get("name"), split, row.get("name"))


def _flatten_people(data: Any) -> list:
    """User-backed rows carry contact fields on a nested ``user``; lift them."""
    src = data if isinstance(data, list) else (data.get("data") if isinstance(data, dict) else None)
    rows = []
    for p in src or []:
        if not isinstance(p, dict):
            continue
        user = p.get("user") if isinstance(p.get("user"), dict) else {}
        state = _first(user.get("state"), p.get("state"), p.get("bundesland"), user.get("bundesland"))
        rows.append(
            {
                **p,
                "name": _person_name(p),
                "email": _first(user.get("email"), p.get("email")),
                "status": _first(user.get("status"), p.get("status")),
                "contact_number": _first(user.get("contact_number"), p.get("contact_number")),
                "state": state,
                "bundesland": state,
                "created_at": _first(p.get("created_at"), user.get("created_at")),
            }
        )
    return rows


def _flatten_person(data: Any) -> Any:
    rows = _flatten_people([data]) if isinstance(data, dict) else []
    return rows[0] if rows else data


def _text(name: str, label: str, editable: bool = False) -> FieldSpec:
    return FieldSpec(name, label, FieldType.TEXT, editable)


def _status() -> FieldSpec:
    return FieldSpec("status", "Status", FieldType.SELECT, True, STATUS_OPTIONS)


def _created() -> FieldSpec:
    return FieldSpec("created_at", "Date added", FieldType.DATE)


def _people_tabs(singular: str) -> tuple:
    return (
        TabConfig(TabKind.TASKS, label="Tasks", list_path=f"/{singular}/{{id}}/tasks", create_path=f"/{singular}/{{id}}/tasks",
                  update_path=f"/{singular}/{{id}}/tasks/{{sub_id}}", delete_path=f"/{singular}/{{id}}/tasks/{{sub_id}}"),
        TabConfig(
            TabKind.DOCUMENTS,
            label="Documents",
            list_path=f"/{singular}/{{id}}/documents",
            create_path=f"/{singular}/{{id}}/documents",
            delete_path=f"/{singular}/{{id}}/documents/{{sub_id}}",
            comment_list_path=f"/{singular}/{{id}}/documents/{{sub_id}}/comments",
            comment_create_path=f"/{singular}/{{id}}/documents/{{sub_id}}/comments",
            columns=(_text("title", "Title"), _text("description", "Description"), _text("status", "Status"), FieldSpec("date", "Date", FieldType.DATE)),
        ),
        TabConfig(TabKind.COMMUNICATION, label="Comments", list_path=f"/{singular}/{{id}}/comments", create_path=f"/{singular}/{{id}}/comments"),
        TabConfig(TabKind.AUDIT, label="Audit Log", list_path=f"/{singular}/{{id}}/audit"),
    )


def builtin_resources() -> List[ResourceConfig]:
    parents = ResourceConfig(
        resource_key="parents",
        title_singular="Parent",
        title_plural="Parents",
        route_base="/admin/parents",
        operations=Operations(
            list=Endpoint("/parents"),
            get=Endpoint("/parent/{id}"),
            update=Endpoint("/parent/{id}", "PATCH"),
            remove=Endpoint("/parent/{id}", "DELETE"),
            update_status=Endpoint("/parent/{id}/status", "PATCH"),
        ),
        fields=(
            _status(),
            _text("id", "ID"),
            _text("name", "Full Name", True),
            _text("email", "Email", True),
            _text("contact_number", "Phone number", True),
            _text("bundesland", "State"),
            _text("state", "State", True),
            _created(),
        ),
        default_visible=("status", "id", "name", "email", "contact_number", "bundesland", "state", "created_at"),
        tabs=(
            TabConfig(
                TabKind.RELATED,
                label="Children",
                list_path="/parents/{id}/children",
                columns=(_text("id", "ID"), _text("name", "Name"), _text("grade", "Grade"), _text("bundesland", "State"), _text("status", "Status")),
            ),
            TabConfig(TabKind.BILLING, label="Billing", list_path="/parent/{id}/subscriptions"),
        )
        + _people_tabs("parent"),
        parse_list=_flatten_people,
        parse_entity=_flatten_person,
    )

    students = ResourceConfig(
        resource_key="students",
        title_singular="Student",
        title_plural="Students",
        route_base="/admin/students",
        operations=Operations(
            list=Endpoint("/allstudents"),
            get=Endpoint("/student/{id}"),
            update=Endpoint("/student/{id}", "PATCH"),
            update_status=Endpoint("/student/{id}/status", "PATCH"),
        ),
        fields=(
            _status(),
            _text("id", "ID"),
            _text("name", "Name", True),
            _text("grade", "Grade", True),
            _text("school", "School", True),
            _text("bundesland", "Bundesland", True),
            _text("parent_name", "Parent"),
            _text("email", "Email"),
            _created(),
        ),
        default_visible=("status", "id", "name", "grade", "parent_name", "email", "created_at"),
        filters=(BILLING_FILTER,),
        tabs=(
            TabConfig(
                TabKind.ACTIVITY,
                label="Activity",
                list_path="/student/{id}/activity",
                columns=(_text("label", "When"), FieldSpec("value", "Score", FieldType.NUMBER)),
            ),
            TabConfig(TabKind.BILLING, enabled=False, label="Billing"),
        )
        + tuple(tab for tab in _people_tabs("student") if tab.kind != TabKind.AUDIT),
        parse_list=_flatten_people,
        parse_entity=_flatten_person,
    )

    teachers = ResourceConfig(
        resource_key="teachers",
        title_singular="Teacher",
        title_plural="Teachers",
        route_base="/admin/teachers",
        operations=Operations(
            list=Endpoint("/allteachers"),
            get=Endpoint("/teacher/{id}"),
            update=Endpoint("/teacher/{id}", "PATCH"),
            update_status=Endpoint("/teacher/{id}/status", "PATCH"),
        ),
        fields=(
            _status(),
            _text("id", "ID"),
            _text("name", "Name", True),
            _text("grade", "Grade", True),
            _text("state", "State", True),
            _text("email", "Email", True),
            _text("phone", "Phone", True),
            _created(),
        ),
        default_visible=("status", "id", "name", "grade", "state", "email", "phone", "created_at"),
        tabs=(TabConfig(TabKind.RELATED, label="Classes", columns=(_text("id", "ID"), _text("name", "Class"))),)
        + _people_tabs("teacher"),
        parse_list=_flatten_people,
        parse_entity=_flatten_person,
    )

    subjects = ResourceConfig(
        resource_key="subjects",
        title_singular="Subject",
        title_plural="Subjects",
        route_base="/admin/academics/subjects",
        operations=Operations.from_paths(list="/allsubjects", get="/subject/{id}", update="/subject/{id}", remove="/subject/{id}"),
        fields=(
            _text("id", "ID"),
            FieldSpec("offered", "Offered", FieldType.SELECT, True, ((True, "Yes"), (False, "No"))),
            _text("subject_name", "Subject", True),
            _text("class_id", "Class"),
            _created(),
        ),
        default_visible=("id", "offered", "subject_name", "class_id", "created_at"),
        segments=(SegmentSpec("all", "All"), SegmentSpec("offered", "Offered", {"offered": True})),
        status_filter=False,
    )

    products = ResourceConfig(
        resource_key="products",
        title_singular="Product",
        title_plural="Products",
        route_base="/admin/billing/products",
        operations=Operations.from_paths(list="/products", get="/product/{id}", update="/product/{id}", remove="/product/{id}"),
        fields=(
            _text("id", "ID"),
            _text("name", "Name", True),
            FieldSpec("price", "Price", FieldType.NUMBER, True),
            FieldSpec("interval", "Interval", FieldType.SELECT, True, ("month", "year")),
            FieldSpec("active", "Active", FieldType.SELECT, True, ((True, "Yes"), (False, "No"))),
            _created(),
        ),
        default_visible=("id", "name", "price", "interval", "active"),
        segments=(SegmentSpec("all", "All"), SegmentSpec("active", "Active", {"active": True})),
        status_filter=False,
    )

    subscriptions = ResourceConfig(
        resource_key="subscriptions",
        title_singular="Subscription",
        title_plural="Subscriptions",
        route_base="/admin/billing/subscriptions",
        operations=Operations.from_paths(list="/subscriptions", get="/subscription/{id}", remove="/subscription/{id}"),
        fields=(
            _text("id", "ID"),
            FieldSpec("plan", "Plan / Product", csv=lambda r: _first(read_path(r, "product.name"), r.get("plan_name"))),
            FieldSpec("parent", "Parent", csv=lambda r: _first(read_path(r, "parent.name"), r.get("parent_name"))),
            _text("stripe_subscription_id", "Stripe Sub ID"),
            _text("interval", "Interval"),
            FieldSpec("amount", "Amount", FieldType.NUMBER),
            FieldSpec("status", "Status", FieldType.SELECT, options=("active", "past_due", "canceled", "trialing")),
            FieldSpec("current_period_end", "Renews", FieldType.DATE),
        ),
        default_visible=("id", "plan", "parent", "interval", "amount", "status", "current_period_end"),
        status_options=("active", "past_due", "canceled", "trialing"),
        filters=(BILLING_FILTER,),
    )

    blogposts = ResourceConfig(
        resource_key="blogposts",
        title_singular="Blog post",
        title_plural="Blog posts",
        route_base="/admin/content/blog",
        operations=Operations.from_paths(list="/blogposts", get="/blogpost/{id}", update="/blogpost/{id}", remove="/blogpost/{id}"),
        fields=(
            _text("id", "ID"),
            _text("title", "Title", True),
            _text("slug", "Slug", True),
            FieldSpec("status", "Status", FieldType.SELECT, True, ("draft", "published", "archived")),
            FieldSpec("published_at", "Published", FieldType.DATE, True),
            _created(),
        ),
        default_visible=("id", "title", "status", "published_at"),
        segments=(SegmentSpec("all", "All"), SegmentSpec("published", "Published", {"status": "published"})),
        status_options=("draft", "published", "archived"),
    )

    invoices = ResourceConfig(
        resource_key="invoices",
        title_singular="Invoice",
        title_plural="Invoices",
        route_base="/admin/billing/invoices",
        operations=Operations.from_paths(list="/invoices", get="/invoice/{id}", update="/invoice/{id}", remove="/invoice/{id}"),
        fields=(
            _text("id", "ID"),
            FieldSpec("parent", "Parent", csv=lambda r: _first(read_path(r, "parent.name"), r.get("parent_name"))),
            FieldSpec("status", "Status", FieldType.SELECT, True, ("draft", "open", "paid", "void")),
            FieldSpec("total", "Total", FieldType.NUMBER),
            FieldSpec("due_at", "Due", FieldType.DATE, True),
            _created(),
        ),
        default_visible=("id", "parent", "status", "total", "due_at", "created_at"),
        segments=(SegmentSpec("all", "All"), SegmentSpec("open", "Open", {"status": "open"})),
        status_options=("draft", "open", "paid", "void"),
    )

    classes = ResourceConfig(
        resource_key="classes",
        title_singular="Class",
        title_plural="Classes",
        route_base="/admin/academics/classes",
        operations=Operations.from_paths(list="/allclasses"),
        fields=(_text("id", "ID"), _text("name", "Class"), _text("grade", "Grade"), _created()),
        default_visible=("id", "name", "grade"),
        segments=(SegmentSpec("all", "All"),),
        status_filter=False,
    )

    return [parents, students, teachers, subjects, products, subscriptions, blogposts, invoices, classes]


def _endpoint_from_def(value: Any, method: str) -> Endpoint | None:
    if isinstance(value, dict):
        return endpoint(value.get("path"), (value.get("method") or method).upper())
    return endpoint(value, method)


def _fields_from_def(items: list) -> tuple:
    return tuple(
        FieldSpec(
            f["name"],
            f.get("label"),
            f.get("type") or "text",
            bool(f.get("editable")),
            tuple(f.get("options") or ()),
            bool(f.get("sortable", True)),
        )
        for f in items
    )


def build_resource_config(definition: dict) -> ResourceConfig:
    """Build a ResourceConfig from a normalized and validated definition."""
    ops = definition.get("operations") or {}
    operations = Operations(
        list=_endpoint_from_def(ops.get("list"), "GET"),
        get=_endpoint_from_def(ops.get("get"), "GET"),
        update=_endpoint_from_def(ops.get("update"), "PATCH"),
        remove=_endpoint_from_def(ops.get("remove"), "DELETE"),
        update_status=_endpoint_from_def(ops.get("update_status"), "PATCH"),
    )
    tabs = []
    for tab in definition.get("tabs") or []:
        kwargs = {k: v for k, v in tab.items() if k not in {"columns", "placeholder_rows", "ranges"}}
        for key in ("list_path", "create_path", "update_path", "delete_path", "comment_list_path", "comment_create_path"):
            if isinstance(kwargs.get(key), dict):
                default = "GET" if key in ("list_path", "comment_list_path") else "POST"
                kwargs[key] = _endpoint_from_def(kwargs[key], default)
        tabs.append(
            TabConfig(
                columns=_fields_from_def(tab.get("columns") or []),
                placeholder_rows=tuple(tab.get("placeholder_rows") or ()),
                ranges=tuple(tab.get("ranges") or ("14d", "30d", "90d")),
                **kwargs,
            )
        )
    kwargs: Dict[str, Any] = {
        "resource_key": definition["resource_key"],
        "id_field": definition.get("id_field") or "id",
        "operations": operations,
        "fields": _fields_from_def(definition.get("fields") or []),
        "tabs": tuple(tabs),
        "title_singular": definition.get("title_singular"),
        "title_plural": definition.get("title_plural"),
        "route_base": definition.get("route_base") or "",
        "default_visible": tuple(definition.get("default_visible") or ()),
        "fallbacks": definition.get("fallbacks") or {},
    }
    if "segments" in definition:
        kwargs["segments"] = tuple(SegmentSpec(s["key"], s.get("label") or s["key"], s.get("match") or {}) for s in definition["segments"])
    if "filters" in definition:
        kwargs["filters"] = tuple(
            FilterSpec(f["name"], tuple(f["paths"]), tuple(f.get("allowed") or ()), f.get("query_param")) for f in definition["filters"]
        )
    for key in ("status_filter", "status_field", "pref_version", "default_page_size"):
        if key in definition:
            kwargs[key] = definition[key]
    if "status_options" in definition:
        kwargs["status_options"] = tuple(definition["status_options"])
    if "page_sizes" in definition:
        kwargs["page_sizes"] = tuple(definition["page_sizes"])
    return ResourceConfig(**kwargs)


class ResourceCatalog:
    def __init__(self, resources: List[ResourceConfig] | None = None) -> None:
        self._resources: Dict[str, ResourceConfig] = {}
        for config in resources or []:
            self.register(config)

    def register(self, config: ResourceConfig) -> None:
        self._resources[config.resource_key] = config

    def get(self, resource_key: str) -> ResourceConfig | None:
        return self._resources.get(resource_key)

    def keys(self) -> List[str]:
        return list(self._resources.keys())

    def all(self) -> List[ResourceConfig]:
        return list(self._resources.values())

    def load_definition(self, raw: dict) -> tuple[ResourceConfig | None, list, list]:
        normalized, errors, warnings = validate_resource_raw(raw)
        if errors:
            return None, errors, warnings
        try:
            config = build_resource_config(normalized)
        except ResourceConfigError as exc:
            return None, [{"code": exc.code, "message": exc.message, "path": exc.path, "detail": None}], warnings
        self.register(config)
        return config, errors, warnings

    def load_file(self, path: str | Path) -> int:
        """Register every valid definition in a JSON file (object or list); returns the count loaded."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("resources_file_unreadable path=%s error=%s", path, exc)
            return 0
        items = data if isinstance(data, list) else [data]
        loaded = 0
        for idx, raw in enumerate(items):
            config, errors, warnings = self.load_definition(raw)
            for warning in warnings:
                logger.info("resource_definition_warning index=%s code=%s path=%s", idx, warning["code"], warning["path"])
            if config is None:
                logger.warning("resource_definition_rejected index=%s errors=%s", idx, [e["code"] for e in errors])
                continue
            loaded += 1
        return loaded


def default_catalog() -> ResourceCatalog:
    return ResourceCatalog(builtin_resources())
