"""Generic collection view for one ResourceConfig.

The engine keeps the raw server view (``rows``) and derives what the table
shows client-side, in a fixed order: segment, status dropdown, simple filters,
free-text search over the visible columns, then an explicit user sort. Paging
is visual only (``page``) and never changes the derived view.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List

from entkit.canonical_json import loose_dumps
from entkit.field_path import read_path
from csv_export import CsvExport, export_rows
from navigation import Navigator
from notifications import Notifier
from preference_store import PreferenceStore
from resource_config import FallbackPolicy, FieldSpec, FieldType, ResourceConfig, STATUS_ACTIONS
from resource_gateway import Failure, FailureKind, GatewayError, ResourceGateway, unwrap_envelope


logger = logging.getLogger("entkit.list_engine")

ALL_STATUS = "All"
PLACEHOLDER_COLUMN = FieldSpec(name="__placeholder__", label="-", sortable=False)
SEARCH_DEBOUNCE_S = 0.3
SERVER_PAGE_SIZE = 1000
SERVER_SORT = "createdAt:desc"


class ExportScope(str, Enum):
    ALL = "all"
    FILTERED = "filtered"


@dataclass(frozen=True)
class SortState:
    column: str | None = None
    direction: str = "asc"
    explicit: bool = False

    def indicator(self, column: str) -> str | None:
        if self.explicit and self.column == column:
            return self.direction
        return None

    def as_pref(self) -> dict:
        return {"column": self.column, "direction": self.direction}


@dataclass
class BulkResult:
    """Per-id outcome of a bulk action: ``None`` for success, the Failure otherwise."""

    results: Dict[Any, Failure | None] = field(default_factory=dict)

    @property
    def succeeded(self) -> list:
        return [rid for rid, failure in self.results.items() if failure is None]

    @property
    def failed(self) -> Dict[Any, Failure]:
        return {rid: failure for rid, failure in self.results.items() if failure is not None}

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "succeeded": self.succeeded,
            "failed": {str(rid): failure.as_dict() for rid, failure in self.failed.items()},
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_timestamp(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(text).timestamp()
        except ValueError:
            return None
    if isinstance(value, datetime):
        return value.timestamp()
    return None


def sort_key(spec: FieldSpec, value: Any, *, numeric: bool = False) -> tuple:
    """Type-aware key: numbers numerically, dates chronologically, text case-insensitively.

    ``numeric`` treats numeric-looking text as a number (id columns).
    """
    if numeric or spec.type == FieldType.NUMBER or _is_number(value):
        num = _as_number(value)
        if num is not None:
            return (0, num)
    if spec.type == FieldType.DATE:
        ts = _as_timestamp(value)
        if ts is not None:
            return (0, ts)
    if isinstance(value, (dict, list)):
        return (1, loose_dumps(value).casefold())
    return (1, str(value).casefold())


def cell_search_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list, tuple)):
        return loose_dumps(value)
    return str(value)


class ListEngine:
    def __init__(
        self,
        config: ResourceConfig,
        gateway: ResourceGateway,
        preferences: PreferenceStore,
        *,
        notifier: Notifier | None = None,
        navigator: Navigator | None = None,
        search_debounce: float = SEARCH_DEBOUNCE_S,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.preferences = preferences
        self.notifier = notifier or Notifier()
        self.navigator = navigator
        self.capabilities = config.capabilities
        self._columns_by_key = config.fields_by_name()
        self._search_debounce = search_debounce
        self._debounce_handle: asyncio.TimerHandle | None = None

        self.rows: List[dict] = []
        self.loading = False
        self.last_failure: Failure | None = None
        self.revision = 0

        self.segment = config.segments[0].key if config.segments else "all"
        self.status_filter = ALL_STATUS
        self.search_text = ""
        self.typed_text = ""
        self.selected_ids: List[Any] = []

        self.visible_columns: List[str] = self._read_visible_columns()
        self.page_size: int = self._read_page_size()
        self.sort: SortState = self._read_sort()
        self.filters: Dict[str, str | None] = {spec.name: self._read_filter(spec.name) for spec in config.filters}

    # -- preferences -------------------------------------------------------

    def _pref_read(self, setting: str, default: Any, validate=None) -> Any:
        return self.preferences.read(
            self.config.resource_key, setting, default, version=self.config.pref_version, validate=validate
        )

    def _pref_write(self, setting: str, value: Any) -> None:
        self.preferences.write(self.config.resource_key, setting, value, version=self.config.pref_version)

    def _read_visible_columns(self) -> List[str]:
        default = list(self.config.default_visible)
        stored = self._pref_read(
            "visibleCols",
            default,
            validate=lambda v: isinstance(v, list) and all(isinstance(k, str) for k in v),
        )
        return self._known_columns(stored)

    def _read_page_size(self) -> int:
        return int(
            self._pref_read(
                "pageSize",
                self.config.default_page_size,
                validate=lambda v: _is_number(v) and int(v) == v and int(v) in self.config.page_sizes,
            )
        )

    def _read_sort(self) -> SortState:
        def _valid(v: Any) -> bool:
            return (
                isinstance(v, dict)
                and v.get("column") in self._columns_by_key
                and v.get("direction") in ("asc", "desc")
            )

        stored = self._pref_read("sort", None, validate=_valid)
        if stored is None:
            return SortState()
        return SortState(stored["column"], stored["direction"], explicit=True)

    def _read_filter(self, name: str) -> str | None:
        spec = self.config.filter_spec(name)
        return self._pref_read(
            spec.setting_name,
            None,
            validate=lambda v: isinstance(v, str) and (not spec.allowed or v in spec.allowed),
        )

    def _known_columns(self, keys: Iterable[str]) -> List[str]:
        out: List[str] = []
        for key in keys:
            if key in self._columns_by_key and key not in out:
                out.append(key)
        return out

    def _touch(self) -> None:
        self.revision += 1

    # -- loading -----------------------------------------------------------

    def _effective_status(self) -> str | None:
        seg = self.config.segment(self.segment)
        seg_status = seg.match.get(self.config.status_field) if seg else None
        if seg_status:
            return seg_status
        if self.config.status_filter and self.status_filter != ALL_STATUS:
            return self.status_filter
        return None

    def _query(self, extra: dict | None) -> dict:
        query: dict = {
            "q": self.search_text or None,
            "status": self._effective_status(),
            "pageSize": SERVER_PAGE_SIZE,
            "sort": SERVER_SORT,
        }
        for spec in self.config.filters:
            if spec.query_param:
                query[spec.query_param] = self.filters.get(spec.name)
        query.update(extra or {})
        return query

    def _parse_rows(self, data: Any) -> List[dict]:
        raw = unwrap_envelope(data)
        if self.config.parse_list is not None:
            try:
                raw = self.config.parse_list(raw)
            except Exception as exc:
                logger.warning("list_parse_failed resource=%s error=%s", self.config.resource_key, exc)
                return []
        if not isinstance(raw, list):
            return []
        return [row for row in raw if isinstance(row, dict)]

    async def load(self, filters: dict | None = None) -> List[dict]:
        """Fetch the collection. Fail-soft: failures leave an empty raw view."""
        policy = self.config.fallback_for("list")
        if not self.capabilities.can_list:
            failure = Failure(FailureKind.MISSING_ENDPOINT, "List operation not configured")
            return self._fallback(failure, policy)

        self.loading = True
        try:
            result = await self.gateway.call(self.config.operations.list, query=self._query(filters))
        finally:
            self.loading = False
        if not result.ok:
            logger.warning(
                "list_load_failed resource=%s kind=%s status=%s",
                self.config.resource_key,
                result.failure.kind.value,
                result.failure.status,
            )
            return self._fallback(result.failure, policy)

        self.rows = self._parse_rows(result.data)
        self.last_failure = None
        known = {self._row_id(r) for r in self.rows}
        self.selected_ids = [rid for rid in self.selected_ids if rid in known]
        self._touch()
        logger.info("list_loaded resource=%s rows=%s", self.config.resource_key, len(self.rows))
        return self.rows

    def _fallback(self, failure: Failure, policy: FallbackPolicy) -> List[dict]:
        self.last_failure = failure
        if policy == FallbackPolicy.RETHROW:
            raise GatewayError(failure)
        self.rows = []
        self._touch()
        return self.rows

    # -- derived view ------------------------------------------------------

    def _row_id(self, row: dict) -> Any:
        return read_path(row, self.config.id_field)

    def columns(self) -> List[FieldSpec]:
        cols = [self._columns_by_key[k] for k in self.visible_columns if k in self._columns_by_key]
        return cols or [PLACEHOLDER_COLUMN]

    def available_columns(self) -> List[FieldSpec]:
        return list(self.config.fields)

    def _segment_rows(self, rows: List[dict]) -> List[dict]:
        seg = self.config.segment(self.segment)
        if seg is None or not seg.match:
            return rows
        return [r for r in rows if all(read_path(r, k) == v for k, v in seg.match.items())]

    def _status_rows(self, rows: List[dict]) -> List[dict]:
        if not self.config.status_filter or self.status_filter == ALL_STATUS:
            return rows
        wanted = str(self.status_filter).lower()
        return [r for r in rows if str(read_path(r, self.config.status_field, "")).lower() == wanted]

    def _filter_rows(self, rows: List[dict]) -> List[dict]:
        for spec in self.config.filters:
            selected = self.filters.get(spec.name)
            if not selected:
                continue
            norm = str(selected).lower()

            def _value(row: dict) -> str:
                for path in spec.paths:
                    value = read_path(row, path)
                    if value not in (None, ""):
                        return str(value).lower()
                return ""

            rows = [r for r in rows if _value(r) == norm]
        return rows

    def _search_rows(self, rows: List[dict]) -> List[dict]:
        needle = self.search_text.strip().casefold()
        if not needle:
            return rows
        cols = [c for c in self.columns() if c is not PLACEHOLDER_COLUMN]
        matched = []
        for row in rows:
            for spec in cols:
                if needle in cell_search_text(read_path(row, spec.name)).casefold():
                    matched.append(row)
                    break
        return matched

    def _sorted_rows(self, rows: List[dict]) -> List[dict]:
        if not self.sort.explicit or not self.sort.column:
            return rows
        spec = self._columns_by_key.get(self.sort.column)
        if spec is None:
            return rows
        present = [r for r in rows if read_path(r, spec.name) is not None]
        missing = [r for r in rows if read_path(r, spec.name) is None]
        numeric = spec.name == self.config.id_field
        present.sort(key=lambda r: sort_key(spec, read_path(r, spec.name), numeric=numeric), reverse=self.sort.direction == "desc")
        return present + missing

    def derived_rows(self) -> List[dict]:
        rows = self._segment_rows(list(self.rows))
        rows = self._status_rows(rows)
        rows = self._filter_rows(rows)
        rows = self._search_rows(rows)
        return self._sorted_rows(rows)

    def page(self, number: int = 1) -> List[dict]:
        rows = self.derived_rows()
        start = max(number - 1, 0) * self.page_size
        return rows[start : start + self.page_size]

    def page_count(self) -> int:
        total = len(self.derived_rows())
        return max((total + self.page_size - 1) // self.page_size, 1)

    def sort_indicator(self, column: str) -> str | None:
        return self.sort.indicator(column)

    # -- user actions ------------------------------------------------------

    def set_segment(self, key: str) -> bool:
        if self.config.segment(key) is None:
            return False
        self.segment = key
        self._touch()
        return True

    def set_status_filter(self, status: str | None) -> None:
        self.status_filter = status or ALL_STATUS
        self._touch()

    def set_filter(self, name: str, value: str | None) -> bool:
        spec = self.config.filter_spec(name)
        if spec is None:
            return False
        if value and spec.allowed and value not in spec.allowed:
            return False
        self.filters[name] = value or None
        if value:
            self._pref_write(spec.setting_name, value)
        else:
            self.preferences.remove(self.config.resource_key, spec.setting_name, version=self.config.pref_version)
        self._touch()
        return True

    def type_search(self, text: str) -> None:
        """Record a keystroke; the search is applied once typing pauses."""
        self.typed_text = text
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._search_debounce <= 0:
            self.apply_search(text)
            return
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self._search_debounce, self.apply_search, text)

    def apply_search(self, text: str) -> None:
        self._debounce_handle = None
        self.typed_text = text
        self.search_text = text or ""
        self._touch()

    def set_visible_columns(self, keys: Iterable[str]) -> List[str]:
        self.visible_columns = self._known_columns(keys)
        self._pref_write("visibleCols", self.visible_columns)
        self._touch()
        return self.visible_columns

    def toggle_column(self, key: str) -> List[str]:
        if key not in self._columns_by_key:
            return self.visible_columns
        if key in self.visible_columns:
            keys = [k for k in self.visible_columns if k != key]
        else:
            keys = self.visible_columns + [key]
        return self.set_visible_columns(keys)

    def set_page_size(self, size: int) -> bool:
        if size not in self.config.page_sizes:
            return False
        self.page_size = size
        self._pref_write("pageSize", size)
        return True

    def sort_by(self, column: str, direction: str | None = None) -> SortState:
        spec = self._columns_by_key.get(column)
        if spec is None or not spec.sortable:
            return self.sort
        if direction not in ("asc", "desc"):
            if self.sort.explicit and self.sort.column == column:
                direction = "desc" if self.sort.direction == "asc" else "asc"
            else:
                direction = "asc"
        self.sort = SortState(column, direction, explicit=True)
        self._pref_write("sort", self.sort.as_pref())
        self._touch()
        return self.sort

    def clear_sort(self) -> None:
        self.sort = SortState()
        self.preferences.remove(self.config.resource_key, "sort", version=self.config.pref_version)
        self._touch()

    def select(self, ids: Iterable[Any]) -> None:
        self.selected_ids = list(dict.fromkeys(ids))

    async def reset(self) -> List[dict]:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        self.typed_text = ""
        self.search_text = ""
        self.status_filter = ALL_STATUS
        self.segment = self.config.segments[0].key if self.config.segments else "all"
        self.selected_ids = []
        self.set_page_size(self.config.default_page_size)
        for spec in self.config.filters:
            self.set_filter(spec.name, None)
        return await self.load()

    # -- row and bulk actions ---------------------------------------------

    def row_actions(self) -> List[str]:
        actions = ["view", "edit"]
        if self.capabilities.can_remove:
            actions.append("delete")
        return actions

    def bulk_actions(self) -> List[str]:
        actions: List[str] = []
        if self.config.status_filter and self.capabilities.can_update_status:
            actions.extend(STATUS_ACTIONS.keys())
        if self.capabilities.can_remove:
            actions.append("delete")
        actions.extend(["export_all", "export_filtered", "reset"])
        return actions

    def open_row(self, row_id: Any) -> str:
        path = self.config.detail_route(row_id)
        if self.navigator is not None:
            self.navigator.go(path)
        return path

    def edit_row(self, row_id: Any) -> str:
        path = self.config.edit_route(row_id)
        if self.navigator is not None:
            self.navigator.go(path)
        return path

    def delete_prompt(self, row: dict) -> dict | None:
        if not self.capabilities.can_remove:
            return None
        name = row.get("name")
        label = name if isinstance(name, str) and name.strip() else f"#{self._row_id(row)}"
        return {
            "title": f"Delete {self.config.singular}?",
            "message": f"Are you sure you want to delete {label}?",
        }

    async def delete_row(self, row_id: Any) -> bool:
        if not self.capabilities.can_remove:
            return False
        result = await self.gateway.call(self.config.operations.remove, row_id)
        if not result.ok:
            logger.warning("row_delete_failed resource=%s id=%s kind=%s", self.config.resource_key, row_id, result.failure.kind.value)
            self.notifier.error("Failed to delete", self.config.resource_key, id=row_id)
            return False
        self.drop_rows([row_id])
        self.notifier.success("Deleted", self.config.resource_key, id=row_id)
        return True

    async def _run_bulk(self, ids: Iterable[Any], call) -> BulkResult:
        unique = list(dict.fromkeys(ids))
        results = await asyncio.gather(*(call(rid) for rid in unique))
        return BulkResult({rid: (None if res.ok else res.failure) for rid, res in zip(unique, results)})

    def _report_bulk(self, outcome: BulkResult, verb: str) -> None:
        total = len(outcome.results)
        if not total:
            return
        if outcome.failed:
            logger.warning(
                "bulk_partial_failure resource=%s verb=%s failed=%s total=%s",
                self.config.resource_key,
                verb,
                list(outcome.failed.keys()),
                total,
            )
            self.notifier.error(
                f"Failed to {verb} {len(outcome.failed)} of {total} records",
                self.config.resource_key,
                failed_ids=list(outcome.failed.keys()),
            )
        else:
            self.notifier.success(f"{verb.capitalize()}d {total} records", self.config.resource_key)

    async def bulk_update_status(self, ids: Iterable[Any], status: str) -> BulkResult:
        """One status call per id; successes are applied, failures are reported, nothing is rolled back."""
        if not self.capabilities.can_update_status:
            return BulkResult()
        status = STATUS_ACTIONS.get(status, status)
        endpoint = self.config.operations.update_status

        async def _one(rid: Any):
            return await self.gateway.call(endpoint, rid, payload={self.config.status_field: status})

        outcome = await self._run_bulk(ids, _one)
        done = {str(rid) for rid in outcome.succeeded}
        for row in self.rows:
            if str(self._row_id(row)) in done:
                row[self.config.status_field] = status
        self.selected_ids = [rid for rid in self.selected_ids if str(rid) not in done]
        self._touch()
        self._report_bulk(outcome, "update")
        return outcome

    async def bulk_delete(self, ids: Iterable[Any]) -> BulkResult:
        if not self.capabilities.can_remove:
            return BulkResult()
        endpoint = self.config.operations.remove

        async def _one(rid: Any):
            return await self.gateway.call(endpoint, rid)

        outcome = await self._run_bulk(ids, _one)
        self.drop_rows(outcome.succeeded)
        self._report_bulk(outcome, "delete")
        return outcome

    def drop_rows(self, ids: Iterable[Any]) -> None:
        gone = {str(rid) for rid in ids}
        if not gone:
            return
        self.rows = [r for r in self.rows if str(self._row_id(r)) not in gone]
        self.selected_ids = [rid for rid in self.selected_ids if str(rid) not in gone]
        self._touch()

    # -- export ------------------------------------------------------------

    def export_csv(self, scope: ExportScope | str = ExportScope.FILTERED) -> CsvExport:
        scope = ExportScope(scope)
        rows = self.rows if scope == ExportScope.ALL else self.derived_rows()
        cols = [c for c in self.columns() if c is not PLACEHOLDER_COLUMN]
        export = export_rows(self.config.resource_key, cols, rows)
        logger.info("csv_exported resource=%s scope=%s rows=%s", self.config.resource_key, scope.value, export.row_count)
        return export

    # -- snapshot ----------------------------------------------------------

    def view(self, page: int = 1) -> dict:
        derived = self.derived_rows()
        start = max(page - 1, 0) * self.page_size
        return {
            "resource_key": self.config.resource_key,
            "columns": [
                {"key": c.key, "title": c.title, "sortable": c.sortable, "sort": self.sort_indicator(c.key)}
                for c in self.columns()
            ],
            "available_columns": [{"key": c.key, "title": c.title} for c in self.available_columns()],
            "rows": derived[start : start + self.page_size],
            "total": len(derived),
            "raw_total": len(self.rows),
            "page": page,
            "page_size": self.page_size,
            "segment": self.segment,
            "status": self.status_filter,
            "filters": dict(self.filters),
            "search": self.search_text,
            "selected_ids": list(self.selected_ids),
            "row_actions": self.row_actions(),
            "bulk_actions": self.bulk_actions(),
            "failure": self.last_failure.as_dict() if self.last_failure else None,
        }
