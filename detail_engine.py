"""Generic single-entity view for one ResourceConfig.

Owns the root entity load, lazily activated tabs, the inline-edit state
machine, status/delete actions and sub-resource mutations (tasks, documents,
document comments, comments). Every asynchronous boundary has a fallback value;
failures end up as notifications, never as exceptions to the caller, unless a
resource opts into the ``rethrow`` policy.

Stale responses are dropped: the root load carries the engine generation
(bumped by ``navigate_to``) and every tab load a per-tab generation.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from entkit.field_path import FieldPathError, nested_payload, read_path, write_path
from csv_export import dash
from inline_edit import EditOutcome, EditState, InlineEditor
from navigation import Navigator
from notifications import Notifier
from resource_config import (
    INFORMATION_TAB,
    STATUS_ACTIONS,
    FallbackPolicy,
    ResourceConfig,
    TabConfig,
    TabKind,
)
from resource_gateway import (
    Failure,
    FailureKind,
    GatewayError,
    GatewayResult,
    ResourceGateway,
    as_list,
    unwrap_envelope,
)


logger = logging.getLogger("entkit.detail_engine")

NOT_FOUND_MESSAGE = "Record not found (404)"
CACHED_ROW_MESSAGE = "Could not load details. Showing cached row."

_LOCAL_PREFIX = {
    TabKind.TASKS: "t",
    TabKind.DOCUMENTS: "d",
    TabKind.COMMUNICATION: "c",
}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _same_id(a: Any, b: Any) -> bool:
    return str(a) == str(b)


class LoadState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"
    DISABLED = "disabled"


@dataclass
class RootState:
    status: LoadState = LoadState.IDLE
    cached: bool = False
    failure: Failure | None = None


@dataclass
class TabState:
    kind: TabKind
    status: LoadState = LoadState.IDLE
    rows: List[dict] = field(default_factory=list)
    failure: Failure | None = None
    generation: int = 0
    params: dict = field(default_factory=dict)

    @property
    def loaded(self) -> bool:
        return self.status in (LoadState.LOADED, LoadState.ERROR)


@dataclass(frozen=True)
class TabView:
    kind: str
    enabled: bool
    status: LoadState
    rows: List[dict]
    columns: List[dict]
    message: str | None = None
    failure: Failure | None = None

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "enabled": self.enabled,
            "status": self.status.value,
            "rows": self.rows,
            "columns": self.columns,
            "message": self.message,
            "failure": self.failure.as_dict() if self.failure else None,
        }


@dataclass(frozen=True)
class DeletePrompt:
    title: str
    message: str


def normalize_series(rows: List[Any]) -> List[dict]:
    """Activity points -> ``{label, value}`` regardless of the server's key names."""
    points = []
    for idx, item in enumerate(rows):
        if not isinstance(item, dict):
            continue
        label = item.get("label") or item.get("date") or item.get("month") or f"P{idx + 1}"
        raw = item.get("value", item.get("score", item.get("progress", 0)))
        try:
            value = float(raw or 0)
        except (TypeError, ValueError):
            value = 0.0
        points.append({"label": label, "value": value})
    return points


class DetailEngine:
    def __init__(
        self,
        config: ResourceConfig,
        gateway: ResourceGateway,
        entity_id: Any,
        *,
        notifier: Notifier | None = None,
        navigator: Navigator | None = None,
        prefill: dict | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.notifier = notifier or Notifier()
        self.navigator = navigator
        self.capabilities = config.capabilities
        self.entity_id = entity_id
        self.active_tab = INFORMATION_TAB
        self.saving = False
        self._generation = 0
        self._delete_pending = False
        self._tab_tasks: Dict[TabKind, asyncio.Task] = {}
        self.editor = InlineEditor(config.fields_by_name(), self._save_field, can_update=self.capabilities.can_update)
        self._reset_state(prefill)

    def _reset_state(self, prefill: dict | None) -> None:
        self.entity: dict | None = self._parse_entity(prefill) if prefill else None
        self.root = RootState(LoadState.LOADED if self.entity else LoadState.IDLE)
        self.tabs: Dict[TabKind, TabState] = {tab.kind: TabState(tab.kind) for tab in self.config.tabs}
        self.doc_comments: Dict[str, List[dict]] = {}
        self.editor.cancel()
        self._delete_pending = False

    def _parse_entity(self, raw: Any) -> dict:
        if self.config.parse_entity is not None:
            try:
                raw = self.config.parse_entity(raw)
            except Exception as exc:
                logger.warning("entity_parse_failed resource=%s error=%s", self.config.resource_key, exc)
        return dict(raw) if isinstance(raw, dict) else {}

    def navigate_to(self, entity_id: Any, prefill: dict | None = None) -> None:
        """Show another entity; responses still in flight for the old one are dropped."""
        self._generation += 1
        for task in self._tab_tasks.values():
            task.cancel()
        self._tab_tasks.clear()
        self.entity_id = entity_id
        self.active_tab = INFORMATION_TAB
        self._reset_state(prefill)

    # -- root entity -------------------------------------------------------

    def placeholder(self) -> dict:
        return {self.config.id_field: self.entity_id, "name": "-", "status": "active"}

    async def load(self) -> dict:
        generation = self._generation
        policy = self.config.fallback_for("get")
        if not self.capabilities.can_get:
            failure = Failure(FailureKind.MISSING_ENDPOINT, "Get operation not configured")
            return self._root_fallback(failure, policy, notify=False)

        self.root.status = LoadState.LOADING
        result = await self.gateway.call(self.config.operations.get, self.entity_id)
        if generation != self._generation:
            logger.info("stale_root_dropped resource=%s id=%s", self.config.resource_key, self.entity_id)
            return self.entity or {}
        if not result.ok:
            logger.warning(
                "detail_load_failed resource=%s id=%s kind=%s status=%s",
                self.config.resource_key,
                self.entity_id,
                result.failure.kind.value,
                result.failure.status,
            )
            return self._root_fallback(result.failure, policy, notify=True)

        obj = self._parse_entity(unwrap_envelope(result.data) or {})
        self.entity = {**(self.entity or {}), **obj}
        self.root = RootState(LoadState.LOADED, cached=False)
        return self.entity

    def _root_fallback(self, failure: Failure, policy: FallbackPolicy, *, notify: bool) -> dict:
        if notify:
            if failure.is_not_found:
                self.notifier.error(NOT_FOUND_MESSAGE, self.config.resource_key, id=self.entity_id)
            else:
                self.notifier.warning(CACHED_ROW_MESSAGE, self.config.resource_key, id=self.entity_id)
        if policy == FallbackPolicy.RETHROW:
            self.root = RootState(LoadState.ERROR, cached=self.entity is not None, failure=failure)
            raise GatewayError(failure)
        if self.entity is None:
            self.entity = self.placeholder() if policy == FallbackPolicy.RETURN_PLACEHOLDER else {}
        self.root = RootState(LoadState.LOADED, cached=True, failure=failure)
        return self.entity

    async def refresh(self) -> dict:
        return await self.load()

    def title_name(self) -> str:
        e = self.entity or {}
        from_user = read_path(e, "user.name")
        split = " ".join(str(p) for p in (e.get("first_name"), e.get("last_name")) if p).strip()
        best = from_user or split or e.get("name")
        if isinstance(best, str) and best.strip() and best.strip() != "-":
            return best.strip()
        return f"#{dash(e.get(self.config.id_field))}"

    def info_rows(self) -> List[dict]:
        rows = []
        for spec in self.config.fields:
            rows.append(
                {
                    "key": spec.name,
                    "label": spec.title,
                    "value": dash(read_path(self.entity, spec.name)),
                    "editable": self.editor.can_edit(spec.name),
                    "editing": self.editor.field_name == spec.name,
                    "state": self.editor.state.value if self.editor.field_name == spec.name else EditState.VIEWING.value,
                }
            )
        return rows

    # -- tabs --------------------------------------------------------------

    def nav_tabs(self) -> List[str]:
        return [INFORMATION_TAB] + [tab.kind.value for tab in self.config.enabled_tabs()]

    def _tab_config(self, kind: TabKind | str) -> TabConfig | None:
        tab = self.config.tab(kind)
        return tab if tab is not None and tab.enabled else None

    async def activate_tab(self, kind: TabKind | str, *, refresh: bool = False, **params: Any) -> TabState | None:
        """Switch to a tab; fetch it only if enabled and not loaded yet (or on refresh)."""
        if kind == INFORMATION_TAB:
            self.active_tab = INFORMATION_TAB
            return None
        tab = self._tab_config(kind)
        if tab is None:
            return None
        self.active_tab = tab.kind.value
        state = self.tabs[tab.kind]
        if params and params != state.params:
            refresh = True
        task = self._tab_tasks.get(tab.kind)
        if not refresh:
            if task is not None and not task.done():
                return await self._join(tab.kind, task)
            if state.loaded:
                return state
        task = asyncio.ensure_future(self._load_tab(tab, self._generation, params))
        self._tab_tasks[tab.kind] = task
        return await self._join(tab.kind, task)

    async def _join(self, kind: TabKind, task: asyncio.Task) -> TabState | None:
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # navigate_to cancelled the load; the caller itself was not cancelled
            if not task.cancelled():
                raise
        return self.tabs.get(kind)

    async def _load_tab(self, tab: TabConfig, generation: int, params: dict) -> None:
        state = self.tabs[tab.kind]
        state.generation += 1
        mine = state.generation
        state.status = LoadState.LOADING
        state.params = dict(params)

        if tab.list_path is None:
            state.rows = self._tab_fallback_rows(tab)
            state.status = LoadState.LOADED
            state.failure = None
            return

        result = await self.gateway.call(tab.list_path, self.entity_id, query=params or None)
        if generation != self._generation or mine != state.generation:
            logger.info("stale_tab_dropped resource=%s tab=%s", self.config.resource_key, tab.kind.value)
            return
        if result.ok:
            rows = as_list(result.data)
            state.rows = normalize_series(rows) if tab.kind == TabKind.ACTIVITY else rows
            state.status = LoadState.LOADED
            state.failure = None
            return

        logger.warning(
            "tab_load_failed resource=%s tab=%s kind=%s status=%s",
            self.config.resource_key,
            tab.kind.value,
            result.failure.kind.value,
            result.failure.status,
        )
        state.failure = result.failure
        state.status = LoadState.ERROR
        state.rows = self._tab_fallback_rows(tab)

    def _tab_fallback_rows(self, tab: TabConfig) -> List[dict]:
        if tab.fallback == FallbackPolicy.RETURN_PLACEHOLDER:
            return [dict(row) for row in copy.deepcopy(list(tab.placeholder_rows))]
        return []

    def tab_view(self, kind: TabKind | str) -> TabView:
        tab = self.config.tab(kind)
        name = str(getattr(kind, "value", kind))
        if tab is None or not tab.enabled:
            return TabView(
                kind=name,
                enabled=False,
                status=LoadState.DISABLED,
                rows=[],
                columns=[],
                message=f"{name.title()} is not configured for this {self.config.singular}.",
            )
        state = self.tabs[tab.kind]
        columns = [{"key": c.key, "title": c.title} for c in tab.columns]
        message = None
        if state.failure is not None:
            message = f"Could not load {tab.title.lower()}."
        return TabView(tab.kind.value, True, state.status, list(state.rows), columns, message, state.failure)

    def comments_slot(self) -> TabView:
        return self.tab_view(TabKind.COMMUNICATION)

    async def load_activity(self, range_key: str = "30d") -> TabState | None:
        tab = self._tab_config(TabKind.ACTIVITY)
        if tab is None:
            return None
        if tab.ranges and range_key not in tab.ranges:
            range_key = tab.ranges[0]
        return await self.activate_tab(TabKind.ACTIVITY, range=range_key)

    # -- inline edit -------------------------------------------------------

    def begin_edit(self, field_name: str) -> bool:
        if self.entity is None:
            return False
        return self.editor.begin(field_name, read_path(self.entity, field_name))

    def set_pending(self, value: Any) -> bool:
        return self.editor.set_pending(value)

    def cancel_edit(self) -> bool:
        return self.editor.cancel()

    async def commit_edit(self) -> EditOutcome:
        return self._apply_edit(await self.editor.commit())

    async def handle_key(self, key: str) -> EditOutcome | None:
        outcome = await self.editor.handle_key(key)
        if outcome is None:
            return None
        return self._apply_edit(outcome)

    def _apply_edit(self, outcome: EditOutcome) -> EditOutcome:
        if outcome.saved and outcome.field_name:
            try:
                self.entity = write_path(self.entity or {}, outcome.field_name, outcome.value)
            except FieldPathError as exc:
                # saved shape replaces whatever scalar sat on the path
                logger.warning(
                    "edit_path_conflict resource=%s id=%s field=%s error=%s",
                    self.config.resource_key,
                    self.entity_id,
                    outcome.field_name,
                    exc,
                )
                self.entity = {**(self.entity or {}), **nested_payload(outcome.field_name, outcome.value)}
        elif outcome.failure is not None:
            self.notifier.error("Failed to save changes", self.config.resource_key, field=outcome.field_name)
        return outcome

    async def _save_field(self, field_name: str, value: Any) -> GatewayResult:
        return await self.gateway.call(self.config.operations.update, self.entity_id, payload=nested_payload(field_name, value))

    # -- status and delete -------------------------------------------------

    def status_actions(self) -> List[str]:
        return list(STATUS_ACTIONS.keys()) if self.capabilities.can_update_status else []

    async def set_status(self, action_or_status: str) -> bool:
        if not self.capabilities.can_update_status or self.saving:
            return False
        status = STATUS_ACTIONS.get(action_or_status, action_or_status)
        self.saving = True
        try:
            result = await self.gateway.call(
                self.config.operations.update_status,
                self.entity_id,
                payload={self.config.status_field: status},
            )
            if not result.ok:
                logger.warning("status_update_failed resource=%s id=%s status=%s", self.config.resource_key, self.entity_id, status)
                self.notifier.error("Failed to update status", self.config.resource_key, id=self.entity_id)
                return False
            self.notifier.success(f"Status → {status}", self.config.resource_key, id=self.entity_id)
            await self.load()
            return True
        finally:
            self.saving = False

    def can_delete(self) -> bool:
        return self.capabilities.can_remove

    def request_delete(self) -> DeletePrompt | None:
        if not self.capabilities.can_remove:
            return None
        self._delete_pending = True
        return DeletePrompt(
            title=f"Delete {self.config.singular}?",
            message=f"Are you sure you want to delete {self.title_name()}?",
        )

    @property
    def delete_pending(self) -> bool:
        return self._delete_pending

    def cancel_delete(self) -> None:
        self._delete_pending = False

    async def confirm_delete(self) -> bool:
        if not self._delete_pending or not self.capabilities.can_remove:
            return False
        self._delete_pending = False
        result = await self.gateway.call(self.config.operations.remove, self.entity_id)
        if not result.ok:
            logger.warning("delete_failed resource=%s id=%s kind=%s", self.config.resource_key, self.entity_id, result.failure.kind.value)
            self.notifier.error("Failed to delete", self.config.resource_key, id=self.entity_id)
            return False
        self.notifier.success("Deleted", self.config.resource_key, id=self.entity_id)
        if self.navigator is not None:
            self.navigator.go(self.config.route_base or "/")
        return True

    def go_edit(self) -> str:
        path = self.config.edit_route(self.entity_id)
        if self.navigator is not None:
            self.navigator.go(path)
        return path

    def go_back(self) -> None:
        if self.navigator is not None:
            self.navigator.back()

    # -- sub-resources -----------------------------------------------------

    def _local_id(self, kind: TabKind) -> str:
        return f"{_LOCAL_PREFIX.get(kind, 'x')}{self.entity_id}-{int(time.time() * 1000)}"

    async def _create_sub(self, kind: TabKind, payload: dict, local: dict, label: str, **call_kwargs: Any) -> dict | None:
        tab = self._tab_config(kind)
        if tab is None:
            return None
        state = self.tabs[kind]
        if tab.create_path is not None:
            result = await self.gateway.call(tab.create_path, self.entity_id, payload=payload, **call_kwargs)
            if not result.ok:
                self.notifier.error(f"Failed to add {label}", self.config.resource_key, id=self.entity_id)
                return None
            created = unwrap_envelope(result.data)
            if not isinstance(created, dict) or not created:
                created = local
        else:
            created = local
        state.rows = [created] + state.rows
        self.notifier.success(f"{label.capitalize()} added", self.config.resource_key, id=self.entity_id)
        return created

    async def _update_sub(self, kind: TabKind, sub_id: Any, patch: dict, label: str) -> bool:
        tab = self._tab_config(kind)
        if tab is None:
            return False
        server_row = None
        if tab.update_path is not None:
            result = await self.gateway.call(tab.update_path, self.entity_id, sub_id, payload=patch)
            if not result.ok:
                self.notifier.error(f"Failed to update {label}", self.config.resource_key, id=sub_id)
                return False
            data = unwrap_envelope(result.data)
            server_row = data if isinstance(data, dict) and data else None
        state = self.tabs[kind]
        state.rows = [
            ({**row, **(server_row or patch)} if _same_id(row.get("id"), sub_id) else row) for row in state.rows
        ]
        return True

    async def _delete_sub(self, kind: TabKind, sub_id: Any, label: str, success_message: str) -> bool:
        tab = self._tab_config(kind)
        if tab is None:
            return False
        if tab.delete_path is not None:
            result = await self.gateway.call(tab.delete_path, self.entity_id, sub_id)
            if not result.ok:
                self.notifier.error(f"Failed to delete {label}", self.config.resource_key, id=sub_id)
                return False
        state = self.tabs[kind]
        state.rows = [row for row in state.rows if not _same_id(row.get("id"), sub_id)]
        self.notifier.success(success_message, self.config.resource_key, id=sub_id)
        return True

    async def create_task(self, payload: dict) -> dict | None:
        local = {"id": self._local_id(TabKind.TASKS), **payload, "created_at": _now()}
        return await self._create_sub(TabKind.TASKS, payload, local, "task")

    async def update_task(self, task_id: Any, patch: dict) -> bool:
        return await self._update_sub(TabKind.TASKS, task_id, patch, "task")

    async def delete_task(self, task_id: Any) -> bool:
        return await self._delete_sub(TabKind.TASKS, task_id, "task", "Task deleted")

    async def add_comment(self, payload: dict) -> dict | None:
        local = {"id": self._local_id(TabKind.COMMUNICATION), "created_at": _now(), **payload}
        return await self._create_sub(TabKind.COMMUNICATION, payload, local, "comment")

    async def upload_document(self, filename: str, content: bytes, meta: dict | None = None, content_type: str | None = None) -> dict | None:
        meta = dict(meta or {})
        local = {
            "id": self._local_id(TabKind.DOCUMENTS),
            "title": meta.get("title") or filename,
            "description": meta.get("description") or "-",
            "status": meta.get("status") or "uploaded",
            "date": meta.get("date") or _now()[:10],
            "url": "#",
        }
        files = {"file": (filename, content, content_type or "application/octet-stream")}
        return await self._create_sub(TabKind.DOCUMENTS, meta, local, "document", files=files)

    async def delete_document(self, doc_id: Any) -> bool:
        return await self._delete_sub(TabKind.DOCUMENTS, doc_id, "document", "Document removed")

    async def load_doc_comments(self, doc_id: Any) -> List[dict]:
        tab = self._tab_config(TabKind.DOCUMENTS)
        if tab is None:
            return []
        key = str(doc_id)
        if tab.comment_list_path is None:
            self.doc_comments.setdefault(key, [])
            return self.doc_comments[key]
        generation = self._generation
        result = await self.gateway.call(tab.comment_list_path, self.entity_id, doc_id)
        if generation != self._generation:
            return []
        if not result.ok:
            logger.warning("doc_comments_failed resource=%s doc=%s", self.config.resource_key, doc_id)
            self.doc_comments.setdefault(key, [])
            return self.doc_comments[key]
        self.doc_comments[key] = as_list(result.data)
        return self.doc_comments[key]

    async def add_doc_comment(self, doc_id: Any, payload: dict) -> dict | None:
        tab = self._tab_config(TabKind.DOCUMENTS)
        if tab is None:
            return None
        created = {"id": f"dc-{doc_id}-{int(time.time() * 1000)}", "created_at": _now(), **payload}
        if tab.comment_create_path is not None:
            result = await self.gateway.call(tab.comment_create_path, self.entity_id, doc_id, payload=payload)
            if not result.ok:
                self.notifier.error("Failed to add comment", self.config.resource_key, id=doc_id)
                return None
            data = unwrap_envelope(result.data)
            if isinstance(data, dict) and data:
                created = data
        key = str(doc_id)
        self.doc_comments[key] = [created] + self.doc_comments.get(key, [])
        self.notifier.success("Comment added", self.config.resource_key, id=doc_id)
        return created

    # -- snapshot ----------------------------------------------------------

    def view(self) -> dict:
        return {
            "resource_key": self.config.resource_key,
            "id": self.entity_id,
            "title": self.title_name(),
            "entity": self.entity,
            "status": self.root.status.value,
            "cached": self.root.cached,
            "failure": self.root.failure.as_dict() if self.root.failure else None,
            "tabs": self.nav_tabs(),
            "active_tab": self.active_tab,
            "info": self.info_rows(),
            "status_actions": self.status_actions(),
            "can_delete": self.can_delete(),
            "edit_route": self.config.edit_route(self.entity_id),
        }
