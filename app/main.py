"""FastAPI view API over the list and detail engines."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

from app.catalog import default_catalog
from app.db import get_db_stats, reset_db_stats
from app.resources_validate import validate_resource_raw
from app.sessions import Session, SessionCache
from app.stores_db import DbPreferenceStore, reset_org_id, reset_user_id, set_org_id, set_user_id
from detail_engine import DetailEngine
from entkit.field_path import read_path
from list_engine import ExportScope, ListEngine
from preference_store import JsonFilePreferenceStore, MemoryPreferenceStore
from resource_config import INFORMATION_TAB, ResourceConfig, ResourceConfigError, TabKind
from resource_gateway import GatewayError, HttpResourceGateway, MemoryResourceGateway


app = FastAPI(title="Entity Console")
logger = logging.getLogger("entkit.api")
logging.basicConfig(level=logging.INFO)
_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("ENTKIT_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS

APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("ENTKIT_REQ_SLOW_MS", "250"))
USE_DB = os.getenv("USE_DB", "").strip() == "1"
API_BASE_URL = os.getenv("ENTKIT_API_BASE_URL", "").strip()
API_TOKEN = os.getenv("ENTKIT_API_TOKEN", "").strip() or None
API_TIMEOUT = float(os.getenv("ENTKIT_API_TIMEOUT", "30"))
PREFS_PATH = os.getenv("ENTKIT_PREFS_PATH", "").strip()
RESOURCES_PATH = os.getenv("ENTKIT_RESOURCES_PATH", "").strip()
SEARCH_DEBOUNCE_S = float(os.getenv("ENTKIT_SEARCH_DEBOUNCE_MS", "300")) / 1000.0
SESSION_TTL_S = float(os.getenv("ENTKIT_SESSION_TTL_S", "1800"))
SESSION_MAX_DETAILS = int(os.getenv("ENTKIT_SESSION_MAX_DETAILS", "20"))

if API_BASE_URL:
    gateway = HttpResourceGateway(API_BASE_URL, token=API_TOKEN, timeout=API_TIMEOUT)
else:
    gateway = MemoryResourceGateway()
    logger.info("gateway=memory (ENTKIT_API_BASE_URL not set)")

if USE_DB:
    preferences = DbPreferenceStore()
elif PREFS_PATH:
    preferences = JsonFilePreferenceStore(PREFS_PATH)
else:
    preferences = MemoryPreferenceStore()

catalog = default_catalog()
if RESOURCES_PATH:
    loaded = catalog.load_file(RESOURCES_PATH)
    logger.info("resources_loaded path=%s count=%s", RESOURCES_PATH, loaded)

sessions = SessionCache(ttl_s=SESSION_TTL_S, max_details=SESSION_MAX_DETAILS)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_q=%s db_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_stats.get("queries", 0),
        db_stats.get("total_ms", 0.0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-Route"] = route_name
    return response


class UserContextMiddleware(BaseHTTPMiddleware):
    """Binds the caller's org and user for preference scoping."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in {"/health"}:
            return await call_next(request)
        org_token = set_org_id(request.headers.get("X-Org-Id") or "default")
        user_token = set_user_id(request.headers.get("X-User-Id") or "anonymous")
        try:
            return await call_next(request)
        finally:
            reset_user_id(user_token)
            reset_org_id(org_token)


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=_LOCAL_CORS_REGEX.pattern,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(UserContextMiddleware)


@app.on_event("startup")
async def _startup() -> None:
    if USE_DB:
        preferences.ensure_schema()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await gateway.aclose()


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    return _error_response("UPSTREAM_ERROR", exc.failure.message, detail=exc.failure.as_dict(), status=502)


@app.exception_handler(ResourceConfigError)
async def resource_config_exception_handler(request: Request, exc: ResourceConfigError):
    return _error_response(exc.code, exc.message, exc.path, status=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _session(request: Request) -> Session:
    return sessions.get(request.headers.get("X-Session-Id"))


def _config(key: str) -> ResourceConfig | JSONResponse:
    config = catalog.get(key)
    if config is None:
        return _error_response("RESOURCE_NOT_FOUND", f"Unknown resource {key!r}", "key", status=404)
    return config


def _bool_param(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _with_notifications(session: Session, payload: dict) -> dict:
    payload["notifications"] = [n.as_dict() for n in session.notifier.drain()]
    payload["location"] = session.navigator.current
    return payload


async def _list_engine(request: Request, config: ResourceConfig, refresh: bool = False) -> ListEngine:
    session = _session(request)

    def _factory(s: Session) -> ListEngine:
        return ListEngine(
            config,
            gateway,
            preferences,
            notifier=s.notifier,
            navigator=s.navigator,
            search_debounce=SEARCH_DEBOUNCE_S,
        )

    engine, created = sessions.list_engine(session, config.resource_key, _factory)
    if created or refresh:
        await engine.load()
    return engine


def _prefill(session: Session, config: ResourceConfig, entity_id: str) -> dict | None:
    engine = session.lists.get(config.resource_key)
    if engine is None:
        return None
    for row in engine.rows:
        if str(read_path(row, config.id_field)) == entity_id:
            return row
    return None


async def _detail_engine(request: Request, config: ResourceConfig, entity_id: str, refresh: bool = False) -> DetailEngine:
    session = _session(request)

    def _factory(s: Session) -> DetailEngine:
        return DetailEngine(
            config,
            gateway,
            entity_id,
            notifier=s.notifier,
            navigator=s.navigator,
            prefill=_prefill(s, config, entity_id),
        )

    engine, created = sessions.detail_engine(session, config.resource_key, entity_id, _factory)
    if created or refresh:
        await engine.load()
    return engine


def _tab_enabled(config: ResourceConfig, kind: TabKind) -> bool:
    tab = config.tab(kind)
    return tab is not None and tab.enabled


def _tab_disabled_response(config: ResourceConfig, kind: TabKind) -> JSONResponse:
    return _error_response(
        "TAB_NOT_CONFIGURED",
        f"{kind.value.title()} is not configured for {config.resource_key}",
        "tab",
        status=400,
    )


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/notifications")
async def list_notifications(request: Request):
    session = _session(request)
    return _ok_response({"notifications": [n.as_dict() for n in session.notifier.drain()]})


# -- resource catalog -------------------------------------------------------


def _resource_summary(config: ResourceConfig) -> dict:
    return {
        "key": config.resource_key,
        "title_singular": config.title_singular,
        "title_plural": config.title_plural,
        "route_base": config.route_base,
        "capabilities": config.capabilities.as_dict(),
        "tabs": [INFORMATION_TAB] + [tab.kind.value for tab in config.enabled_tabs()],
        "segments": [{"key": s.key, "label": s.label} for s in config.segments],
        "filters": [{"name": f.name, "allowed": list(f.allowed)} for f in config.filters],
        "status_options": list(config.status_options) if config.status_filter else [],
        "page_sizes": list(config.page_sizes),
    }


@app.get("/resources")
async def list_resources():
    return _ok_response({"resources": [_resource_summary(c) for c in catalog.all()]})


@app.post("/resources/validate")
async def validate_resource_definition(request: Request):
    body = await _safe_json(request)
    normalized, errors, warnings = validate_resource_raw(body)
    return JSONResponse(
        jsonable_encoder({"ok": not errors, "normalized": normalized, "errors": errors, "warnings": warnings}),
        status_code=200,
    )


@app.post("/resources")
async def register_resource(request: Request):
    body = await _safe_json(request)
    config, errors, warnings = catalog.load_definition(body)
    if config is None:
        return JSONResponse(jsonable_encoder({"ok": False, "errors": errors, "warnings": warnings}), status_code=400)
    logger.info("resource_registered key=%s", config.resource_key)
    return _ok_response({"resource": _resource_summary(config)}, warnings=warnings, status=201)


# -- list view ----------------------------------------------------------------


@app.get("/resources/{key}/rows")
async def list_rows(
    key: str,
    request: Request,
    q: str | None = None,
    status: str | None = None,
    segment: str | None = None,
    page: int = 1,
    refresh: str | None = None,
):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    engine = await _list_engine(request, config, refresh=_bool_param(refresh))
    if q is not None:
        engine.apply_search(q)
    if status is not None:
        engine.set_status_filter(status)
    if segment is not None and not engine.set_segment(segment):
        return _error_response("SEGMENT_INVALID", f"Unknown segment {segment!r}", "segment", status=400)
    return _ok_response(_with_notifications(_session(request), engine.view(max(page, 1))))


@app.post("/resources/{key}/reset")
async def reset_list(key: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    engine = await _list_engine(request, config)
    await engine.reset()
    return _ok_response(_with_notifications(_session(request), engine.view()))


@app.put("/resources/{key}/columns")
async def set_columns(key: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    body = await _safe_json(request)
    columns = body.get("columns")
    if not isinstance(columns, list):
        return _error_response("COLUMNS_REQUIRED", "columns must be a list", "columns", status=400)
    engine = await _list_engine(request, config)
    visible = engine.set_visible_columns([c for c in columns if isinstance(c, str)])
    return _ok_response({"visible_columns": visible})


@app.post("/resources/{key}/columns/{column}/toggle")
async def toggle_column(key: str, column: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if config.field(column) is None:
        return _error_response("COLUMN_NOT_FOUND", f"Unknown column {column!r}", "column", status=404)
    engine = await _list_engine(request, config)
    return _ok_response({"visible_columns": engine.toggle_column(column)})


@app.put("/resources/{key}/page_size")
async def set_page_size(key: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    body = await _safe_json(request)
    engine = await _list_engine(request, config)
    size = body.get("page_size")
    if not isinstance(size, int) or not engine.set_page_size(size):
        return _error_response(
            "PAGE_SIZE_INVALID",
            "page_size must be one of the allowed sizes",
            "page_size",
            {"allowed": list(config.page_sizes)},
            status=400,
        )
    return _ok_response({"page_size": engine.page_size})


@app.put("/resources/{key}/sort")
async def set_sort(key: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    body = await _safe_json(request)
    engine = await _list_engine(request, config)
    column = body.get("column")
    if column is None:
        engine.clear_sort()
    else:
        spec = config.field(column) if isinstance(column, str) else None
        if spec is None or not spec.sortable:
            return _error_response("SORT_COLUMN_INVALID", f"Cannot sort by {column!r}", "column", status=400)
        engine.sort_by(column, body.get("direction"))
    return _ok_response({"sort": engine.sort.as_pref() if engine.sort.explicit else None})


@app.put("/resources/{key}/filters/{name}")
async def set_filter(key: str, name: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    body = await _safe_json(request)
    engine = await _list_engine(request, config)
    value = body.get("value")
    if value is not None and not isinstance(value, str):
        return _error_response("FILTER_VALUE_INVALID", "value must be a string or null", "value", status=400)
    if not engine.set_filter(name, value):
        return _error_response("FILTER_INVALID", f"Unknown filter or value for {name!r}", "value", status=400)
    return _ok_response({"filters": dict(engine.filters)})


@app.get("/resources/{key}/export")
async def export_rows(key: str, request: Request, scope: str = "filtered"):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    try:
        scope_value = ExportScope(scope)
    except ValueError:
        return _error_response("EXPORT_SCOPE_INVALID", "scope must be 'all' or 'filtered'", "scope", status=400)
    engine = await _list_engine(request, config)
    export = engine.export_csv(scope_value)
    return Response(
        content=export.encode(),
        media_type=export.media_type,
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@app.post("/resources/{key}/bulk/status")
async def bulk_status(key: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not config.capabilities.can_update_status:
        return _error_response("OPERATION_NOT_SUPPORTED", "Status updates are not available", "update_status", status=400)
    body = await _safe_json(request)
    ids = body.get("ids")
    status = body.get("status") or body.get("action")
    if not isinstance(ids, list) or not ids or not isinstance(status, str):
        return _error_response("BULK_INVALID", "ids (list) and status are required", "ids", status=400)
    engine = await _list_engine(request, config)
    outcome = await engine.bulk_update_status(ids, status)
    return _ok_response(_with_notifications(_session(request), {"result": outcome.as_dict()}))


@app.post("/resources/{key}/bulk/delete")
async def bulk_delete(key: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not config.capabilities.can_remove:
        return _error_response("OPERATION_NOT_SUPPORTED", "Delete is not available", "remove", status=400)
    body = await _safe_json(request)
    ids = body.get("ids")
    if not isinstance(ids, list) or not ids:
        return _error_response("BULK_INVALID", "ids (list) is required", "ids", status=400)
    engine = await _list_engine(request, config)
    outcome = await engine.bulk_delete(ids)
    return _ok_response(_with_notifications(_session(request), {"result": outcome.as_dict()}))


@app.delete("/resources/{key}/rows/{entity_id}")
async def delete_row(key: str, entity_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not config.capabilities.can_remove:
        return _error_response("OPERATION_NOT_SUPPORTED", "Delete is not available", "remove", status=400)
    engine = await _list_engine(request, config)
    deleted = await engine.delete_row(entity_id)
    payload = _with_notifications(_session(request), {"deleted": deleted})
    if not deleted:
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    return _ok_response(payload)


# -- detail view --------------------------------------------------------------


@app.get("/resources/{key}/{entity_id}")
async def get_detail(key: str, entity_id: str, request: Request, refresh: str | None = None):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    engine = await _detail_engine(request, config, entity_id, refresh=_bool_param(refresh))
    return _ok_response(_with_notifications(_session(request), engine.view()))


@app.get("/resources/{key}/{entity_id}/tabs/{tab}")
async def get_tab(
    key: str,
    entity_id: str,
    tab: str,
    request: Request,
    refresh: str | None = None,
    range_key: str | None = Query(None, alias="range"),
):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if tab != INFORMATION_TAB and tab not in {k.value for k in TabKind}:
        return _error_response("TAB_NOT_FOUND", f"Unknown tab {tab!r}", "tab", status=404)
    engine = await _detail_engine(request, config, entity_id)
    if tab == INFORMATION_TAB:
        await engine.activate_tab(INFORMATION_TAB)
        return _ok_response(_with_notifications(_session(request), {"tab": tab, "rows": engine.info_rows()}))
    if tab == TabKind.ACTIVITY.value and range_key is not None:
        await engine.load_activity(range_key)
    else:
        await engine.activate_tab(tab, refresh=_bool_param(refresh))
    return _ok_response(_with_notifications(_session(request), {"tab": engine.tab_view(tab).as_dict()}))


@app.patch("/resources/{key}/{entity_id}/fields/{field_name}")
async def patch_field(key: str, entity_id: str, field_name: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    body = await _safe_json(request)
    if "value" not in body:
        return _error_response("VALUE_REQUIRED", "value is required", "value", status=400)
    engine = await _detail_engine(request, config, entity_id)
    if not engine.begin_edit(field_name):
        return _error_response("FIELD_NOT_EDITABLE", f"{field_name!r} cannot be edited", field_name, status=400)
    engine.set_pending(body.get("value"))
    outcome = await engine.commit_edit()
    session = _session(request)
    if outcome.validation_error:
        engine.cancel_edit()
        return _error_response("FIELD_INVALID", outcome.validation_error, field_name, status=422)
    if outcome.failure is not None:
        return _error_response("SAVE_FAILED", outcome.failure.message, field_name, outcome.failure.as_dict(), status=502)
    return _ok_response(_with_notifications(session, engine.view()))


@app.post("/resources/{key}/{entity_id}/status")
async def set_status(key: str, entity_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not config.capabilities.can_update_status:
        return _error_response("OPERATION_NOT_SUPPORTED", "Status updates are not available", "update_status", status=400)
    body = await _safe_json(request)
    value = body.get("action") or body.get("status")
    if not isinstance(value, str) or not value.strip():
        return _error_response("STATUS_REQUIRED", "action or status is required", "status", status=400)
    engine = await _detail_engine(request, config, entity_id)
    changed = await engine.set_status(value.strip())
    payload = _with_notifications(_session(request), {"changed": changed, **engine.view()})
    if not changed:
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    return _ok_response(payload)


@app.delete("/resources/{key}/{entity_id}")
async def delete_detail(key: str, entity_id: str, request: Request, action: str = "prompt"):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not config.capabilities.can_remove:
        return _error_response("OPERATION_NOT_SUPPORTED", "Delete is not available", "remove", status=400)
    session = _session(request)
    engine = await _detail_engine(request, config, entity_id)
    if action == "prompt":
        prompt = engine.request_delete()
        return _ok_response({"confirm_required": True, "prompt": {"title": prompt.title, "message": prompt.message}})
    if action == "cancel":
        engine.cancel_delete()
        return _ok_response({"cancelled": True})
    if action != "confirm":
        return _error_response("DELETE_ACTION_INVALID", "action must be prompt, confirm or cancel", "action", status=400)
    if not engine.delete_pending:
        return _error_response("DELETE_NOT_CONFIRMED", "Request a delete prompt first", "action", status=409)
    deleted = await engine.confirm_delete()
    if not deleted:
        payload = _with_notifications(session, {"deleted": False})
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    session.details.pop((config.resource_key, entity_id), None)
    listing = session.lists.get(config.resource_key)
    if listing is not None:
        listing.drop_rows([entity_id])
    return _ok_response(_with_notifications(session, {"deleted": True}))


# -- sub-resources ------------------------------------------------------------


def _created_response(session: Session, item: dict | None, label: str) -> JSONResponse:
    if item is None:
        payload = _with_notifications(session, {label: None})
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    return _ok_response(_with_notifications(session, {label: item}), status=201)


@app.post("/resources/{key}/{entity_id}/tasks")
async def create_task(key: str, entity_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.TASKS):
        return _tab_disabled_response(config, TabKind.TASKS)
    body = await _safe_json(request)
    if not isinstance(body.get("title"), str) or not body["title"].strip():
        return _error_response("TASK_TITLE_REQUIRED", "title is required", "title", status=400)
    engine = await _detail_engine(request, config, entity_id)
    await engine.activate_tab(TabKind.TASKS)
    return _created_response(_session(request), await engine.create_task(body), "task")


@app.patch("/resources/{key}/{entity_id}/tasks/{task_id}")
async def update_task(key: str, entity_id: str, task_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.TASKS):
        return _tab_disabled_response(config, TabKind.TASKS)
    body = await _safe_json(request)
    engine = await _detail_engine(request, config, entity_id)
    await engine.activate_tab(TabKind.TASKS)
    updated = await engine.update_task(task_id, body)
    payload = _with_notifications(_session(request), {"updated": updated, "tab": engine.tab_view(TabKind.TASKS).as_dict()})
    if not updated:
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    return _ok_response(payload)


@app.delete("/resources/{key}/{entity_id}/tasks/{task_id}")
async def delete_task(key: str, entity_id: str, task_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.TASKS):
        return _tab_disabled_response(config, TabKind.TASKS)
    engine = await _detail_engine(request, config, entity_id)
    await engine.activate_tab(TabKind.TASKS)
    deleted = await engine.delete_task(task_id)
    payload = _with_notifications(_session(request), {"deleted": deleted})
    if not deleted:
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    return _ok_response(payload)


@app.post("/resources/{key}/{entity_id}/comments")
async def add_comment(key: str, entity_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.COMMUNICATION):
        return _tab_disabled_response(config, TabKind.COMMUNICATION)
    body = await _safe_json(request)
    if not isinstance(body.get("text"), str) or not body["text"].strip():
        return _error_response("COMMENT_TEXT_REQUIRED", "text is required", "text", status=400)
    engine = await _detail_engine(request, config, entity_id)
    await engine.activate_tab(TabKind.COMMUNICATION)
    return _created_response(_session(request), await engine.add_comment(body), "comment")


@app.post("/resources/{key}/{entity_id}/documents")
async def upload_document(
    key: str,
    entity_id: str,
    request: Request,
    file: UploadFile = File(...),
    title: str | None = Form(None),
    description: str | None = Form(None),
    status: str | None = Form(None),
    date: str | None = Form(None),
):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.DOCUMENTS):
        return _tab_disabled_response(config, TabKind.DOCUMENTS)
    data = await file.read()
    meta = {k: v for k, v in {"title": title, "description": description, "status": status, "date": date}.items() if v}
    engine = await _detail_engine(request, config, entity_id)
    await engine.activate_tab(TabKind.DOCUMENTS)
    item = await engine.upload_document(file.filename or "upload", data, meta, file.content_type)
    return _created_response(_session(request), item, "document")


@app.delete("/resources/{key}/{entity_id}/documents/{doc_id}")
async def delete_document(key: str, entity_id: str, doc_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.DOCUMENTS):
        return _tab_disabled_response(config, TabKind.DOCUMENTS)
    engine = await _detail_engine(request, config, entity_id)
    await engine.activate_tab(TabKind.DOCUMENTS)
    deleted = await engine.delete_document(doc_id)
    payload = _with_notifications(_session(request), {"deleted": deleted})
    if not deleted:
        return JSONResponse(jsonable_encoder({"ok": False, **payload, "errors": [], "warnings": []}), status_code=502)
    return _ok_response(payload)


@app.get("/resources/{key}/{entity_id}/documents/{doc_id}/comments")
async def list_doc_comments(key: str, entity_id: str, doc_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.DOCUMENTS):
        return _tab_disabled_response(config, TabKind.DOCUMENTS)
    engine = await _detail_engine(request, config, entity_id)
    comments = await engine.load_doc_comments(doc_id)
    return _ok_response(_with_notifications(_session(request), {"comments": comments}))


@app.post("/resources/{key}/{entity_id}/documents/{doc_id}/comments")
async def add_doc_comment(key: str, entity_id: str, doc_id: str, request: Request):
    config = _config(key)
    if isinstance(config, JSONResponse):
        return config
    if not _tab_enabled(config, TabKind.DOCUMENTS):
        return _tab_disabled_response(config, TabKind.DOCUMENTS)
    body = await _safe_json(request)
    if not isinstance(body.get("text"), str) or not body["text"].strip():
        return _error_response("COMMENT_TEXT_REQUIRED", "text is required", "text", status=400)
    engine = await _detail_engine(request, config, entity_id)
    return _created_response(_session(request), await engine.add_doc_comment(doc_id, body), "comment")

