"""Network boundary for the engines: typed results instead of exceptions."""

from __future__ import annotations

import copy
import inspect
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple

import httpx

from resource_config import Endpoint


logger = logging.getLogger("entkit.gateway")


class FailureKind(str, Enum):
    MISSING_ENDPOINT = "missing_endpoint"
    NOT_FOUND = "not_found"
    CLIENT = "client"
    SERVER = "server"
    NETWORK = "network"
    DECODE = "decode"


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    status: int | None = None
    detail: Any = None

    @property
    def is_not_found(self) -> bool:
        return self.kind == FailureKind.NOT_FOUND

    def as_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "status": self.status}


@dataclass(frozen=True)
class GatewayResult:
    data: Any = None
    failure: Failure | None = None
    status: int | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class GatewayError(Exception):
    """Raised only where a resource opts into the ``rethrow`` fallback policy."""

    failure: Failure

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.failure.kind.value}: {self.failure.message}"


def success(data: Any = None, status: int | None = 200) -> GatewayResult:
    return GatewayResult(data=data, status=status)


def failed(kind: FailureKind, message: str, status: int | None = None, detail: Any = None) -> GatewayResult:
    return GatewayResult(failure=Failure(kind, message, status, detail), status=status)


def failure_for_status(status: int, detail: Any = None) -> GatewayResult:
    if status == 404:
        return failed(FailureKind.NOT_FOUND, "Record not found", status, detail)
    if status >= 500:
        return failed(FailureKind.SERVER, f"Server error ({status})", status, detail)
    return failed(FailureKind.CLIENT, f"Request rejected ({status})", status, detail)


def unwrap_envelope(data: Any) -> Any:
    """``{"data": x}`` -> ``x``; anything else is returned unchanged."""
    if isinstance(data, dict) and "data" in data:
        return data["data"]
    return data


def as_list(data: Any) -> list:
    data = unwrap_envelope(data)
    return list(data) if isinstance(data, list) else []


def clean_query(query: dict | None) -> dict:
    if not query:
        return {}
    return {k: v for k, v in query.items() if v is not None and v != ""}


class ResourceGateway:
    """Base gateway. Subclasses implement ``request``; ``call`` resolves endpoints."""

    async def call(
        self,
        endpoint: Endpoint | None,
        *ids: Any,
        payload: Any = None,
        query: dict | None = None,
        files: dict | None = None,
    ) -> GatewayResult:
        if endpoint is None:
            return failed(FailureKind.MISSING_ENDPOINT, "Operation not configured")
        path = endpoint.build(*ids)
        return await self.request(endpoint.method, path, payload=payload, query=clean_query(query), files=files)

    async def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        query: dict | None = None,
        files: dict | None = None,
    ) -> GatewayResult:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class HttpResourceGateway(ResourceGateway):
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        cookies: dict | None = None,
        headers: dict | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        merged = {"Accept": "application/json"}
        if token:
            merged["Authorization"] = f"Bearer {token}"
        merged.update(headers or {})
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=merged,
            cookies=cookies,
            timeout=timeout,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        query: dict | None = None,
        files: dict | None = None,
    ) -> GatewayResult:
        kwargs: dict = {"params": query or None}
        if files:
            kwargs["files"] = files
            kwargs["data"] = {k: "" if v is None else str(v) for k, v in (payload or {}).items()}
        elif payload is not None and method.upper() != "GET":
            kwargs["json"] = payload
        try:
            res = await self._client.request(method.upper(), path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("gateway_network_error method=%s path=%s error=%s", method, path, exc)
            return failed(FailureKind.NETWORK, str(exc) or exc.__class__.__name__)

        body = _decode_body(res)
        if res.status_code >= 400:
            logger.info("gateway_http_error method=%s path=%s status=%s", method, path, res.status_code)
            return failure_for_status(res.status_code, body if body is not _UNDECODABLE else res.text)
        if body is _UNDECODABLE:
            return failed(FailureKind.DECODE, "Response body is not valid JSON", res.status_code, res.text[:200])
        return success(body, res.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()


_UNDECODABLE = object()


def _decode_body(res: httpx.Response) -> Any:
    if res.status_code == 204 or not res.content or not res.content.strip():
        return None
    try:
        return res.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _UNDECODABLE


Handler = Callable[..., Any]


@dataclass
class _Route:
    response: Any = None
    status: int = 200
    handler: Handler | None = None


@dataclass
class RecordedCall:
    method: str
    path: str
    payload: Any = None
    query: dict = field(default_factory=dict)
    files: dict | None = None


class MemoryResourceGateway(ResourceGateway):
    """Scripted in-memory backend.

    Routes map ``(METHOD, path)`` to a canned response, an error status, or a
    handler ``handler(payload, query)`` that may be async and may return a
    ``GatewayResult``. Unrouted requests fail as ``NOT_FOUND``.
    """

    def __init__(self) -> None:
        self._routes: Dict[Tuple[str, str], _Route] = {}
        self.calls: List[RecordedCall] = []

    def route(self, method: str, path: str, response: Any = None, *, status: int = 200, handler: Handler | None = None) -> None:
        self._routes[(method.upper(), path)] = _Route(copy.deepcopy(response), status, handler)

    def unroute(self, method: str, path: str) -> None:
        self._routes.pop((method.upper(), path), None)

    def calls_to(self, method: str, path: str | None = None) -> List[RecordedCall]:
        return [c for c in self.calls if c.method == method.upper() and (path is None or c.path == path)]

    async def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        query: dict | None = None,
        files: dict | None = None,
    ) -> GatewayResult:
        method = method.upper()
        self.calls.append(RecordedCall(method, path, copy.deepcopy(payload), dict(query or {}), files))
        route = self._routes.get((method, path))
        if route is None:
            return failure_for_status(404)
        if route.handler is not None:
            value = route.handler(copy.deepcopy(payload), dict(query or {}))
            if inspect.isawaitable(value):
                value = await value
            if isinstance(value, GatewayResult):
                return value
            return success(copy.deepcopy(value))
        if route.status >= 400:
            return failure_for_status(route.status, route.response)
        return success(copy.deepcopy(route.response), route.status)
