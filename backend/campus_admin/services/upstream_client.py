"""Client for the university data server (the external data-access layer)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from campus_admin.core.config import get_settings
from campus_admin.core.errors import GENERIC_SERVER_MESSAGE, ServerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    collection: str
    item: Optional[str]
    status_suffix: Optional[str] = "/status"

    @property
    def needs_parent(self) -> bool:
        return "{parent_id}" in self.collection

    def collection_path(self, parent_id: Any = None) -> str:
        if not self.needs_parent:
            return self.collection
        if parent_id is None:
            raise ValueError(f"{self.collection} needs a parent record id")
        return self.collection.format(parent_id=parent_id)


ENDPOINTS: dict[str, Endpoint] = {
    "activity": Endpoint("/api/admin/activities", "/api/admin/activities"),
    "activity_participant": Endpoint("/api/admin/activities/{parent_id}/participants", None, None),
    "department": Endpoint("/api/admin/departments/stats/all", "/api/admin/departments", None),
    "student": Endpoint("/api/admin/students", "/api/admin/students"),
    "teacher": Endpoint("/api/admin/teachers", "/api/admin/teachers"),
    "staff": Endpoint("/api/admin/staff", "/api/admin/staff"),
    "audit_event": Endpoint("/api/dataedit/search", "/api/dataedit", None),
    "timestamp": Endpoint("/api/timestamp/website/get", None, None),
}


def _unwrap(body: Any) -> Any:
    """Strip the server's ``{status, data, message}`` envelope."""
    if not isinstance(body, dict):
        return body
    flag = body.get("status", body.get("success"))
    if flag is False:
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            message = GENERIC_SERVER_MESSAGE
        raise ServerError(message, status_code=400)
    if "data" in body:
        return body["data"]
    return body


class UpstreamClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.upstream_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.upstream_timeout_seconds
        self.headers = {"X-Requested-With": "XMLHttpRequest"}
        if headers:
            self.headers.update(headers)
        self.transport = transport

    def endpoint(self, kind: str) -> Endpoint:
        endpoint = ENDPOINTS.get(kind)
        if endpoint is None:
            raise ValueError(f"Unknown entity kind: {kind}")
        return endpoint

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            resp = await client.request(method, path, params=params, json=json, headers=self.headers)
            resp.raise_for_status()
            if not resp.content:
                return None
            try:
                body = resp.json()
            except ValueError as exc:
                logger.warning("Upstream returned non-JSON body path=%s status=%s", path, resp.status_code)
                raise ServerError(GENERIC_SERVER_MESSAGE, status_code=502) from exc
        return _unwrap(body)

    def _item_path(self, kind: str, entity_id: Any) -> str:
        item = self.endpoint(kind).item
        if item is None:
            raise ServerError("This record type cannot be opened on its own", status_code=404)
        return f"{item}/{entity_id}"

    async def fetch_collection(
        self,
        kind: str,
        params: Optional[dict[str, Any]] = None,
        *,
        parent_id: Any = None,
    ) -> list[Any]:
        path = self.endpoint(kind).collection_path(parent_id)
        data = await self._request("GET", path, params=params)
        if isinstance(data, dict):
            # Some listings nest the rows one level deeper.
            for key in ("items", "rows", "results"):
                if isinstance(data.get(key), list):
                    return data[key]
        if not isinstance(data, list):
            logger.warning("Upstream collection is not a list kind=%s", kind)
            return []
        return data

    async def fetch_one(self, kind: str, entity_id: Any) -> Any:
        return await self._request("GET", self._item_path(kind, entity_id))

    async def add(self, kind: str, payload: dict[str, Any]) -> Any:
        item = self.endpoint(kind).item
        if item is None:
            raise ServerError("Records of this type cannot be added here", status_code=400)
        return await self._request("POST", item, json=payload)

    async def mutate(self, kind: str, entity_id: Any, payload: dict[str, Any]) -> Any:
        return await self._request("PUT", self._item_path(kind, entity_id), json=payload)

    async def delete(self, kind: str, entity_id: Any) -> Any:
        return await self._request("DELETE", self._item_path(kind, entity_id))

    async def toggle_status(self, kind: str, entity_id: Any, is_active: bool) -> Any:
        endpoint = self.endpoint(kind)
        if endpoint.status_suffix is None:
            raise ServerError("This record has no status to change", status_code=400)
        return await self._request(
            "PATCH",
            f"{self._item_path(kind, entity_id)}{endpoint.status_suffix}",
            json={"isActive": bool(is_active)},
        )
