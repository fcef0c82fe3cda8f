"""Tududi task-manager client.

The Tududi API is not consistent about its payload shapes: task lists may be
wrapped in ``{"tasks": [...]}``, priority and status may be numeric codes,
and tags may arrive under ``Tags``. Everything is normalised into
:class:`~tasksync.engine.types.Task` at this boundary.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from tasksync.clients.http import send_with_retry
from tasksync.engine.types import Task

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"done", "archived", "cancelled"})

_PRIORITY_CODES = {0: "low", 1: "medium", 2: "high"}
_STATUS_CODES = {
    0: "not_started",
    1: "in_progress",
    2: "done",
    3: "archived",
    4: "waiting",
    5: "cancelled",
    6: "planned",
}


class TududiError(RuntimeError):
    """Base error raised by the Tududi client."""


class TududiRequestError(TududiError):
    """Raised when the Tududi API answers with a non-success status."""

    def __init__(self, *, status_code: int, reason: str, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Tududi API error: {status_code} {reason} - {body}")


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def normalize_task(payload: dict[str, Any]) -> Task:
    """Translate a raw Tududi task payload into a :class:`Task`."""
    data = dict(payload)
    if data.get("uid") is not None:
        data["uid"] = str(data["uid"])

    priority = data.get("priority")
    if isinstance(priority, int) and not isinstance(priority, bool):
        data["priority"] = _PRIORITY_CODES.get(priority, "medium")
    elif priority is None:
        data.pop("priority", None)

    status = data.get("status")
    if isinstance(status, int) and not isinstance(status, bool):
        data["status"] = _STATUS_CODES.get(status, "not_started")
    elif status is None:
        data.pop("status", None)

    data["tags"] = data.get("tags") or data.get("Tags") or []

    project = data.get("project")
    if isinstance(project, dict):
        if project.get("uid") is not None:
            data.setdefault("project_uid", str(project["uid"]))
        if project.get("importance") is not None:
            data.setdefault("project_importance", project.get("importance"))
    elif data.get("project_id") is not None:
        data.setdefault("project_uid", str(data["project_id"]))

    try:
        return Task.model_validate(data)
    except ValidationError as exc:
        raise TududiError(f"Tududi returned a malformed task: {exc}") from exc


class TududiClient:
    """Bearer-authenticated Tududi REST client."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        async def send() -> httpx.Response:
            return await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )

        try:
            response = await send_with_retry(send, service="Tududi")
        except httpx.TransportError as exc:
            raise TududiError(f"Tududi request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TududiRequestError(
                status_code=response.status_code,
                reason=response.reason_phrase,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TududiError(f"Tududi returned invalid JSON for {method} {path}") from exc

    async def list_tasks(
        self,
        *,
        status: str | None = None,
        project_id: str | None = None,
    ) -> list[Task]:
        params: dict[str, Any] = {}
        if status is not None:
            params["status"] = status
        if project_id is not None:
            params["project_id"] = project_id

        payload = await self._request_json("GET", "/tasks", params=params or None)
        items = payload.get("tasks") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise TududiError("Tududi task list response is not an array")

        tasks = [normalize_task(item) for item in items if isinstance(item, dict)]
        logger.debug("Fetched %d tasks from Tududi", len(tasks))
        return tasks

    async def get_task(self, uid: str) -> Task:
        payload = await self._request_json("GET", f"/task/{quote(uid, safe='')}")
        if not isinstance(payload, dict):
            raise TududiError("Tududi task response is not an object")
        return normalize_task(payload)

    async def update_task(
        self,
        uid: str,
        *,
        name: str | None = None,
        status: str | None = None,
    ) -> Task:
        updates: dict[str, Any] = {}
        if name is not None:
            updates["name"] = name
        if status is not None:
            updates["status"] = status
        if not updates:
            raise ValueError("update_task requires at least one field")

        payload = await self._request_json(
            "PATCH", f"/task/{quote(uid, safe='')}", json_body=updates
        )
        if not isinstance(payload, dict):
            raise TududiError("Tududi update response is not an object")
        return normalize_task(payload)

    async def list_projects(self) -> list[dict[str, Any]]:
        payload = await self._request_json("GET", "/projects")
        items = payload.get("projects") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise TududiError("Tududi project list response is not an array")
        return [item for item in items if isinstance(item, dict)]

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
