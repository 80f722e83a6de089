"""Async automation engine (n8n-compatible) REST API client using httpx."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from autoflow_agent.client.config import EngineSettings

logger = logging.getLogger("autoflow_agent.client")


class EngineError(Exception):
    """Raised by callers that need an exception instead of an error dict.

    Mirrors the error dict shape returned by EngineClient helpers so the
    original status code and detail survive the conversion.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: str | None = None,
        timeout: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.timeout = timeout

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "status_code": self.status_code,
            "detail": self.detail,
            "timeout": self.timeout,
        }


def is_engine_error(result: Any) -> bool:
    """True when an EngineClient call returned an error dict."""
    return isinstance(result, dict) and "error" in result


def error_message(result: dict[str, Any]) -> str:
    """Best human-readable message from an error dict.

    Prefers the engine's own "message" field (parsed from the JSON body),
    then the raw detail text, then the short error label.
    """
    return str(result.get("message") or result.get("detail") or result.get("error") or "")


def raise_for_engine_error(result: Any, action: str) -> Any:
    """Return result unchanged, or raise EngineError if it is an error dict."""
    if is_engine_error(result):
        raise EngineError(
            f"{action} failed: {error_message(result)}",
            status_code=result.get("status_code"),
            detail=result.get("detail"),
            timeout=bool(result.get("timeout")),
        )
    return result


def _http_error(method: str, path: str, e: httpx.HTTPStatusError) -> dict[str, Any]:
    status = e.response.status_code
    text = e.response.text
    logger.error("%s %s -> %s", method, path, status)
    err: dict[str, Any] = {"error": f"HTTP {status}", "status_code": status, "detail": text}
    try:
        body = json.loads(text) if text else None
    except (json.JSONDecodeError, TypeError):
        body = None
    if isinstance(body, dict) and body.get("message"):
        err["message"] = body["message"]
    return err


class EngineClient:
    """Thin async wrapper around the automation engine REST API.

    Every public method returns the decoded JSON body on success, or an
    {"error": ...} dict on failure.  Transport timeouts are flagged with
    "timeout": True so callers can treat them like any other failure.
    """

    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
        )

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        if method not in ("GET", "POST", "DELETE"):
            raise ValueError(f"Unsupported method: {method}")
        try:
            if method == "GET":
                r = await self._client.get(path, params=params)
            elif method == "POST":
                r = await self._client.post(path, json=payload or {}, params=params)
            else:
                r = await self._client.delete(path)
            r.raise_for_status()
            return r.json() if r.text.strip() else {"success": True}
        except httpx.HTTPStatusError as e:
            return _http_error(method, path, e)
        except httpx.TimeoutException as e:
            logger.error("%s %s timed out: %s", method, path, e)
            return {"error": "timeout", "timeout": True, "detail": str(e)}
        except Exception as e:
            logger.error("%s %s failed: %s", method, path, e)
            return {"error": str(e)}

    async def _get(self, path: str, params: dict | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: dict | None = None, params: dict | None = None) -> Any:
        return await self._request("POST", path, payload=payload, params=params)

    async def _delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    # ==================================================================
    # SYSTEM
    # ==================================================================

    async def ping(self) -> Any:
        try:
            r = await self._client.get(f"{self._settings.api_endpoint}/healthz")
            r.raise_for_status()
            return {"status": "ok"}
        except Exception as e:
            return {"error": str(e)}

    # ==================================================================
    # NODE TYPES (introspection)
    # ==================================================================

    async def list_node_types(self) -> Any:
        """Return raw node type descriptions, unwrapping a {"data": [...]} envelope."""
        result = await self._get(self._settings.node_types_path)
        if isinstance(result, dict) and isinstance(result.get("data"), list):
            return result["data"]
        return result

    # ==================================================================
    # WORKFLOWS
    # ==================================================================

    async def list_workflows(self, name: str | None = None, limit: int = 50) -> Any:
        params: dict[str, Any] = {"limit": limit}
        if name:
            params["name"] = name
        return await self._get("/workflows", params=params)

    async def get_workflow(self, workflow_id: str) -> Any:
        return await self._get(f"/workflows/{workflow_id}")

    async def create_workflow(
        self,
        name: str,
        nodes: list[dict[str, Any]],
        connections: dict[str, Any],
        settings: dict[str, Any] | None = None,
    ) -> Any:
        payload: dict[str, Any] = {
            "name": name,
            "nodes": nodes,
            "connections": connections,
            "settings": settings or {},
        }
        return await self._post("/workflows", payload)

    async def delete_workflow(self, workflow_id: str) -> Any:
        return await self._delete(f"/workflows/{workflow_id}")

    async def activate_workflow(self, workflow_id: str) -> Any:
        return await self._post(f"/workflows/{workflow_id}/activate")

    async def deactivate_workflow(self, workflow_id: str) -> Any:
        return await self._post(f"/workflows/{workflow_id}/deactivate")

    # ==================================================================
    # EXECUTIONS
    # ==================================================================

    async def run_workflow(self, workflow_id: str, pin_data: dict[str, Any] | None = None) -> Any:
        """Start one manual execution. pin_data maps node names to sample items."""
        payload: dict[str, Any] = {}
        if pin_data:
            payload["pinData"] = pin_data
        return await self._post(f"/workflows/{workflow_id}/run", payload)

    async def get_execution(self, execution_id: str) -> Any:
        return await self._get(f"/executions/{execution_id}", params={"includeData": "true"})
