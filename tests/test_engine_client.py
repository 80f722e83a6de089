"""EngineClient: error dicts instead of exceptions, envelope unwrapping, paths."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from autoflow_agent.client import (
    EngineClient,
    EngineError,
    EngineSettings,
    error_message,
    is_engine_error,
    raise_for_engine_error,
)


def _client() -> EngineClient:
    return EngineClient(EngineSettings(api_key="k", api_endpoint="http://engine:5678"))


def _ok(body, text: str = "{}") -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.text = text
    resp.json.return_value = body
    resp.raise_for_status = MagicMock()
    return resp


def _status_error(method: str, status: int, text: str) -> httpx.HTTPStatusError:
    response = httpx.Response(
        status_code=status,
        request=httpx.Request(method, "http://engine:5678/api/v1/workflows"),
        text=text,
    )
    return httpx.HTTPStatusError(str(status), request=response.request, response=response)


class TestInit:
    def test_base_url_and_headers(self):
        client = _client()
        assert str(client._client.base_url).rstrip("/") == "http://engine:5678/api/v1"
        assert client._client.headers["X-N8N-API-KEY"] == "k"


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_http_error_carries_engine_message(self):
        client = _client()
        client._client.post = AsyncMock(side_effect=_status_error(
            "POST", 400, '{"message": "request/body/active is read-only"}'
        ))
        result = await client.create_workflow("wf", [], {})
        assert result["error"] == "HTTP 400"
        assert result["status_code"] == 400
        assert result["message"] == "request/body/active is read-only"
        assert error_message(result) == "request/body/active is read-only"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        client = _client()
        client._client.get = AsyncMock(side_effect=_status_error("GET", 502, "Bad Gateway"))
        result = await client.list_workflows()
        assert "message" not in result
        assert error_message(result) == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_timeout_flagged(self):
        client = _client()
        client._client.get = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        result = await client.get_execution("ex-1")
        assert result["timeout"] is True
        assert is_engine_error(result)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        client = _client()
        client._client.delete = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))
        result = await client.delete_workflow("wf-1")
        assert "Connection refused" in result["error"]

    @pytest.mark.asyncio
    async def test_unsupported_method(self):
        with pytest.raises(ValueError):
            await _client()._request("PATCH", "/workflows")

    @pytest.mark.asyncio
    async def test_ping_failure(self):
        client = _client()
        client._client.get = AsyncMock(side_effect=httpx.ConnectError("down"))
        assert is_engine_error(await client.ping())


class TestApiMethods:
    @pytest.mark.asyncio
    async def test_create_workflow_payload(self):
        client = _client()
        client._client.post = AsyncMock(return_value=_ok({"id": "wf-9"}, text='{"id": "wf-9"}'))
        result = await client.create_workflow("My flow", [{"name": "A"}], {}, settings={"x": 1})
        assert result == {"id": "wf-9"}
        client._client.post.assert_called_once_with(
            "/workflows",
            json={"name": "My flow", "nodes": [{"name": "A"}], "connections": {}, "settings": {"x": 1}},
            params=None,
        )

    @pytest.mark.asyncio
    async def test_empty_body_is_success(self):
        client = _client()
        client._client.post = AsyncMock(return_value=_ok(None, text=""))
        assert await client.activate_workflow("wf-1") == {"success": True}
        client._client.post.assert_called_once_with("/workflows/wf-1/activate", json={}, params=None)

    @pytest.mark.asyncio
    async def test_list_node_types_unwraps_envelope(self):
        client = _client()
        client._client.get = AsyncMock(return_value=_ok({"data": [{"name": "n8n-nodes-base.set"}]}))
        assert await client.list_node_types() == [{"name": "n8n-nodes-base.set"}]
        client._client.get.assert_called_once_with("/node-types", params=None)

    @pytest.mark.asyncio
    async def test_list_workflows_by_name(self):
        client = _client()
        client._client.get = AsyncMock(return_value=_ok({"data": []}))
        await client.list_workflows(name="[autoflow-dry-run] abc")
        client._client.get.assert_called_once_with(
            "/workflows", params={"limit": 50, "name": "[autoflow-dry-run] abc"}
        )

    @pytest.mark.asyncio
    async def test_run_workflow_pin_data(self):
        client = _client()
        client._client.post = AsyncMock(return_value=_ok({"executionId": "1"}, text="{}"))
        await client.run_workflow("wf-1", {"Trigger": [{"json": {}}]})
        client._client.post.assert_called_once_with(
            "/workflows/wf-1/run", json={"pinData": {"Trigger": [{"json": {}}]}}, params=None
        )


class TestHelpers:
    def test_raise_for_engine_error(self):
        with pytest.raises(EngineError) as exc:
            raise_for_engine_error({"error": "HTTP 404", "status_code": 404, "detail": "nope"}, "delete")
        assert exc.value.status_code == 404
        assert exc.value.message == "delete failed: nope"
        assert exc.value.to_dict()["status_code"] == 404

    def test_passthrough(self):
        assert raise_for_engine_error({"id": "x"}, "create") == {"id": "x"}
        assert not is_engine_error([{"error": "in a list"}])
