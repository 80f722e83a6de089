"""API endpoints called directly with a fake app state (no server, no lifespan)."""

from __future__ import annotations

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from starlette.requests import Request

from autoflow_agent.agent.pipeline import PipelineResponse
from autoflow_agent.persistence.records import DeploymentRecord, FeedbackEntry


def _request(runner=None, components=None) -> Request:
    app = SimpleNamespace(state=SimpleNamespace(runner=runner, components=components))
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [],
        "query_string": b"",
        "client": ("127.0.0.1", 5000),
        "app": app,
    })


def _components(catalog) -> MagicMock:
    c = MagicMock()
    c.catalog = catalog
    c.client = MagicMock()
    c.client.ping = AsyncMock(return_value={"status": "ok"})
    c.orchestrator.breaker_states.return_value = [
        {"name": "blueprint", "state": "closed", "consecutive_failures": 0}
    ]
    c.records.list_feedback = AsyncMock(return_value=[
        FeedbackEntry(kind="capability_gap", message="needs teams", id=3, created_at=1.0)
    ])
    c.records.get_deployment = AsyncMock(return_value=None)
    c.templates.list_templates = AsyncMock(return_value=[{"id": 1, "name": "Weather email"}])
    return c


class TestAuth:
    def test_open_when_no_key(self):
        from autoflow_agent.api import _verify_api_key

        with patch.dict(os.environ, {}, clear=True):
            assert _verify_api_key(None) is None

    def test_rejects_missing_or_wrong_key(self):
        from autoflow_agent.api import _verify_api_key

        with patch.dict(os.environ, {"AGENT_API_KEY": "s3cret"}, clear=True):
            with pytest.raises(HTTPException) as exc:
                _verify_api_key(None)
            assert exc.value.status_code == 401
            with pytest.raises(HTTPException):
                _verify_api_key(HTTPAuthorizationCredentials(scheme="Bearer", credentials="nope"))

    def test_accepts_matching_key(self):
        from autoflow_agent.api import _verify_api_key

        with patch.dict(os.environ, {"AGENT_API_KEY": "s3cret"}, clear=True):
            creds = HTTPAuthorizationCredentials(scheme="Bearer", credentials="s3cret")
            assert _verify_api_key(creds) is None


class TestRequests:
    @pytest.mark.asyncio
    async def test_runs_pipeline_with_generated_key(self):
        from autoflow_agent.api import WorkflowRequest, create_request, limiter

        runner = MagicMock()
        runner.run = AsyncMock(return_value=PipelineResponse(
            success=True, outcome="deployed", message="Deployed workflow wf-1", workflow_id="wf-1",
        ))
        with patch.object(limiter, "enabled", False):
            response = await create_request(_request(runner=runner), WorkflowRequest(text="daily weather email"))

        assert response.success
        assert response.workflow_id == "wf-1"
        assert response.idempotency_key
        sent = runner.run.call_args.args[0]
        assert sent.text == "daily weather email"
        assert sent.user_id == "anonymous"
        assert sent.idempotency_key == response.idempotency_key

    @pytest.mark.asyncio
    async def test_failure_is_a_normal_response(self):
        from autoflow_agent.api import WorkflowRequest, create_request, limiter

        runner = MagicMock()
        runner.run = AsyncMock(return_value=PipelineResponse(
            success=False, outcome="capability_gap", message="needs teams",
            alternatives={"n8n-nodes-base.microsoftTeams": ["n8n-nodes-base.httpRequest"]},
        ))
        body = WorkflowRequest(text="post to teams", idempotency_key="abc", user_id="u-7")
        with patch.object(limiter, "enabled", False):
            response = await create_request(_request(runner=runner), body)

        assert response.outcome == "capability_gap"
        assert response.idempotency_key == "abc"
        assert response.alternatives["n8n-nodes-base.microsoftTeams"] == ["n8n-nodes-base.httpRequest"]

    def test_empty_text_rejected(self):
        from pydantic import ValidationError

        from autoflow_agent.api import WorkflowRequest

        with pytest.raises(ValidationError):
            WorkflowRequest(text="")


class TestOperational:
    @pytest.mark.asyncio
    async def test_health(self, catalog):
        from autoflow_agent.api import health

        result = await health(_request(components=_components(catalog)))
        assert result["api"] == "ok"
        assert result["engine"] == "ok"
        assert result["catalog"]["source"] == "fallback"
        assert result["providers"][0]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_health_engine_down(self, catalog):
        from autoflow_agent.api import health

        c = _components(catalog)
        c.client.ping = AsyncMock(return_value={"error": "connection refused"})
        result = await health(_request(components=c))
        assert result["engine"] == "unreachable"
        assert result["engine_detail"] == "connection refused"

    @pytest.mark.asyncio
    async def test_catalog_summary(self, catalog):
        from autoflow_agent.api import get_catalog

        summary = await get_catalog(_request(components=_components(catalog)))
        assert summary["node_count"] == len(catalog.current())

    @pytest.mark.asyncio
    async def test_feedback(self, catalog):
        from autoflow_agent.api import list_feedback

        c = _components(catalog)
        entries = await list_feedback(_request(components=c), kind="capability_gap", limit=10)
        assert entries[0]["id"] == 3
        c.records.list_feedback.assert_awaited_once_with(kind="capability_gap", limit=10)

    @pytest.mark.asyncio
    async def test_feedback_unknown_kind(self, catalog):
        from autoflow_agent.api import list_feedback

        with pytest.raises(HTTPException) as exc:
            await list_feedback(_request(components=_components(catalog)), kind="bogus")
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_templates(self, catalog):
        from autoflow_agent.api import list_templates

        c = _components(catalog)
        assert (await list_templates(_request(components=c), limit=5))[0]["name"] == "Weather email"
        c.templates = None
        assert await list_templates(_request(components=c)) == []

    @pytest.mark.asyncio
    async def test_deployment_lookup(self, catalog):
        from autoflow_agent.api import get_deployment

        c = _components(catalog)
        with pytest.raises(HTTPException) as exc:
            await get_deployment("missing", _request(components=c))
        assert exc.value.status_code == 404

        c.records.get_deployment = AsyncMock(return_value=DeploymentRecord(
            idempotency_key="k", saga_state="committed", external_workflow_id="wf-1", status="active",
        ))
        record = await get_deployment("k", _request(components=c))
        assert record["external_workflow_id"] == "wf-1"
