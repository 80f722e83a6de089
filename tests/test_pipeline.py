"""End-to-end pipeline runs against the in-memory engine.

Each test drives PipelineRunner through the compiled LangGraph graph with
real SQLite stores and the deterministic blueprint provider.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from autoflow_agent.agent.blueprint import BlueprintProvider
from autoflow_agent.agent.compiler import Connection, Node, WorkflowGraph
from autoflow_agent.agent.dry_run import DRY_RUN_TAG, DryRunValidator, ExecutionSimulator
from autoflow_agent.agent.generation import GenerationOrchestrator
from autoflow_agent.agent.healer import MAX_FIX_ATTEMPTS, AutoFixer, ErrorPatternMatcher
from autoflow_agent.agent.intent import IntentExtractor
from autoflow_agent.agent.matcher import TemplateMatcher
from autoflow_agent.agent.pipeline import (
    OUTCOMES,
    PipelineComponents,
    PipelineRequest,
    PipelineRunner,
    _route_after_diagnose,
    _route_after_generate,
    _route_after_structure,
)
from autoflow_agent.agent.resilience import RetryPolicy
from autoflow_agent.agent.saga import DeploymentSaga
from autoflow_agent.agent.template_store import TemplateStore
from autoflow_agent.agent.validation import StructuralValidator
from autoflow_agent.knowledge.catalog import HTTP_REQUEST_TYPE
from autoflow_agent.persistence.records import RecordStore
from autoflow_agent.reasoning import GenerationProvider

_FAST = RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=False, attempt_timeout=5.0)

WEATHER_REQUEST = "send me a daily 8am email with today's weather"
TEAMS_REQUEST = "Post to Microsoft Teams when a new Stripe payment arrives"


async def _no_sleep(_delay: float) -> None:
    return None


class _StaticProvider(GenerationProvider):
    def __init__(self, output: str = "", error: Exception | None = None) -> None:
        self.output = output
        self.error = error

    @property
    def provider_id(self) -> str:
        return "static"

    async def generate(self, prompt, schema_context, timeout):
        if self.error is not None:
            raise self.error
        return self.output


@pytest_asyncio.fixture
async def records(tmp_path):
    s = await RecordStore.open(str(tmp_path / "records.db"))
    yield s
    await s.close()


@pytest_asyncio.fixture
async def templates(tmp_path):
    s = await TemplateStore.open(str(tmp_path / "templates.db"))
    yield s
    await s.close()


def _components(catalog, engine, records, templates=None, providers=None) -> PipelineComponents:
    return PipelineComponents(
        catalog=catalog,
        extractor=IntentExtractor(),
        matcher=TemplateMatcher(),
        orchestrator=GenerationOrchestrator(providers or [BlueprintProvider()], timeout=5),
        validator=StructuralValidator(catalog),
        dry_run=DryRunValidator(engine, timeout=5),
        simulator=ExecutionSimulator(engine, timeout=5, sleep=_no_sleep),
        error_matcher=ErrorPatternMatcher(),
        fixer=AutoFixer(catalog),
        saga=DeploymentSaga(records, engine, step_retry=_FAST, compensation_retry=_FAST, sleep=_no_sleep),
        records=records,
        templates=templates,
    )


def _request(text: str, key: str = "req-1") -> PipelineRequest:
    return PipelineRequest(user_id="user-1", text=text, idempotency_key=key)


def _no_dry_run_leftovers(engine) -> bool:
    return not any(wf["name"].startswith(DRY_RUN_TAG) for wf in engine.workflows.values())


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestDeployed:
    @pytest.mark.asyncio
    async def test_weather_email_deployed(self, catalog, engine, records, templates):
        runner = PipelineRunner(_components(catalog, engine, records, templates))
        response = await runner.run(_request(WEATHER_REQUEST))

        assert response.success, response.message
        assert response.outcome == "deployed"
        assert response.workflow_id in engine.active
        assert engine.leaked == [response.workflow_id]
        assert _no_dry_run_leftovers(engine)

        types = [n["type"] for n in response.graph["nodes"]]
        assert types == [
            "n8n-nodes-base.scheduleTrigger",
            "n8n-nodes-base.openWeatherMap",
            "n8n-nodes-base.emailSend",
        ]
        assert response.diagnostics is None
        stages = [m["stage"] for m in response.metrics]
        assert stages[0] == "extract_intent"
        assert stages[-1] == "deploy"

        stored = await records.get_deployment("req-1")
        assert stored.committed
        assert stored.external_workflow_id == response.workflow_id

    @pytest.mark.asyncio
    async def test_deployed_graph_saved_as_template(self, catalog, engine, records, templates):
        runner = PipelineRunner(_components(catalog, engine, records, templates))
        await runner.run(_request(WEATHER_REQUEST, key="first"))

        saved = await templates.list_templates()
        assert len(saved) == 1
        assert saved[0]["integrations"] == ["weather", "email"]

        provider = _StaticProvider(error=RuntimeError("must not be called"))
        second = PipelineRunner(_components(catalog, engine, records, templates, providers=[provider]))
        response = await second.run(_request(WEATHER_REQUEST, key="second"))
        assert response.success
        candidates = await templates.list_candidates(["weather"])
        assert candidates[0].popularity == 2

    @pytest.mark.asyncio
    async def test_candidate_below_threshold_logged_as_unmatched(self, catalog, engine, records, templates):
        c = _components(catalog, engine, records, templates)
        c.record_unmatched = True
        await PipelineRunner(c).run(_request(WEATHER_REQUEST, key="first"))

        c.matcher = TemplateMatcher(min_confidence=1.01)
        response = await PipelineRunner(c).run(_request(WEATHER_REQUEST, key="second"))

        assert response.success
        entries = await records.list_feedback(kind="unmatched_request")
        assert len(entries) == 2
        assert "best confidence 0.00" in entries[1].message
        assert "best confidence 0.00" not in entries[0].message
        assert "need 1.01" in entries[0].message
        candidates = await templates.list_candidates(["weather"])
        assert candidates[0].popularity == 1

    @pytest.mark.asyncio
    async def test_replayed_key_returns_cached_deployment(self, catalog, engine, records):
        runner = PipelineRunner(_components(catalog, engine, records))
        first = await runner.run(_request(WEATHER_REQUEST, key="same"))
        second = await runner.run(_request(WEATHER_REQUEST, key="same"))

        assert second.success
        assert second.workflow_id == first.workflow_id
        assert len(engine.active) == 1


# ---------------------------------------------------------------------------
# Capability gap
# ---------------------------------------------------------------------------


class TestCapabilityGap:
    @pytest.mark.asyncio
    async def test_unsupported_integration_stops_before_engine(self, catalog, engine, records):
        runner = PipelineRunner(_components(catalog, engine, records))
        response = await runner.run(_request(TEAMS_REQUEST))

        assert not response.success
        assert response.outcome == "capability_gap"
        alts = response.alternatives["n8n-nodes-base.microsoftTeams"]
        assert alts[-1] == HTTP_REQUEST_TYPE
        assert engine.calls == []
        assert response.feedback_id is not None

        feedback = await records.list_feedback(kind="capability_gap")
        assert feedback[0].intent["integrations"] == ["microsoft_teams", "stripe"]

    @pytest.mark.asyncio
    async def test_generated_unknown_type_becomes_gap(self, catalog, engine, records):
        graph = WorkflowGraph(
            name="teams",
            nodes=[
                Node("t", "n8n-nodes-base.scheduleTrigger", "Trigger"),
                Node("m", "n8n-nodes-base.microsoftTeams", "Teams"),
            ],
            connections=[Connection("t", "m")],
        )
        provider = _StaticProvider(json.dumps(graph.to_dict()))
        runner = PipelineRunner(_components(catalog, engine, records, providers=[provider]))
        response = await runner.run(_request(WEATHER_REQUEST))

        assert response.outcome == "capability_gap"
        assert "n8n-nodes-base.microsoftTeams" in response.alternatives
        assert engine.calls == []


# ---------------------------------------------------------------------------
# Fix loop
# ---------------------------------------------------------------------------


class TestAutoFix:
    @pytest.mark.asyncio
    async def test_engine_rejection_fixed_then_deployed(self, catalog, engine, records):
        engine.create_errors = [{
            "error": "HTTP 400", "status_code": 400,
            "message": 'Node "Open Weather Map": parameter "format" is required',
        }]
        runner = PipelineRunner(_components(catalog, engine, records))
        response = await runner.run(_request(WEATHER_REQUEST))

        assert response.success, response.message
        weather = next(n for n in response.graph["nodes"] if n["type"] == "n8n-nodes-base.openWeatherMap")
        assert weather["parameters"]["format"] == "metric"
        assert engine.leaked == [response.workflow_id]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, catalog, engine, records):
        engine.create_error = {
            "error": "HTTP 409", "status_code": 409,
            "message": "Conflicting webhook path: path already in use",
        }
        runner = PipelineRunner(_components(catalog, engine, records))
        response = await runner.run(_request("when a webhook is received, post to slack"))

        assert response.outcome == "graceful_failure"
        assert response.diagnostics["fix_attempts"] == MAX_FIX_ATTEMPTS
        assert f"{MAX_FIX_ATTEMPTS} automatic fix attempts" in response.message
        assert engine.active == set()
        assert engine.leaked == []

        feedback = await records.list_feedback(kind="graceful_failure")
        assert feedback[0].attempt_count == MAX_FIX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_unfixable_failure_is_graceful(self, catalog, engine, records):
        engine.run_result = {"data": {"resultData": {"runData": {
            "Open Weather Map": [{"error": {"message": "401 - invalid API key"}}],
        }}}}
        runner = PipelineRunner(_components(catalog, engine, records))
        response = await runner.run(_request(WEATHER_REQUEST))

        assert response.outcome == "graceful_failure"
        assert "cannot be fixed automatically" in response.message
        assert response.diagnostics["diagnoses"][0]["kind"] == "authentication"
        assert engine.active == set()
        assert engine.leaked == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_saga_rollback(self, catalog, engine, records):
        engine.activate_error = {"error": "HTTP 500", "status_code": 500, "message": "activation failed"}
        runner = PipelineRunner(_components(catalog, engine, records))
        response = await runner.run(_request(WEATHER_REQUEST, key="d-1"))

        assert response.outcome == "saga_rolled_back"
        assert not response.success
        assert response.diagnostics["deployment"]["rolled_back"] == ["create_in_engine", "persist_draft"]
        assert engine.leaked == []
        assert await records.get_deployment("d-1") is None
        assert response.feedback_id is not None

    @pytest.mark.asyncio
    async def test_all_providers_failed(self, catalog, engine, records):
        provider = _StaticProvider(error=RuntimeError("503 from upstream"))
        runner = PipelineRunner(_components(catalog, engine, records, providers=[provider]))
        response = await runner.run(_request(WEATHER_REQUEST))

        assert response.outcome == "graceful_failure"
        assert "All generation providers failed" in response.message
        assert response.diagnostics["attempts"][0]["provider_id"] == "static"
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_internal_error_is_contained(self, catalog, engine, records):
        c = _components(catalog, engine, records)
        c.validator = MagicMock()
        c.validator.validate.side_effect = RuntimeError("boom")
        response = await PipelineRunner(c).run(_request(WEATHER_REQUEST))

        assert response.outcome == "graceful_failure"
        assert "boom" not in response.message
        assert response.feedback_id is not None

    @pytest.mark.asyncio
    async def test_concurrent_requests_isolated(self, catalog, engine, records):
        runner = PipelineRunner(_components(catalog, engine, records), max_workers=2)
        responses = await asyncio.gather(*(
            runner.run(_request(WEATHER_REQUEST, key=f"k-{i}")) for i in range(3)
        ))
        assert all(r.success for r in responses)
        assert len({r.workflow_id for r in responses}) == 3
        assert _no_dry_run_leftovers(engine)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRouting:
    def test_outcomes(self):
        assert OUTCOMES == ("deployed", "capability_gap", "graceful_failure", "saga_rolled_back")

    def test_after_generate(self):
        assert _route_after_generate({"alternatives": {"x": []}}) == "capability_gap"
        assert _route_after_generate({"graph": None}) == "graceful_failure"
        assert _route_after_generate({"graph": WorkflowGraph()}) == "validate_structure"

    def test_after_structure(self):
        assert _route_after_structure({"failed_stage": "structural"}) == "diagnose"
        assert _route_after_structure({"failed_stage": None}) == "dry_run"

    def test_after_diagnose(self):
        assert _route_after_diagnose({"failed_stage": None, "message": ""}) == "validate_structure"
        assert _route_after_diagnose({"failed_stage": None, "message": "gave up"}) == "graceful_failure"
