"""LangGraph state machine for one workflow-generation request.

Graph topology:

    START
      │
      ▼
    extract_intent
      │
      ▼
    check_capabilities ───────── integration not in catalog ──► capability_gap ──► END
      │
      ▼
    match_templates ──────────── confident template ──┐
      │                                               │
      ▼                                               │
    generate ─────────────────── unknown node types ──┼──────► capability_gap
      │     └─────────────────── all providers failed ┼──────► graceful_failure ──► END
      ▼                                               │
    validate_structure ◄──────────────────────────────┘
      │     └── capability gap ─► capability_gap
      ▼
    dry_run
      │
      ▼
    simulate
      │
      ▼
    deploy ──► END  (outcome: deployed | saga_rolled_back)

    validate_structure / dry_run / simulate ── failures ──► diagnose
    diagnose ── fixed (attempt ≤ MAX_FIX_ATTEMPTS) ──► validate_structure
             └─ not fixable / limit reached ──► graceful_failure

Terminal outcomes: deployed, capability_gap, graceful_failure, saga_rolled_back.
Stages within one request run strictly in sequence; PipelineRunner bounds
how many requests run at once.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from langgraph.graph import END, START, StateGraph

from autoflow_agent.agent.compiler import WorkflowGraph
from autoflow_agent.agent.dry_run import DryRunValidator, ExecutionSimulator, sample_data_for
from autoflow_agent.agent.errors import AllProvidersFailedError, FixNotApplicable
from autoflow_agent.agent.generation import GenerationAttempt, GenerationOrchestrator, build_context
from autoflow_agent.agent.healer import (
    MAX_FIX_ATTEMPTS,
    AutoFixer,
    ErrorPatternMatcher,
    failures_from,
)
from autoflow_agent.agent.intent import IntentExtractor
from autoflow_agent.agent.matcher import TemplateMatcher
from autoflow_agent.agent.metrics import MetricsCollector
from autoflow_agent.agent.saga import DeploymentSaga
from autoflow_agent.agent.state import PipelineState
from autoflow_agent.agent.template_store import TemplateStore
from autoflow_agent.agent.validation import StructuralValidator, ValidationResult
from autoflow_agent.client.config import EngineSettings
from autoflow_agent.client.engine_client import EngineClient
from autoflow_agent.knowledge.catalog import CapabilityCatalog
from autoflow_agent.persistence.records import FeedbackEntry, RecordStore
from autoflow_agent.reasoning import ReasoningSettings, create_providers
from autoflow_agent.settings import PipelineSettings

logger = logging.getLogger("autoflow_agent.agent.pipeline")

OUTCOMES: tuple[str, ...] = ("deployed", "capability_gap", "graceful_failure", "saga_rolled_back")

_RECURSION_LIMIT = 50


@dataclass
class PipelineComponents:
    """Everything the pipeline nodes call.  Built once per process."""

    catalog: CapabilityCatalog
    extractor: IntentExtractor
    matcher: TemplateMatcher
    orchestrator: GenerationOrchestrator
    validator: StructuralValidator
    dry_run: DryRunValidator
    simulator: ExecutionSimulator
    error_matcher: ErrorPatternMatcher
    fixer: AutoFixer
    saga: DeploymentSaga
    records: RecordStore
    templates: TemplateStore | None = None
    client: EngineClient | None = None
    store_timeout: float = 10.0
    record_unmatched: bool = False


# ---------------------------------------------------------------------------
# Feedback helper
# ---------------------------------------------------------------------------


async def _record_feedback(records: RecordStore, entry: FeedbackEntry) -> int | None:
    """Persist a feedback entry; a store failure is logged, never raised."""
    try:
        return await records.record(entry)
    except Exception as e:
        logger.error("[Pipeline] Could not record %s feedback: %s", entry.kind, e)
        return None


def _validation_log(result: ValidationResult) -> list[dict[str, Any]]:
    return [result.to_dict()]


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_extract_intent_node(c: PipelineComponents):
    async def extract_intent(state: PipelineState) -> dict:
        async with MetricsCollector("extract_intent") as m:
            intent = c.extractor.extract(state["text"])
        logger.info(
            "[Pipeline] Intent: action=%s integrations=%s trigger=%s complexity=%d",
            intent.action, list(intent.integrations), intent.trigger_kind, intent.complexity_score,
        )
        return {"intent": intent, "metrics": [m.to_dict()]}

    return extract_intent


def _make_check_capabilities_node(c: PipelineComponents):
    async def check_capabilities(state: PipelineState) -> dict:
        intent = state["intent"]
        missing = [t for t in intent.node_types if t not in c.catalog.current()]
        if not missing:
            return {}
        logger.info("[Pipeline] Capability gap before generation: %s", missing)
        return {"alternatives": {t: c.catalog.suggest_alternatives(t) for t in missing}}

    return check_capabilities


def _make_match_templates_node(c: PipelineComponents):
    async def match_templates(state: PipelineState) -> dict:
        if c.templates is None:
            return {"templates": []}
        intent = state["intent"]
        async with MetricsCollector("match_templates") as m:
            try:
                candidates = await asyncio.wait_for(
                    c.templates.list_candidates(intent.integrations), timeout=c.store_timeout
                )
            except (asyncio.TimeoutError, RuntimeError, sqlite3.Error) as e:
                logger.warning("[Pipeline] Template lookup failed, generating from scratch: %s", e)
                candidates = []
            ranked = c.matcher.match(intent, candidates)
        update: dict[str, Any] = {"templates": ranked, "metrics": [m.to_dict()]}

        best = c.matcher.shortcut(ranked)
        if best is None and c.record_unmatched:
            top = ranked[0].confidence if ranked else 0.0
            await _record_feedback(c.records, FeedbackEntry(
                kind="unmatched_request",
                message=(
                    f"No stored template cleared the match threshold "
                    f"(best confidence {top:.2f}, need {c.matcher.min_confidence:.2f})"
                ),
                user_id=state.get("user_id"),
                intent=intent.to_dict(),
            ))

        if best is not None:
            logger.info(
                "[Pipeline] Template shortcut: %r (confidence %.3f)",
                best.candidate.name, best.confidence,
            )
            update["graph"] = best.candidate.graph.copy()
            update["template_id"] = best.candidate.id
        return update

    return match_templates


def _make_generate_node(c: PipelineComponents):
    async def generate(state: PipelineState) -> dict:
        intent = state["intent"]
        attempts: list[GenerationAttempt] = []
        async with MetricsCollector("generate") as m:
            context = build_context(intent, c.catalog, state.get("templates") or [])
            try:
                graph = await c.orchestrator.generate(intent, context, attempts)
            except AllProvidersFailedError as e:
                graph = None
                failure = e
            m.provider_calls = len(attempts)
        update: dict[str, Any] = {
            "attempts": [a.to_dict() for a in attempts],
            "metrics": [m.to_dict()],
        }
        if graph is not None:
            update["graph"] = graph
            return update

        snapshot = c.catalog.current()
        unknown = sorted({
            t for f in failure.attempts for t in f.node_types if t not in snapshot
        })
        if unknown:
            update["alternatives"] = {t: c.catalog.suggest_alternatives(t) for t in unknown}
        else:
            update["message"] = (
                f"{failure} (skipped: {', '.join(failure.skipped) or 'none'})"
            )
        return update

    return generate


def _make_validate_structure_node(c: PipelineComponents):
    async def validate_structure(state: PipelineState) -> dict:
        async with MetricsCollector("validate_structure") as m:
            result = c.validator.validate(state["graph"])
            m.issues = len(result.blocking_issues)
        update: dict[str, Any] = {"validations": _validation_log(result), "metrics": [m.to_dict()]}
        if result.gaps():
            update["alternatives"] = dict(result.alternatives)
            return update
        update["failures"] = failures_from(result)
        update["failed_stage"] = None if result.valid else "structural"
        return update

    return validate_structure


def _make_dry_run_node(c: PipelineComponents):
    async def dry_run(state: PipelineState) -> dict:
        async with MetricsCollector("dry_run") as m:
            result = await c.dry_run.dry_run(state["graph"])
            m.engine_calls = 2
            m.issues = len(result.blocking_issues)
        return {
            "validations": _validation_log(result),
            "failures": failures_from(result),
            "failed_stage": None if result.valid else "dry_run",
            "metrics": [m.to_dict()],
        }

    return dry_run


def _make_simulate_node(c: PipelineComponents):
    async def simulate(state: PipelineState) -> dict:
        intent = state["intent"]
        async with MetricsCollector("simulate") as m:
            execution = await c.simulator.simulate(state["graph"], sample_data_for(intent.trigger_kind))
            result = execution.to_validation()
            m.issues = len(result.blocking_issues)
        return {
            "validations": _validation_log(result),
            "failures": failures_from(result),
            "failed_stage": None if result.valid else "execution",
            "metrics": [m.to_dict()],
        }

    return simulate


def _make_diagnose_node(c: PipelineComponents):
    async def diagnose(state: PipelineState) -> dict:
        attempt = state.get("fix_attempts", 0)
        failures = state.get("failures") or []
        diagnoses = [c.error_matcher.diagnose(f) for f in failures]
        update: dict[str, Any] = {"diagnoses": [d.to_dict() for d in diagnoses]}

        if attempt >= MAX_FIX_ATTEMPTS:
            update["message"] = (
                f"Workflow still failed {state.get('failed_stage')} validation after "
                f"{MAX_FIX_ATTEMPTS} automatic fix attempts"
            )
            update["failures"] = []
            return update

        blocked = [d for d in diagnoses if not d.auto_fix_available]
        if blocked:
            first = blocked[0]
            update["message"] = (
                f"{first.kind.value.replace('_', ' ').capitalize()} cannot be fixed automatically: "
                f"{first.message}. Suggested fix: {first.suggested_fix}"
            )
            update["failures"] = []
            return update

        graph: WorkflowGraph = state["graph"]
        applied = 0
        for diagnosis in diagnoses:
            try:
                graph = c.fixer.attempt_fix(graph, diagnosis)
            except FixNotApplicable as e:
                if applied:
                    logger.debug("[Pipeline] %s already addressed this round: %s", diagnosis.kind.value, e)
                    continue
                update["message"] = f"Automatic fix not applicable: {e}"
                update["failures"] = []
                return update
            applied += 1

        logger.info(
            "[Pipeline] Fix attempt %d/%d applied %d fix(es) for %s failures",
            attempt + 1, MAX_FIX_ATTEMPTS, applied, state.get("failed_stage"),
        )
        update["graph"] = graph
        update["fix_attempts"] = attempt + 1
        update["failed_stage"] = None
        update["failures"] = []
        return update

    return diagnose


def _make_deploy_node(c: PipelineComponents):
    async def deploy(state: PipelineState) -> dict:
        intent = state["intent"]
        graph: WorkflowGraph = state["graph"]
        async with MetricsCollector("deploy") as m:
            result = await c.saga.deploy(
                graph,
                state["idempotency_key"],
                user_id=state.get("user_id"),
                intent=intent.to_dict(),
            )
        update: dict[str, Any] = {"deployment": result.to_dict(), "metrics": [m.to_dict()]}

        if result.status == "rolled_back":
            update.update(outcome="saga_rolled_back", message=result.message, feedback_id=result.feedback_id)
            return update
        if result.status != "committed":
            update.update(outcome="graceful_failure", message=result.message)
            return update

        update.update(outcome="deployed", message=result.message, workflow_id=result.workflow_id)
        if c.templates is not None and not result.cached:
            try:
                if state.get("template_id"):
                    await asyncio.wait_for(
                        c.templates.increment_success(state["template_id"]), timeout=c.store_timeout
                    )
                else:
                    await asyncio.wait_for(
                        c.templates.save_template(
                            graph.name or intent.text[:60],
                            intent,
                            graph,
                            catalog_fingerprint=c.catalog.current().fingerprint,
                        ),
                        timeout=c.store_timeout,
                    )
            except (asyncio.TimeoutError, RuntimeError, sqlite3.Error) as e:
                logger.warning("[Pipeline] Could not update template library: %s", e)
        return update

    return deploy


def _make_capability_gap_node(c: PipelineComponents):
    async def capability_gap(state: PipelineState) -> dict:
        alternatives: dict[str, list[str]] = state.get("alternatives") or {}
        missing = ", ".join(alternatives) or "unknown"
        message = (
            f"This request needs capabilities the automation engine does not provide: {missing}. "
            f"Consider one of the suggested alternatives."
        )
        graph = state.get("graph")
        feedback_id = await _record_feedback(c.records, FeedbackEntry(
            kind="capability_gap",
            message=message,
            user_id=state.get("user_id"),
            intent=state["intent"].to_dict() if state.get("intent") else None,
            graph_shape=graph.shape() if graph else None,
            diagnosis={"alternatives": alternatives},
        ))
        logger.info("[Pipeline] Capability gap: %s", missing)
        return {"outcome": "capability_gap", "message": message, "feedback_id": feedback_id}

    return capability_gap


def _make_graceful_failure_node(c: PipelineComponents):
    async def graceful_failure(state: PipelineState) -> dict:
        message = state.get("message") or "The workflow could not be generated and verified"
        graph = state.get("graph")
        feedback_id = await _record_feedback(c.records, FeedbackEntry(
            kind="graceful_failure",
            message=message,
            user_id=state.get("user_id"),
            intent=state["intent"].to_dict() if state.get("intent") else None,
            graph_shape=graph.shape() if graph else None,
            diagnosis={
                "diagnoses": state.get("diagnoses") or [],
                "validations": (state.get("validations") or [])[-3:],
            },
            attempt_count=state.get("fix_attempts", 0),
        ))
        logger.info("[Pipeline] Graceful failure: %s", message)
        return {"outcome": "graceful_failure", "message": message, "feedback_id": feedback_id}

    return graceful_failure


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def _route_after_capabilities(state: PipelineState) -> str:
    return "capability_gap" if state.get("alternatives") else "match_templates"


def _route_after_match(state: PipelineState) -> str:
    return "validate_structure" if state.get("graph") is not None else "generate"


def _route_after_generate(state: PipelineState) -> str:
    if state.get("alternatives"):
        return "capability_gap"
    if state.get("graph") is None:
        return "graceful_failure"
    return "validate_structure"


def _route_after_structure(state: PipelineState) -> str:
    if state.get("alternatives"):
        return "capability_gap"
    return "diagnose" if state.get("failed_stage") else "dry_run"


def _route_after_dry_run(state: PipelineState) -> str:
    return "diagnose" if state.get("failed_stage") else "simulate"


def _route_after_simulate(state: PipelineState) -> str:
    return "diagnose" if state.get("failed_stage") else "deploy"


def _route_after_diagnose(state: PipelineState) -> str:
    # diagnose clears failed_stage only when a fix was applied.
    return "graceful_failure" if state.get("failed_stage") or state.get("message") else "validate_structure"


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_pipeline(components: PipelineComponents):
    """Construct and compile the request pipeline graph.

    Returns:
        Compiled LangGraph graph ready for ainvoke().
    """
    builder = StateGraph(PipelineState)

    builder.add_node("extract_intent",     _make_extract_intent_node(components))
    builder.add_node("check_capabilities", _make_check_capabilities_node(components))
    builder.add_node("match_templates",    _make_match_templates_node(components))
    builder.add_node("generate",           _make_generate_node(components))
    builder.add_node("validate_structure", _make_validate_structure_node(components))
    builder.add_node("dry_run",            _make_dry_run_node(components))
    builder.add_node("simulate",           _make_simulate_node(components))
    builder.add_node("diagnose",           _make_diagnose_node(components))
    builder.add_node("deploy",             _make_deploy_node(components))
    builder.add_node("capability_gap",     _make_capability_gap_node(components))
    builder.add_node("graceful_failure",   _make_graceful_failure_node(components))

    builder.add_edge(START, "extract_intent")
    builder.add_edge("extract_intent", "check_capabilities")
    builder.add_edge("deploy", END)
    builder.add_edge("capability_gap", END)
    builder.add_edge("graceful_failure", END)

    builder.add_conditional_edges(
        "check_capabilities",
        _route_after_capabilities,
        {"capability_gap": "capability_gap", "match_templates": "match_templates"},
    )
    builder.add_conditional_edges(
        "match_templates",
        _route_after_match,
        {"validate_structure": "validate_structure", "generate": "generate"},
    )
    builder.add_conditional_edges(
        "generate",
        _route_after_generate,
        {
            "capability_gap": "capability_gap",
            "graceful_failure": "graceful_failure",
            "validate_structure": "validate_structure",
        },
    )
    builder.add_conditional_edges(
        "validate_structure",
        _route_after_structure,
        {"capability_gap": "capability_gap", "diagnose": "diagnose", "dry_run": "dry_run"},
    )
    builder.add_conditional_edges(
        "dry_run",
        _route_after_dry_run,
        {"diagnose": "diagnose", "simulate": "simulate"},
    )
    builder.add_conditional_edges(
        "simulate",
        _route_after_simulate,
        {"diagnose": "diagnose", "deploy": "deploy"},
    )
    builder.add_conditional_edges(
        "diagnose",
        _route_after_diagnose,
        {"graceful_failure": "graceful_failure", "validate_structure": "validate_structure"},
    )

    return builder.compile()


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineRequest:
    user_id: str
    text: str
    idempotency_key: str


@dataclass
class PipelineResponse:
    """What the request front end receives.  Never carries a stack trace."""

    success: bool
    outcome: str
    message: str
    graph: dict[str, Any] | None = None
    diagnostics: dict[str, Any] | None = None
    alternatives: dict[str, list[str]] | None = None
    feedback_id: int | None = None
    workflow_id: str | None = None
    metrics: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome,
            "message": self.message,
            "graph": self.graph,
            "diagnostics": self.diagnostics,
            "alternatives": self.alternatives,
            "feedback_id": self.feedback_id,
            "workflow_id": self.workflow_id,
        }


class PipelineRunner:
    """Runs requests through the compiled pipeline with bounded concurrency."""

    def __init__(self, components: PipelineComponents, max_workers: int = 4) -> None:
        self._components = components
        self._graph = build_pipeline(components)
        self._semaphore = asyncio.Semaphore(max(1, max_workers))

    @property
    def components(self) -> PipelineComponents:
        return self._components

    async def run(self, request: PipelineRequest) -> PipelineResponse:
        initial: PipelineState = {
            "user_id": request.user_id,
            "text": request.text,
            "idempotency_key": request.idempotency_key,
            "graph": None,
            "fix_attempts": 0,
            "failed_stage": None,
            "alternatives": {},
            "message": "",
            "outcome": None,
        }
        async with self._semaphore:
            logger.info("[Pipeline] Request %s from %s", request.idempotency_key, request.user_id)
            try:
                final = await self._graph.ainvoke(initial, config={"recursion_limit": _RECURSION_LIMIT})
            except asyncio.CancelledError:
                logger.warning("[Pipeline] Request %s cancelled", request.idempotency_key)
                raise
            except Exception as e:
                logger.exception("[Pipeline] Request %s crashed", request.idempotency_key)
                feedback_id = await _record_feedback(self._components.records, FeedbackEntry(
                    kind="graceful_failure",
                    message=f"Internal error: {type(e).__name__}",
                    user_id=request.user_id,
                    diagnosis={"error": str(e)},
                ))
                return PipelineResponse(
                    success=False,
                    outcome="graceful_failure",
                    message="The request could not be processed because of an internal error",
                    feedback_id=feedback_id,
                )
        return _to_response(final)


def _to_response(state: dict[str, Any]) -> PipelineResponse:
    outcome = state.get("outcome") or "graceful_failure"
    graph = state.get("graph")
    success = outcome == "deployed"
    diagnostics = None
    if not success:
        diagnostics = {
            "validations": state.get("validations") or [],
            "diagnoses": state.get("diagnoses") or [],
            "attempts": state.get("attempts") or [],
            "fix_attempts": state.get("fix_attempts", 0),
            "deployment": state.get("deployment"),
        }
    return PipelineResponse(
        success=success,
        outcome=outcome,
        message=state.get("message") or "",
        graph=graph.to_dict() if graph is not None else None,
        diagnostics=diagnostics,
        alternatives=state.get("alternatives") or None,
        feedback_id=state.get("feedback_id"),
        workflow_id=state.get("workflow_id"),
        metrics=state.get("metrics") or [],
    )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


async def create_components(
    settings: PipelineSettings | None = None,
    reasoning_settings: ReasoningSettings | None = None,
    engine_settings: EngineSettings | None = None,
) -> PipelineComponents:
    """Build every pipeline component from settings and open the stores.

    Call close_components() on shutdown.
    """
    settings = settings or PipelineSettings.from_env()
    reasoning_settings = reasoning_settings or ReasoningSettings.from_env()
    engine_settings = engine_settings or EngineSettings.from_env()

    Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)
    client = EngineClient(engine_settings)
    catalog = CapabilityCatalog(
        client=client,
        cache_path=Path(settings.catalog_cache_path),
        ttl=settings.catalog_ttl,
        timeout=settings.catalog_timeout,
    )
    records = await RecordStore.open(settings.db_path, timeout=settings.store_timeout)
    templates = await TemplateStore.open(settings.db_path)

    return PipelineComponents(
        catalog=catalog,
        extractor=IntentExtractor(complexity_threshold=settings.complexity_threshold),
        matcher=TemplateMatcher(settings.weights(), min_confidence=settings.match_min_confidence),
        orchestrator=GenerationOrchestrator(
            create_providers(reasoning_settings),
            failure_threshold=settings.breaker_threshold,
            cooldown=settings.breaker_cooldown,
            timeout=settings.provider_timeout,
        ),
        validator=StructuralValidator(catalog),
        dry_run=DryRunValidator(client, timeout=settings.engine_timeout, enabled=settings.dry_run_enabled),
        simulator=ExecutionSimulator(
            client,
            timeout=settings.engine_timeout,
            polls=settings.simulation_polls,
            poll_interval=settings.simulation_poll_interval,
            enabled=settings.simulation_enabled,
        ),
        error_matcher=ErrorPatternMatcher(),
        fixer=AutoFixer(catalog),
        saga=DeploymentSaga(
            records,
            client,
            step_retry=settings.step_retry(),
            compensation_retry=settings.compensation_retry(),
            idempotency_window=settings.idempotency_window,
        ),
        records=records,
        templates=templates,
        client=client,
        store_timeout=settings.store_timeout,
        record_unmatched=settings.record_unmatched,
    )


async def close_components(c: PipelineComponents) -> None:
    await c.catalog.aclose()
    if c.templates is not None:
        await c.templates.close()
    await c.records.close()
    if c.client is not None:
        await c.client.close()
