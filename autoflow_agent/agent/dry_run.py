"""Dry-Run Validator and Execution Simulator.

Both submit the candidate graph to the automation engine as an inactive,
clearly tagged, ephemeral workflow:

    [autoflow dry-run] <token>

with execution-data saving disabled.  ephemeral_workflow() is the only way
either stage touches the engine, and it removes the remote artifact on every
exit path: success, rejection, exception, timeout and cancellation.  When the
create call itself times out (or is cancelled) the artifact id is unknown,
so cleanup sweeps by the unique tagged name instead.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from autoflow_agent.agent.compiler import WorkflowGraph
from autoflow_agent.agent.errors import EngineRejection
from autoflow_agent.agent.validation import Issue, IssueKind, Severity, ValidationResult
from autoflow_agent.client.engine_client import EngineClient, error_message, is_engine_error

logger = logging.getLogger("autoflow_agent.agent.dry_run")

DRY_RUN_TAG = "[autoflow dry-run]"
UNKNOWN_NODE = "UNKNOWN"

_INERT_SETTINGS: dict[str, Any] = {
    "saveDataErrorExecution": "none",
    "saveDataSuccessExecution": "none",
    "saveManualExecutions": False,
    "executionOrder": "v1",
}

_FINISHED_STATUSES = frozenset({"success", "error", "crashed", "failed", "canceled"})

_NODE_REF_RE = re.compile(r"""node\s*:?\s*["'“]([^"'”]+)["'”]""", re.IGNORECASE)


def node_from_message(message: str, graph: WorkflowGraph) -> str | None:
    """Best-effort mapping from an engine error message to a node id."""
    for m in _NODE_REF_RE.finditer(message or ""):
        node = graph.find_node(m.group(1))
        if node is not None:
            return node.id
    for node in graph.nodes:
        for quoted in (f'"{node.display_name}"', f"'{node.display_name}'"):
            if quoted in (message or ""):
                return node.id
    return None


# ---------------------------------------------------------------------------
# Scoped remote artifact
# ---------------------------------------------------------------------------


@asynccontextmanager
async def ephemeral_workflow(
    client: EngineClient, graph: WorkflowGraph, timeout: float
) -> AsyncIterator[str]:
    """Create an inactive tagged workflow, yield its id, always delete it.

    Raises EngineRejection when the engine refuses (or never answers) the
    create call.
    """
    name = f"{DRY_RUN_TAG} {uuid.uuid4().hex[:12]}"
    nodes, connections = graph.to_engine_payload()
    workflow_id: str | None = None
    try:
        try:
            result = await asyncio.wait_for(
                client.create_workflow(name, nodes, connections, settings=dict(_INERT_SETTINGS)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise EngineRejection(f"engine did not respond within {timeout:.0f}s (timed out)") from e
        if is_engine_error(result):
            if result.get("timeout"):
                raise EngineRejection(f"engine request timed out: {error_message(result)}")
            raise EngineRejection(error_message(result), status_code=result.get("status_code"))
        workflow_id = str(result.get("id") or "") or None
        if workflow_id is None:
            raise EngineRejection("engine accepted the workflow but returned no id")
        logger.debug("[DryRun] Created ephemeral workflow %s (%s)", workflow_id, name)
        yield workflow_id
    finally:
        await asyncio.shield(_cleanup(client, workflow_id, name, timeout))


async def _cleanup(
    client: EngineClient, workflow_id: str | None, name: str, timeout: float
) -> None:
    ids = [workflow_id] if workflow_id else await _sweep(client, name, timeout)
    for wid in ids:
        try:
            result = await asyncio.wait_for(client.delete_workflow(wid), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("[DryRun] Cleanup of %s timed out; artifact may be left behind", wid)
            continue
        if is_engine_error(result) and result.get("status_code") != 404:
            logger.error("[DryRun] Cleanup of %s failed: %s", wid, error_message(result))
        else:
            logger.debug("[DryRun] Deleted ephemeral workflow %s", wid)


async def _sweep(client: EngineClient, name: str, timeout: float) -> list[str]:
    """Ids of workflows carrying exactly this tagged name."""
    try:
        result = await asyncio.wait_for(client.list_workflows(name=name), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("[DryRun] Sweep for %r timed out", name)
        return []
    if is_engine_error(result):
        logger.error("[DryRun] Sweep for %r failed: %s", name, error_message(result))
        return []
    items = result.get("data", []) if isinstance(result, dict) else result
    found = [str(w["id"]) for w in items or [] if isinstance(w, dict) and w.get("name") == name and w.get("id")]
    if found:
        logger.warning("[DryRun] Sweeping %d orphaned artifact(s) named %r", len(found), name)
    return found


# ---------------------------------------------------------------------------
# Dry-Run Validator
# ---------------------------------------------------------------------------


class DryRunValidator:
    """Submits the graph inert to the engine; rejection becomes an ENGINE_REJECTION issue."""

    def __init__(self, client: EngineClient, timeout: float = 30.0, enabled: bool = True) -> None:
        self._client = client
        self._timeout = timeout
        self._enabled = enabled

    async def dry_run(self, graph: WorkflowGraph) -> ValidationResult:
        if not self._enabled:
            return ValidationResult.from_findings([], ["dry-run disabled"], stage="dry_run")
        try:
            async with ephemeral_workflow(self._client, graph, self._timeout):
                pass
        except EngineRejection as e:
            logger.info("[DryRun] Engine rejected workflow: %s", e.message)
            issue = Issue(
                IssueKind.ENGINE_REJECTION,
                node_from_message(e.message, graph),
                e.message,
                Severity.HIGH,
            )
            return ValidationResult.from_findings([issue], stage="dry_run")
        logger.info("[DryRun] Engine accepted workflow (%d nodes)", len(graph.nodes))
        return ValidationResult.from_findings([], stage="dry_run")


# ---------------------------------------------------------------------------
# Execution Simulator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    failed_node_id: str | None = None
    raw_error: str | None = None
    execution_id: str | None = None
    skipped: bool = False

    def to_validation(self) -> ValidationResult:
        if self.success:
            warnings = ["simulation skipped"] if self.skipped else []
            return ValidationResult.from_findings([], warnings, stage="execution")
        issue = Issue(
            IssueKind.EXECUTION_FAILURE,
            self.failed_node_id,
            self.raw_error or "execution failed",
            Severity.HIGH,
        )
        return ValidationResult.from_findings([issue], stage="execution")

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failed_node_id": self.failed_node_id,
            "raw_error": self.raw_error,
            "execution_id": self.execution_id,
            "skipped": self.skipped,
        }


def sample_data_for(trigger_kind: str) -> dict[str, Any]:
    """Synthetic trigger output for one simulated run."""
    match trigger_kind:
        case "webhook":
            return {
                "headers": {"content-type": "application/json"},
                "params": {},
                "query": {},
                "body": {"id": "sample-1", "message": "synthetic test payload"},
            }
        case "schedule":
            return {"timestamp": "2026-01-05T08:00:00.000Z", "Day of week": "Monday"}
        case "event":
            return {"id": "evt_sample", "type": "synthetic.event", "data": {"object": {}}}
        case _:
            return {}


class ExecutionSimulator:
    """Runs the graph once with synthetic input and attributes any failure to one node."""

    def __init__(
        self,
        client: EngineClient,
        timeout: float = 30.0,
        polls: int = 10,
        poll_interval: float = 1.0,
        enabled: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._polls = max(1, polls)
        self._poll_interval = poll_interval
        self._enabled = enabled
        self._sleep = sleep

    async def simulate(
        self, graph: WorkflowGraph, sample_data: dict[str, Any] | None = None
    ) -> ExecutionResult:
        if not self._enabled:
            return ExecutionResult(success=True, skipped=True)
        try:
            async with ephemeral_workflow(self._client, graph, self._timeout) as workflow_id:
                return await self._execute(graph, workflow_id, sample_data or {})
        except EngineRejection as e:
            return ExecutionResult(
                success=False,
                failed_node_id=node_from_message(e.message, graph) or UNKNOWN_NODE,
                raw_error=e.message,
            )

    async def _execute(
        self, graph: WorkflowGraph, workflow_id: str, sample_data: dict[str, Any]
    ) -> ExecutionResult:
        pin_data = _pin_data(graph, sample_data)
        try:
            started = await asyncio.wait_for(
                self._client.run_workflow(workflow_id, pin_data), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            return ExecutionResult(False, UNKNOWN_NODE, f"run did not start within {self._timeout:.0f}s")
        if is_engine_error(started):
            msg = error_message(started)
            return ExecutionResult(False, node_from_message(msg, graph) or UNKNOWN_NODE, msg)

        envelope = started.get("data") if isinstance(started.get("data"), dict) else started
        if isinstance(envelope, dict) and "resultData" in envelope:
            return _interpret({"status": "finished", "finished": True, "data": envelope}, graph)

        execution_id = str(envelope.get("executionId") or started.get("id") or "")
        if not execution_id:
            return ExecutionResult(False, UNKNOWN_NODE, "engine returned no execution id")

        for poll in range(self._polls):
            try:
                execution = await asyncio.wait_for(
                    self._client.get_execution(execution_id), timeout=self._timeout
                )
            except asyncio.TimeoutError:
                return ExecutionResult(
                    False, UNKNOWN_NODE, "execution status request timed out", execution_id
                )
            if is_engine_error(execution):
                return ExecutionResult(False, UNKNOWN_NODE, error_message(execution), execution_id)
            if execution.get("finished") or execution.get("status") in _FINISHED_STATUSES:
                result = _interpret(execution, graph)
                logger.info(
                    "[Simulator] Execution %s finished after %d poll(s): success=%s",
                    execution_id, poll + 1, result.success,
                )
                return ExecutionResult(
                    result.success, result.failed_node_id, result.raw_error, execution_id
                )
            await self._sleep(self._poll_interval)

        logger.warning("[Simulator] Execution %s still running after %d polls", execution_id, self._polls)
        return ExecutionResult(
            False, UNKNOWN_NODE, f"execution did not finish after {self._polls} polls", execution_id
        )


def _pin_data(graph: WorkflowGraph, sample_data: dict[str, Any]) -> dict[str, Any]:
    """Pin the synthetic item on the entry node (first node with no incoming edge)."""
    targets = {c.target for c in graph.connections}
    entry = next((n for n in graph.nodes if n.id not in targets), None)
    if entry is None:
        return {}
    return {entry.display_name: [{"json": sample_data}]}


def _interpret(execution: dict[str, Any], graph: WorkflowGraph) -> ExecutionResult:
    result_data = (execution.get("data") or {}).get("resultData") or {}
    run_data = result_data.get("runData") or {}
    for node_name, runs in run_data.items():
        if not runs:
            continue
        error = (runs[-1] or {}).get("error")
        if error:
            node = graph.find_node(node_name)
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ExecutionResult(False, node.id if node else UNKNOWN_NODE, message or "node failed")

    top_error = result_data.get("error")
    if top_error:
        message = top_error.get("message", "") if isinstance(top_error, dict) else str(top_error)
        node_name = ((top_error.get("node") or {}).get("name")) if isinstance(top_error, dict) else None
        node = graph.find_node(node_name) if node_name else None
        node_id = node.id if node else (node_from_message(message, graph) or UNKNOWN_NODE)
        return ExecutionResult(False, node_id, message or "execution failed")

    if execution.get("status") in ("error", "crashed", "failed", "canceled"):
        return ExecutionResult(False, UNKNOWN_NODE, f"execution ended with status {execution['status']}")
    return ExecutionResult(True)
