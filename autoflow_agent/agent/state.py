"""Pipeline state: the shared memory flowing through every LangGraph node.

Each node receives the full state and returns a partial dict with only the
keys it updates.  Fields annotated with a reducer use append semantics
(attempt log, validation results, diagnoses, metrics); all other fields are
last-writer-wins.
"""

from __future__ import annotations

from typing import Annotated, Any, TypedDict

from autoflow_agent.agent.compiler import WorkflowGraph
from autoflow_agent.agent.intent import Intent


def _append(existing: list | None, incoming: list | None) -> list:
    """Append-only reducer. LangGraph calls it with (current value, node update)."""
    return (existing or []) + (incoming or [])


class PipelineState(TypedDict, total=False):
    """Full state of one request's pipeline run.

    Lifecycle:
        1. Initialized by PipelineRunner with the request fields.
        2. Stages fill intent, templates, graph and per-stage results.
        3. The fix loop replaces graph and bumps fix_attempts.
        4. A terminal node sets outcome (and message / feedback_id / deployment).
    """

    # Request (set once)
    user_id: str
    text: str
    idempotency_key: str

    # Understanding
    intent: Intent
    # RankedTemplate objects, best first.
    templates: list[Any]
    template_id: int | None
    # Set by check_capabilities / validate_structure when node types are missing.
    alternatives: dict[str, list[str]]

    # Current candidate graph; replaced by each auto-fix.
    graph: WorkflowGraph | None

    # Append-only logs
    attempts: Annotated[list[dict[str, Any]], _append]
    validations: Annotated[list[dict[str, Any]], _append]
    diagnoses: Annotated[list[dict[str, Any]], _append]
    metrics: Annotated[list[dict[str, Any]], _append]

    # Fix loop
    # Blocking failures from the most recent validation stage (Failure objects).
    failures: list[Any]
    fix_attempts: int
    # Name of the stage that produced failures ("structural" | "dry_run" | "execution").
    failed_stage: str | None

    # Terminal
    outcome: str | None
    message: str
    feedback_id: int | None
    deployment: dict[str, Any] | None
    workflow_id: str | None
