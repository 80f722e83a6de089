"""Workflow generation and validation pipeline.

Stages, in request order:
    intent.IntentExtractor         text -> Intent
    matcher.TemplateMatcher        Intent -> ranked stored templates
    generation.GenerationOrchestrator  provider failover behind circuit breakers
    validation.StructuralValidator graph checks against the capability catalog
    dry_run.DryRunValidator        inert submission to the engine
    dry_run.ExecutionSimulator     one run with sample data
    healer.ErrorPatternMatcher / healer.AutoFixer   bounded fix loop
    saga.DeploymentSaga            deploy with compensation

pipeline.build_pipeline() wires the stages into a LangGraph state machine and
pipeline.PipelineRunner runs requests through it.  Those two are imported from
their module directly; this package only re-exports the graph model and errors.
"""

from autoflow_agent.agent.compiler import Connection, Node, PatchResult, WorkflowGraph, apply_patch_ops
from autoflow_agent.agent.errors import (
    AllProvidersFailedError,
    CapabilityGapError,
    DuplicateIdempotencyKeyError,
    EngineRejection,
    ExecutionError,
    FixNotApplicable,
    PipelineError,
    ProviderFailure,
    SagaStepFailure,
    StructuralValidationError,
)
from autoflow_agent.agent.intent import Intent, IntentExtractor

__all__ = [
    # Graph model
    "WorkflowGraph",
    "Node",
    "Connection",
    "PatchResult",
    "apply_patch_ops",
    # Intent
    "Intent",
    "IntentExtractor",
    # Errors
    "PipelineError",
    "CapabilityGapError",
    "StructuralValidationError",
    "ProviderFailure",
    "AllProvidersFailedError",
    "EngineRejection",
    "ExecutionError",
    "SagaStepFailure",
    "DuplicateIdempotencyKeyError",
    "FixNotApplicable",
]
