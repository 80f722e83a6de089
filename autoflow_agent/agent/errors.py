"""Pipeline exception taxonomy.

Every failure the pipeline can surface derives from PipelineError.  Stages
raise the narrowest subclass; the pipeline graph maps them onto one of the
four terminal outcomes (deployed, capability_gap, graceful_failure,
saga_rolled_back) so callers never see a raw traceback.

  CapabilityGapError        unknown node type / integration (not retried)
  StructuralValidationError bad parameter or connection (auto-fix eligible)
  ProviderFailure           provider timeout / malformed output (breaker + fallback)
  AllProvidersFailedError   every provider failed or was skipped (terminal)
  EngineRejection           dry-run rejected by the engine (auto-fix eligible)
  ExecutionError            simulated run failed (auto-fix eligible when matched)
  SagaStepFailure           deployment step exhausted its retries (compensation)
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class CapabilityGapError(PipelineError):
    """One or more node types / integrations are not in the capability catalog.

    missing:      node types (or integration names) that could not be resolved.
    alternatives: suggested catalog node types, keyed by the missing entry.
    """

    def __init__(self, missing: list[str], alternatives: dict[str, list[str]]) -> None:
        super().__init__(f"Unsupported capabilities: {', '.join(missing)}")
        self.missing = missing
        self.alternatives = alternatives

    def flat_alternatives(self) -> list[str]:
        """All suggested alternatives, de-duplicated, in suggestion order."""
        seen: list[str] = []
        for options in self.alternatives.values():
            for option in options:
                if option not in seen:
                    seen.append(option)
        return seen


class StructuralValidationError(PipelineError):
    """A candidate graph failed structural validation."""

    def __init__(self, issues: list[Any]) -> None:
        super().__init__("; ".join(getattr(i, "message", str(i)) for i in issues))
        self.issues = issues


class ProviderFailure(PipelineError):
    """A generation provider call failed (timeout, malformed output, contract, error).

    node_types: for contract violations, the node types outside the grounding context.
    """

    def __init__(
        self,
        provider_id: str,
        reason: str,
        message: str,
        node_types: list[str] | None = None,
    ) -> None:
        super().__init__(f"{provider_id}: {reason}: {message}")
        self.provider_id = provider_id
        self.reason = reason
        self.message = message
        self.node_types = node_types or []


class AllProvidersFailedError(PipelineError):
    """No provider produced a parseable, contract-conforming graph."""

    def __init__(self, attempts: list[Any], skipped: list[str] | None = None) -> None:
        tried = len(attempts)
        skipped = skipped or []
        super().__init__(
            f"All generation providers failed ({tried} attempted, {len(skipped)} skipped)"
        )
        self.attempts = attempts
        self.skipped = skipped


class EngineRejection(PipelineError):
    """The automation engine refused a dry-run submission."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ExecutionError(PipelineError):
    """A simulated execution failed at (or could not be attributed to) a node."""

    def __init__(self, message: str, node_id: str) -> None:
        super().__init__(f"{node_id}: {message}")
        self.message = message
        self.node_id = node_id


class SagaStepFailure(PipelineError):
    """A deployment saga step failed after exhausting its retries.

    step:              name of the failing step.
    furthest_completed: name of the last step that completed, or None.
    """

    def __init__(self, step: str, furthest_completed: str | None, cause: BaseException) -> None:
        super().__init__(f"Saga step '{step}' failed: {cause}")
        self.step = step
        self.furthest_completed = furthest_completed
        self.cause = cause


class DuplicateIdempotencyKeyError(PipelineError):
    """A deployment record with the same idempotency key already exists."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Deployment already recorded for key {idempotency_key!r}")
        self.idempotency_key = idempotency_key


class FixNotApplicable(PipelineError):
    """An auto-fix could not be applied to the graph for the given diagnosis."""
