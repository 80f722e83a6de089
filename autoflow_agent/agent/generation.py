"""Generation Orchestrator: provider failover behind per-provider circuit breakers.

For each request:
  1. build_context() selects the node types the request may use and renders
     the prompt plus a slim schema context (never the full catalog).
  2. generate() walks the provider list in priority order, skipping any
     provider whose breaker refuses the call.
  3. Each call is bounded by a timeout.  The raw output must parse into a
     WorkflowGraph and use only node types from the grounding context;
     anything else is a ProviderFailure and counts against the breaker.
  4. The first conforming graph wins.  When none does, AllProvidersFailedError.

Every call appends a GenerationAttempt to the caller's attempts list.
Cancellation propagates and is never counted as a provider failure.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from autoflow_agent.agent.compiler import GraphParseError, WorkflowGraph
from autoflow_agent.agent.errors import AllProvidersFailedError, ProviderFailure
from autoflow_agent.agent.intent import Intent
from autoflow_agent.agent.matcher import RankedTemplate
from autoflow_agent.agent.resilience import CircuitBreaker
from autoflow_agent.knowledge.catalog import HTTP_REQUEST_TYPE, CapabilityCatalog
from autoflow_agent.reasoning import GenerationProvider

logger = logging.getLogger("autoflow_agent.agent.generation")

TRIGGER_TYPES: dict[str, str] = {
    "schedule": "n8n-nodes-base.scheduleTrigger",
    "webhook": "n8n-nodes-base.webhook",
    "manual": "n8n-nodes-base.manualTrigger",
}

# Always offered so providers can shape data between integrations.
_UTILITY_TYPES: tuple[str, ...] = (
    "n8n-nodes-base.set",
    "n8n-nodes-base.code",
    "n8n-nodes-base.if",
    "n8n-nodes-base.merge",
    "n8n-nodes-base.wait",
    "n8n-nodes-base.splitInBatches",
    HTTP_REQUEST_TYPE,
)

_INTENT_LINE_RE = re.compile(r"^INTENT: (\{.*\})$", re.MULTILINE)

_MAX_TEMPLATES_IN_PROMPT = 3


# ---------------------------------------------------------------------------
# Attempt log
# ---------------------------------------------------------------------------


@dataclass
class GenerationAttempt:
    """One provider call (append-only log entry)."""

    provider_id: str
    prompt_digest: str
    raw_output: str = ""
    parse_succeeded: bool = False
    graph: WorkflowGraph | None = None
    error: str | None = None
    validation_chain: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "prompt_digest": self.prompt_digest,
            "raw_output": self.raw_output[:2000],
            "parse_succeeded": self.parse_succeeded,
            "node_count": len(self.graph.nodes) if self.graph else 0,
            "error": self.error,
            "validation_chain": list(self.validation_chain),
            "duration_ms": round(self.duration_ms, 1),
        }


def prompt_digest(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationContext:
    prompt: str
    schema_context: list[dict[str, Any]]
    allowed_types: frozenset[str]


def trigger_type_for(intent: Intent, catalog: CapabilityCatalog) -> str:
    """Catalog trigger node type for the intent's trigger kind."""
    if intent.trigger_kind == "event":
        for node_type in intent.node_types:
            schema = catalog.get(node_type)
            if schema is not None and schema.trigger:
                return schema.node_type
        return TRIGGER_TYPES["webhook"]
    return TRIGGER_TYPES.get(intent.trigger_kind, TRIGGER_TYPES["manual"])


def grounding_types(
    intent: Intent,
    catalog: CapabilityCatalog,
    templates: list[RankedTemplate] | None = None,
) -> list[str]:
    """Node types the request may use, in a stable order, all present in the catalog."""
    wanted: list[str] = [trigger_type_for(intent, catalog), *intent.node_types, *_UTILITY_TYPES]
    for ranked in (templates or [])[:_MAX_TEMPLATES_IN_PROMPT]:
        wanted.extend(ranked.candidate.graph.node_types())
    snapshot = catalog.current()
    out: list[str] = []
    for node_type in wanted:
        schema = snapshot.get(node_type)
        if schema is not None and schema.node_type not in out:
            out.append(schema.node_type)
    return out


def build_prompt(intent: Intent, templates: list[RankedTemplate] | None = None) -> str:
    lines = [
        f"REQUEST: {intent.text}",
        f"INTENT: {json.dumps(intent.to_dict(), sort_keys=True)}",
    ]
    if intent.schedule:
        lines.append(f"SCHEDULE (cron): {intent.schedule}")
    if templates:
        lines.append("REFERENCE TEMPLATES (verified, adapt as needed):")
        for ranked in templates[:_MAX_TEMPLATES_IN_PROMPT]:
            lines.append(json.dumps({
                "name": ranked.candidate.name,
                "confidence": round(ranked.confidence, 3),
                "workflow": ranked.candidate.graph.to_dict(),
            }))
    lines.append("Generate the workflow JSON now.")
    return "\n".join(lines)


def parse_prompt_intent(prompt: str) -> Intent | None:
    """Recover the structured intent embedded by build_prompt(), if present."""
    m = _INTENT_LINE_RE.search(prompt)
    if not m:
        return None
    try:
        return Intent.from_dict(json.loads(m.group(1)))
    except (ValueError, TypeError):
        return None


def build_context(
    intent: Intent,
    catalog: CapabilityCatalog,
    templates: list[RankedTemplate] | None = None,
) -> GenerationContext:
    types = grounding_types(intent, catalog, templates)
    return GenerationContext(
        prompt=build_prompt(intent, templates),
        schema_context=catalog.grounding_context(types),
        allowed_types=frozenset(types),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class GenerationOrchestrator:
    """Priority-ordered provider failover.

    The orchestrator (and therefore every breaker) is shared by all requests
    in the process.
    """

    def __init__(
        self,
        providers: list[GenerationProvider],
        failure_threshold: int = 3,
        cooldown: float = 60.0,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not providers:
            raise ValueError("GenerationOrchestrator needs at least one provider")
        self._providers = list(providers)
        self._timeout = timeout
        self._breakers: dict[str, CircuitBreaker] = {
            p.provider_id: CircuitBreaker(
                p.provider_id, failure_threshold=failure_threshold, cooldown=cooldown, clock=clock
            )
            for p in self._providers
        }

    @property
    def providers(self) -> list[GenerationProvider]:
        return list(self._providers)

    def breaker(self, provider_id: str) -> CircuitBreaker:
        return self._breakers[provider_id]

    def breaker_states(self) -> list[dict[str, Any]]:
        return [b.to_dict() for b in self._breakers.values()]

    async def generate(
        self,
        intent: Intent,
        context: GenerationContext,
        attempts: list[GenerationAttempt] | None = None,
    ) -> WorkflowGraph:
        """Return the first contract-conforming graph, or raise AllProvidersFailedError."""
        attempts = attempts if attempts is not None else []
        digest = prompt_digest(context.prompt)
        failures: list[ProviderFailure] = []
        skipped: list[str] = []

        for provider in self._providers:
            pid = provider.provider_id
            breaker = self._breakers[pid]
            if not breaker.allow_request():
                logger.info("[Generation] Skipping %s (breaker %s)", pid, breaker.state.value)
                skipped.append(pid)
                continue

            attempt = GenerationAttempt(provider_id=pid, prompt_digest=digest)
            attempts.append(attempt)
            started = time.monotonic()
            try:
                raw = await asyncio.wait_for(
                    provider.generate(context.prompt, context.schema_context, self._timeout),
                    timeout=self._timeout,
                )
                attempt.raw_output = raw or ""
                graph = self._check_contract(pid, attempt, context)
            except asyncio.CancelledError:
                breaker.release()
                attempt.error = "cancelled"
                raise
            except ProviderFailure as failure:
                self._record_failure(breaker, attempt, failure, failures)
                continue
            except asyncio.TimeoutError:
                failure = ProviderFailure(pid, "timeout", f"no response within {self._timeout:.0f}s")
                self._record_failure(breaker, attempt, failure, failures)
                continue
            except Exception as e:
                failure = ProviderFailure(pid, "exception", f"{type(e).__name__}: {e}")
                self._record_failure(breaker, attempt, failure, failures)
                continue
            finally:
                attempt.duration_ms = (time.monotonic() - started) * 1000

            breaker.record_success()
            attempt.validation_chain.append("contract:ok")
            logger.info(
                "[Generation] %s produced %d nodes in %.0fms",
                pid, len(graph.nodes), attempt.duration_ms,
            )
            return graph

        logger.error(
            "[Generation] All providers failed (%d failed, %d skipped)", len(failures), len(skipped)
        )
        raise AllProvidersFailedError(failures, skipped=skipped)

    @staticmethod
    def _record_failure(
        breaker: CircuitBreaker,
        attempt: GenerationAttempt,
        failure: ProviderFailure,
        failures: list[ProviderFailure],
    ) -> None:
        breaker.record_failure()
        attempt.error = f"{failure.reason}: {failure.message}"
        failures.append(failure)
        logger.warning("[Generation] %s failed: %s", failure.provider_id, attempt.error)

    @staticmethod
    def _check_contract(
        provider_id: str, attempt: GenerationAttempt, context: GenerationContext
    ) -> WorkflowGraph:
        try:
            graph = WorkflowGraph.from_json(attempt.raw_output)
        except GraphParseError as e:
            attempt.validation_chain.append("parse:failed")
            raise ProviderFailure(provider_id, "malformed_output", str(e)) from e
        attempt.parse_succeeded = True
        attempt.graph = graph
        attempt.validation_chain.append("parse:ok")

        if not graph.nodes:
            attempt.validation_chain.append("contract:empty")
            raise ProviderFailure(provider_id, "contract_violation", "workflow has no nodes")
        foreign = sorted({t for t in graph.node_types() if t not in context.allowed_types})
        if foreign:
            attempt.validation_chain.append("contract:foreign_types")
            raise ProviderFailure(
                provider_id,
                "contract_violation",
                f"node types outside grounding context: {', '.join(foreign)}",
                node_types=foreign,
            )
        return graph
