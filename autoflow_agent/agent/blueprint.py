"""BlueprintProvider: deterministic, catalog-grounded workflow composer.

Builds a linear graph straight from the structured intent embedded in the
prompt and the schema context it was given:

    trigger -> fetch -> transform / ai -> storage -> notification

Every required parameter is filled from its schema default.  Because it only
ever uses types present in schema_context, its output always satisfies the
generation contract.  It runs last in the provider chain so a request still
gets a graph when every LLM provider is down.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from autoflow_agent.agent.compiler import Connection, Node, WorkflowGraph
from autoflow_agent.agent.generation import TRIGGER_TYPES, parse_prompt_intent
from autoflow_agent.agent.intent import Intent
from autoflow_agent.knowledge.catalog import HTTP_REQUEST_TYPE, ParamSpec, local_name
from autoflow_agent.reasoning import GenerationProvider

logger = logging.getLogger("autoflow_agent.agent.blueprint")

# Position of each category in the chain; unknown categories sit mid-chain.
_CATEGORY_ORDER: dict[str, int] = {
    "fetch": 0,
    "transform": 1,
    "ai": 1,
    "flow": 1,
    "utility": 1,
    "storage": 2,
    "notification": 3,
}


class BlueprintProvider(GenerationProvider):
    """Deterministic fallback provider (no network, no LLM)."""

    @property
    def provider_id(self) -> str:
        return "blueprint"

    async def generate(
        self, prompt: str, schema_context: list[dict[str, Any]], timeout: float
    ) -> str:
        intent = parse_prompt_intent(prompt)
        if intent is None:
            raise ValueError("blueprint provider needs an INTENT line in the prompt")
        graph = compose(intent, schema_context)
        logger.info(
            "[Blueprint] Composed %d nodes: %s",
            len(graph.nodes), " -> ".join(local_name(t) for t in graph.node_types()),
        )
        return json.dumps(graph.to_dict())


def compose(intent: Intent, schema_context: list[dict[str, Any]]) -> WorkflowGraph:
    """Compose a linear workflow for intent from the given slim schemas."""
    schemas = {s["type"]: s for s in schema_context}

    trigger = _pick_trigger(intent, schemas)
    body = [
        schemas[t] for t in intent.node_types
        if t in schemas and not schemas[t].get("trigger")
    ]
    body.sort(key=lambda s: _CATEGORY_ORDER.get(s.get("category", "utility"), 1))
    if not body and HTTP_REQUEST_TYPE in schemas:
        body = [schemas[HTTP_REQUEST_TYPE]]

    graph = WorkflowGraph(name=_workflow_name(intent))
    used_names: set[str] = set()
    for index, schema in enumerate([s for s in (trigger, *body) if s is not None]):
        node_type = schema["type"]
        node = Node(
            id=f"{local_name(node_type).lower()}_{index}",
            type=node_type,
            name=_unique_name(_display_name(node_type), used_names),
            parameters=_default_parameters(schema),
            position=[250.0 + 220.0 * index, 300.0],
        )
        if node_type == TRIGGER_TYPES["schedule"] and intent.schedule:
            node.parameters["rule"] = {
                "interval": [{"field": "cronExpression", "expression": intent.schedule}]
            }
        elif node_type == TRIGGER_TYPES["webhook"]:
            node.parameters["path"] = _webhook_path(intent)
        graph.nodes.append(node)

    for source, target in zip(graph.nodes, graph.nodes[1:]):
        graph.connections.append(Connection(source=source.id, target=target.id))
    return graph


def _pick_trigger(intent: Intent, schemas: dict[str, dict[str, Any]]) -> dict[str, Any] | None:
    if intent.trigger_kind == "event":
        for t in intent.node_types:
            if t in schemas and schemas[t].get("trigger"):
                return schemas[t]
    wanted = TRIGGER_TYPES.get(intent.trigger_kind, TRIGGER_TYPES["manual"])
    if wanted in schemas:
        return schemas[wanted]
    return next((s for s in schemas.values() if s.get("trigger")), None)


def _default_parameters(schema: dict[str, Any]) -> dict[str, Any]:
    specs = [ParamSpec.from_dict(p) for p in schema.get("required", ())]
    return {spec.name: spec.fallback_value() for spec in specs}


def _display_name(node_type: str) -> str:
    name = local_name(node_type)
    spaced = "".join(" " + c if c.isupper() else c for c in name).strip()
    return spaced[:1].upper() + spaced[1:]


def _unique_name(name: str, used: set[str]) -> str:
    candidate, n = name, 2
    while candidate in used:
        candidate = f"{name} {n}"
        n += 1
    used.add(candidate)
    return candidate


def _workflow_name(intent: Intent) -> str:
    text = " ".join(intent.text.split())
    return (text[:60].rstrip() or f"{intent.action} workflow").capitalize()


def _webhook_path(intent: Intent) -> str:
    digest = hashlib.sha256(intent.text.encode("utf-8")).hexdigest()[:8]
    return f"autoflow-{intent.action}-{digest}"
