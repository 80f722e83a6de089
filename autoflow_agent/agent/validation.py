"""Structural validation of a WorkflowGraph against the capability catalog.

Validators never modify the graph; every check reads it and appends Issues.

Issue kinds and severities:
  CAPABILITY_GAP        critical  node type absent from the catalog (with alternatives)
  DUPLICATE_NODE_ID     critical
  EMPTY_GRAPH           critical
  INVALID_CONNECTION    critical  missing endpoint or undeclared port
  CYCLE                 critical  unless a node in the cycle declares loop semantics
  MISSING_PARAMETER     high      required parameter absent
  TYPE_MISMATCH         high      value incompatible with the declared parameter type
  DUPLICATE_NODE_NAME   high
  INVALID_WEBHOOK_PATH  high
  NO_TRIGGER            medium

Unknown parameters and missing credentials are warnings only.
A result is valid when no issue is high or critical.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from autoflow_agent.agent.compiler import WorkflowGraph
from autoflow_agent.agent.errors import CapabilityGapError, StructuralValidationError
from autoflow_agent.knowledge.catalog import CapabilityCatalog, CatalogSnapshot, ParamSpec

logger = logging.getLogger("autoflow_agent.agent.validation")

WEBHOOK_TYPE = "n8n-nodes-base.webhook"
_WEBHOOK_PATH_RE = re.compile(r"^[A-Za-z0-9_\-/]+$")


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueKind(str, Enum):
    CAPABILITY_GAP = "CAPABILITY_GAP"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    INVALID_CONNECTION = "INVALID_CONNECTION"
    CYCLE = "CYCLE"
    DUPLICATE_NODE_ID = "DUPLICATE_NODE_ID"
    DUPLICATE_NODE_NAME = "DUPLICATE_NODE_NAME"
    EMPTY_GRAPH = "EMPTY_GRAPH"
    NO_TRIGGER = "NO_TRIGGER"
    INVALID_WEBHOOK_PATH = "INVALID_WEBHOOK_PATH"
    ENGINE_REJECTION = "ENGINE_REJECTION"
    EXECUTION_FAILURE = "EXECUTION_FAILURE"


_BLOCKING = frozenset({Severity.HIGH, Severity.CRITICAL})

# Confidence deduction per issue / warning.
_PENALTY: dict[Severity, float] = {
    Severity.CRITICAL: 0.4,
    Severity.HIGH: 0.2,
    Severity.MEDIUM: 0.1,
    Severity.LOW: 0.05,
}
_WARNING_PENALTY = 0.02


@dataclass(frozen=True)
class Issue:
    """One validation finding.

    node_id is None for graph-level issues.  param names the offending
    parameter for MISSING_PARAMETER / TYPE_MISMATCH.
    """

    kind: IssueKind
    node_id: str | None
    message: str
    severity: Severity
    param: str | None = None

    @property
    def blocking(self) -> bool:
        return self.severity in _BLOCKING

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "node_id": self.node_id,
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.param:
            d["param"] = self.param
        return d


@dataclass(frozen=True)
class ValidationResult:
    """Immutable outcome of one validation stage for one attempt.

    stage: "structural", "dry_run" or "execution".
    alternatives: suggested catalog node types keyed by unknown node type.
    """

    valid: bool
    confidence: float
    issues: tuple[Issue, ...] = ()
    warnings: tuple[str, ...] = ()
    stage: str = "structural"
    alternatives: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_findings(
        cls,
        issues: list[Issue],
        warnings: list[str] | None = None,
        stage: str = "structural",
        alternatives: dict[str, list[str]] | None = None,
    ) -> "ValidationResult":
        warnings = warnings or []
        penalty = sum(_PENALTY[i.severity] for i in issues) + _WARNING_PENALTY * len(warnings)
        return cls(
            valid=not any(i.blocking for i in issues),
            confidence=round(max(0.0, 1.0 - penalty), 4),
            issues=tuple(issues),
            warnings=tuple(warnings),
            stage=stage,
            alternatives=dict(alternatives or {}),
        )

    @property
    def blocking_issues(self) -> list[Issue]:
        return [i for i in self.issues if i.blocking]

    def gaps(self) -> list[Issue]:
        return [i for i in self.issues if i.kind == IssueKind.CAPABILITY_GAP]

    def raise_for_gaps(self) -> None:
        """Raise CapabilityGapError when any node type is absent from the catalog."""
        if self.gaps():
            raise CapabilityGapError(list(self.alternatives), self.alternatives)

    def raise_for_issues(self) -> None:
        if not self.valid:
            raise StructuralValidationError(self.blocking_issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "valid": self.valid,
            "confidence": self.confidence,
            "issues": [i.to_dict() for i in self.issues],
            "warnings": list(self.warnings),
            "alternatives": {k: list(v) for k, v in self.alternatives.items()},
        }


# ---------------------------------------------------------------------------
# Type compatibility
# ---------------------------------------------------------------------------


def is_expression(value: Any) -> bool:
    """n8n expressions ("={{ ... }}") resolve at runtime and fit any type."""
    return isinstance(value, str) and value.startswith("=")


def type_compatible(value: Any, spec: ParamSpec) -> bool:
    if is_expression(value):
        return True
    match spec.type:
        case "string":
            return isinstance(value, str)
        case "number":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        case "boolean":
            return isinstance(value, bool)
        case "options":
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                return False
            return not spec.options or value in spec.options
        case "multiOptions":
            return isinstance(value, list)
        case "json":
            return isinstance(value, (str, dict, list))
        case "collection" | "fixedCollection":
            return isinstance(value, dict)
        case _:
            return True


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class StructuralValidator:
    """Checks a graph against the current catalog snapshot. Never mutates the graph."""

    def __init__(self, catalog: CapabilityCatalog) -> None:
        self._catalog = catalog

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        catalog = self._catalog
        snapshot = catalog.current()
        issues: list[Issue] = []
        warnings: list[str] = []
        alternatives: dict[str, list[str]] = {}

        if not graph.nodes:
            issues.append(Issue(
                IssueKind.EMPTY_GRAPH, None, "Workflow has no nodes", Severity.CRITICAL
            ))
            return ValidationResult.from_findings(issues, warnings)

        for node_id, count in Counter(n.id for n in graph.nodes).items():
            if count > 1:
                issues.append(Issue(
                    IssueKind.DUPLICATE_NODE_ID, node_id,
                    f"Node id '{node_id}' is used by {count} nodes", Severity.CRITICAL,
                ))
        for name, count in Counter(n.display_name for n in graph.nodes).items():
            if count > 1:
                node = next(n for n in graph.nodes if n.display_name == name)
                issues.append(Issue(
                    IssueKind.DUPLICATE_NODE_NAME, node.id,
                    f"Node name '{name}' is used by {count} nodes", Severity.HIGH,
                ))

        has_trigger = False
        for node in graph.nodes:
            schema = snapshot.schemas.get(node.type)
            if schema is None:
                options = catalog.suggest_alternatives(node.type, snapshot=snapshot)
                alternatives[node.type] = options
                issues.append(Issue(
                    IssueKind.CAPABILITY_GAP, node.id,
                    f"Node type '{node.type}' is not in the capability catalog "
                    f"(alternatives: {', '.join(options)})",
                    Severity.CRITICAL,
                ))
                continue
            has_trigger = has_trigger or schema.trigger

            for spec in schema.required_params:
                if node.parameters.get(spec.name) is None:
                    issues.append(Issue(
                        IssueKind.MISSING_PARAMETER, node.id,
                        f"Node '{node.display_name}' is missing required parameter '{spec.name}'",
                        Severity.HIGH, param=spec.name,
                    ))
            for param_name, value in node.parameters.items():
                spec = schema.param(param_name)
                if spec is None:
                    warnings.append(
                        f"Node '{node.display_name}' has unknown parameter '{param_name}'"
                    )
                elif value is not None and not type_compatible(value, spec):
                    issues.append(Issue(
                        IssueKind.TYPE_MISMATCH, node.id,
                        f"Node '{node.display_name}' parameter '{param_name}' expects "
                        f"{spec.type}, got {type(value).__name__}",
                        Severity.HIGH, param=param_name,
                    ))
            for credential in schema.credentials:
                if credential not in node.credentials:
                    warnings.append(
                        f"Node '{node.display_name}' requires credential '{credential}' "
                        f"(configure it manually after deployment)"
                    )

            if node.type == WEBHOOK_TYPE:
                path = node.parameters.get("path")
                if not isinstance(path, str) or not _WEBHOOK_PATH_RE.match(path):
                    issues.append(Issue(
                        IssueKind.INVALID_WEBHOOK_PATH, node.id,
                        f"Webhook path {path!r} must be non-empty and use only "
                        f"letters, digits, '-', '_' and '/'",
                        Severity.HIGH, param="path",
                    ))

        if not has_trigger and not alternatives:
            issues.append(Issue(
                IssueKind.NO_TRIGGER, None, "Workflow has no trigger node", Severity.MEDIUM
            ))

        issues.extend(self._check_connections(graph, snapshot))
        issues.extend(self._check_cycles(graph, snapshot))

        result = ValidationResult.from_findings(issues, warnings, alternatives=alternatives)
        logger.debug(
            "[Validator] structural: valid=%s issues=%d warnings=%d",
            result.valid, len(result.issues), len(result.warnings),
        )
        return result

    @staticmethod
    def _check_connections(graph: WorkflowGraph, snapshot: CatalogSnapshot) -> list[Issue]:
        issues: list[Issue] = []
        ids = graph.node_ids()
        for conn in graph.connections:
            label = f"{conn.source}->{conn.target}"
            missing = [end for end in (conn.source, conn.target) if end not in ids]
            if missing:
                issues.append(Issue(
                    IssueKind.INVALID_CONNECTION, conn.source if conn.source in ids else None,
                    f"Connection {label} references missing node(s): {', '.join(missing)}",
                    Severity.CRITICAL,
                ))
                continue
            source_schema = snapshot.schemas.get(graph.get_node(conn.source).type)
            target_schema = snapshot.schemas.get(graph.get_node(conn.target).type)
            if source_schema and not source_schema.has_output(conn.source_port, conn.source_index):
                issues.append(Issue(
                    IssueKind.INVALID_CONNECTION, conn.source,
                    f"Connection {label}: '{conn.source}' declares no output "
                    f"{conn.source_port}[{conn.source_index}]",
                    Severity.CRITICAL,
                ))
            if target_schema and not target_schema.has_input(conn.target_port, conn.target_index):
                issues.append(Issue(
                    IssueKind.INVALID_CONNECTION, conn.target,
                    f"Connection {label}: '{conn.target}' declares no input "
                    f"{conn.target_port}[{conn.target_index}]",
                    Severity.CRITICAL,
                ))
        return issues

    @staticmethod
    def _check_cycles(graph: WorkflowGraph, snapshot: CatalogSnapshot) -> list[Issue]:
        ids = graph.node_ids()
        adjacency: dict[str, list[str]] = {node_id: [] for node_id in ids}
        for conn in graph.connections:
            if conn.source in ids and conn.target in ids:
                adjacency[conn.source].append(conn.target)

        issues: list[Issue] = []
        for component in strongly_connected(adjacency):
            if len(component) == 1:
                only = component[0]
                if only not in adjacency[only]:
                    continue
            loop_ok = False
            for node_id in component:
                node = graph.get_node(node_id)
                schema = snapshot.schemas.get(node.type) if node else None
                if schema is not None and schema.loop:
                    loop_ok = True
                    break
            if loop_ok:
                continue
            ordered = sorted(component)
            issues.append(Issue(
                IssueKind.CYCLE, ordered[0],
                f"Cycle between nodes {', '.join(ordered)} with no loop node",
                Severity.CRITICAL,
            ))
        return issues


def strongly_connected(adjacency: dict[str, list[str]]) -> list[list[str]]:
    """Tarjan's algorithm, iterative. Returns every strongly connected component."""
    index_of: dict[str, int] = {}
    low: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in sorted(adjacency):
        if root in index_of:
            continue
        work: list[tuple[str, int]] = [(root, 0)]
        while work:
            node, child_pos = work.pop()
            if child_pos == 0:
                index_of[node] = low[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            children = adjacency.get(node, [])
            if child_pos < len(children):
                work.append((node, child_pos + 1))
                child = children[child_pos]
                if child not in index_of:
                    work.append((child, 0))
                elif child in on_stack:
                    low[node] = min(low[node], index_of[child])
                continue
            for child in children:
                if child in on_stack:
                    low[node] = min(low[node], low[child])
            if low[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
    return components
