"""Error Pattern Matcher and Auto-Fixer.

diagnose() classifies a failure from any validation stage against an ordered
pattern table; the first matching pattern wins and an unmatched failure is
UNKNOWN with no auto-fix.  Structural issues match by issue kind; engine
rejections and execution errors match by message.

attempt_fix() turns a fixable Diagnosis into Patch IR ops and applies them
with apply_patch_ops(), returning a new graph.  The input graph is never
modified.  FixNotApplicable means the diagnosis cannot be repaired
automatically, which ends the healing loop.

The pipeline runs at most MAX_FIX_ATTEMPTS fixes per request.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from autoflow_agent.agent.compiler import ENGINE_MANAGED_FIELDS, WorkflowGraph, apply_patch_ops
from autoflow_agent.agent.errors import FixNotApplicable
from autoflow_agent.agent.patch_ir import (
    AddNode,
    Connect,
    Disconnect,
    PatchOp,
    RemoveField,
    RenameNode,
    SetParam,
    validate_patch_ops,
)
from autoflow_agent.agent.validation import (
    WEBHOOK_TYPE,
    Issue,
    IssueKind,
    Severity,
    ValidationResult,
    type_compatible,
)
from autoflow_agent.knowledge.catalog import CapabilityCatalog, ParamSpec

logger = logging.getLogger("autoflow_agent.agent.healer")

MAX_FIX_ATTEMPTS = 3

WAIT_TYPE = "n8n-nodes-base.wait"


class ErrorKind(str, Enum):
    MISSING_PARAMETER = "missing_parameter"
    TYPE_MISMATCH = "type_mismatch"
    INVALID_CONNECTION = "invalid_connection"
    DUPLICATE_NODE_ID = "duplicate_node_id"
    DUPLICATE_NODE_NAME = "duplicate_node_name"
    READ_ONLY_FIELD = "read_only_field"
    INVALID_WEBHOOK_PATH = "invalid_webhook_path"
    RATE_LIMIT = "rate_limit"
    INVALID_DATA_REFERENCE = "invalid_data_reference"
    AUTHENTICATION = "authentication"
    CONNECTIVITY = "connectivity"
    CYCLE = "cycle"
    CAPABILITY_GAP = "capability_gap"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Failures and diagnoses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Failure:
    """One failure observed by a validation stage."""

    stage: str
    message: str
    node_id: str | None = None
    issue_kind: IssueKind | None = None
    param: str | None = None

    @classmethod
    def from_issue(cls, issue: Issue, stage: str) -> "Failure":
        return cls(
            stage=stage,
            message=issue.message,
            node_id=issue.node_id,
            issue_kind=issue.kind,
            param=issue.param,
        )

    @property
    def from_engine(self) -> bool:
        return self.issue_kind in (None, IssueKind.ENGINE_REJECTION, IssueKind.EXECUTION_FAILURE)


def failures_from(result: ValidationResult) -> list[Failure]:
    """Blocking issues of a result as Failures, in issue order."""
    return [Failure.from_issue(i, result.stage) for i in result.blocking_issues]


@dataclass(frozen=True)
class Diagnosis:
    kind: ErrorKind
    severity: Severity
    auto_fix_available: bool
    suggested_fix: str
    node_id: str | None = None
    param: str | None = None
    message: str = ""
    stage: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "auto_fix_available": self.auto_fix_available,
            "suggested_fix": self.suggested_fix,
            "node_id": self.node_id,
            "param": self.param,
            "message": self.message,
            "stage": self.stage,
        }


@dataclass(frozen=True)
class ErrorPattern:
    """One row of the pattern table.

    issue_kinds match structural issues directly.  regex matches engine and
    execution messages; a named group "param" or "field" is captured.
    """

    kind: ErrorKind
    severity: Severity
    auto_fix: bool
    suggested_fix: str
    issue_kinds: tuple[IssueKind, ...] = ()
    regex: re.Pattern[str] | None = None

    def match(self, failure: Failure) -> re.Match[str] | bool | None:
        if not failure.from_engine:
            return failure.issue_kind in self.issue_kinds
        if self.regex is None:
            return None
        return self.regex.search(failure.message)


def _re(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


ERROR_PATTERNS: tuple[ErrorPattern, ...] = (
    ErrorPattern(
        ErrorKind.CAPABILITY_GAP, Severity.CRITICAL, False,
        "Replace the node with a supported alternative",
        (IssueKind.CAPABILITY_GAP,),
        _re(r"unrecognized node type|unknown node type|node type .* (is )?not (installed|known|found)"),
    ),
    ErrorPattern(
        ErrorKind.READ_ONLY_FIELD, Severity.HIGH, True,
        "Strip the read-only field from the workflow settings",
        (),
        _re(r"['\"]?(?P<field>\w+)['\"]? is read-only|read-only (field|property) ['\"]?(?P<field2>\w+)"),
    ),
    ErrorPattern(
        ErrorKind.RATE_LIMIT, Severity.MEDIUM, True,
        "Insert a Wait node before the rate-limited node",
        (),
        _re(r"\b429\b|too many requests|rate.?limit"),
    ),
    ErrorPattern(
        ErrorKind.AUTHENTICATION, Severity.HIGH, False,
        "Configure valid credentials for the node in the engine",
        (),
        _re(r"\b401\b|\b403\b|unauthori[sz]ed|forbidden|invalid (api key|credentials?)"
            r"|authentication|credentials? (not found|missing|invalid|are not set)"),
    ),
    ErrorPattern(
        ErrorKind.CONNECTIVITY, Severity.HIGH, False,
        "Check that the engine and the target service are reachable",
        (),
        _re(r"ECONNREFUSED|ENOTFOUND|ETIMEDOUT|ECONNRESET|timed out|connection (refused|reset)"
            r"|getaddrinfo|network error|service unavailable|\b50[234]\b"),
    ),
    ErrorPattern(
        ErrorKind.INVALID_DATA_REFERENCE, Severity.HIGH, False,
        "Fix the expression so it references an upstream node and field",
        (),
        _re(r"referenced node .*(doesn't|does not|not) exist|can't get data for expression"
            r"|cannot read propert(y|ies) of (undefined|null)|invalid expression"),
    ),
    ErrorPattern(
        ErrorKind.CYCLE, Severity.CRITICAL, False,
        "Remove the cycle or route it through a loop node",
        (IssueKind.CYCLE,),
        _re(r"circular|cycle detected|infinite loop"),
    ),
    ErrorPattern(
        ErrorKind.DUPLICATE_NODE_ID, Severity.HIGH, True,
        "Rename duplicate node ids",
        (IssueKind.DUPLICATE_NODE_ID,),
        _re(r"duplicate node id"),
    ),
    ErrorPattern(
        ErrorKind.DUPLICATE_NODE_NAME, Severity.HIGH, True,
        "Rename duplicate node names",
        (IssueKind.DUPLICATE_NODE_NAME,),
        _re(r"duplicate node name|node names? must be unique|node name .* already (exists|in use)"),
    ),
    ErrorPattern(
        ErrorKind.INVALID_WEBHOOK_PATH, Severity.HIGH, True,
        "Normalise the webhook path to a unique slug",
        (IssueKind.INVALID_WEBHOOK_PATH,),
        _re(r"webhook path|path .* (is invalid|already (in use|registered))|conflicting webhook"),
    ),
    ErrorPattern(
        ErrorKind.INVALID_CONNECTION, Severity.HIGH, True,
        "Drop connections to missing nodes or undeclared ports",
        (IssueKind.INVALID_CONNECTION,),
        _re(r"connection.*(invalid|missing|unknown|non-?existent) node|destination node .* not found"),
    ),
    ErrorPattern(
        ErrorKind.MISSING_PARAMETER, Severity.HIGH, True,
        "Fill the missing parameter with its schema default",
        (IssueKind.MISSING_PARAMETER,),
        _re(r"parameter ['\"](?P<param>[\w.]+)['\"] is required"
            r"|missing required (parameter|field|property)\s*:?\s*['\"]?(?P<param2>[\w.]+)"
            r"|['\"](?P<param3>[\w.]+)['\"] is required"),
    ),
    ErrorPattern(
        ErrorKind.TYPE_MISMATCH, Severity.HIGH, True,
        "Coerce the parameter value to its declared type",
        (IssueKind.TYPE_MISMATCH,),
        _re(r"parameter ['\"](?P<param>[\w.]+)['\"] (must be|expects?|should be)"
            r"|expected (a |an )?(number|string|boolean|object|array)|type mismatch|invalid type"),
    ),
)


def _captured(m: re.Match[str] | bool | None, *groups: str) -> str | None:
    if not isinstance(m, re.Match):
        return None
    for name in groups:
        value = m.groupdict().get(name)
        if value:
            return value
    return None


class ErrorPatternMatcher:
    """First matching row of an ordered ErrorPattern table wins."""

    def __init__(self, patterns: tuple[ErrorPattern, ...] = ERROR_PATTERNS) -> None:
        self._patterns = patterns

    def diagnose(self, failure: Failure) -> Diagnosis:
        for pattern in self._patterns:
            m = pattern.match(failure)
            if not m:
                continue
            param = failure.param or _captured(m, "param", "param2", "param3", "field", "field2")
            diagnosis = Diagnosis(
                kind=pattern.kind,
                severity=pattern.severity,
                auto_fix_available=pattern.auto_fix,
                suggested_fix=pattern.suggested_fix,
                node_id=failure.node_id,
                param=param,
                message=failure.message,
                stage=failure.stage,
            )
            logger.info(
                "[Healer] %s failure diagnosed as %s (auto_fix=%s, node=%s)",
                failure.stage, pattern.kind.value, pattern.auto_fix, failure.node_id,
            )
            return diagnosis

        logger.info("[Healer] Unmatched %s failure: %s", failure.stage, failure.message[:200])
        return Diagnosis(
            kind=ErrorKind.UNKNOWN,
            severity=Severity.HIGH,
            auto_fix_available=False,
            suggested_fix="Review the failure manually",
            node_id=failure.node_id,
            param=failure.param,
            message=failure.message,
            stage=failure.stage,
        )


# ---------------------------------------------------------------------------
# Auto-fixer
# ---------------------------------------------------------------------------


class AutoFixer:
    """Builds and applies Patch IR ops for fixable diagnoses."""

    def __init__(self, catalog: CapabilityCatalog) -> None:
        self._catalog = catalog
        self._rules: dict[ErrorKind, Callable[[WorkflowGraph, Diagnosis], list[PatchOp]]] = {
            ErrorKind.MISSING_PARAMETER: self._fix_missing_parameter,
            ErrorKind.TYPE_MISMATCH: self._fix_type_mismatch,
            ErrorKind.INVALID_CONNECTION: self._fix_invalid_connection,
            ErrorKind.DUPLICATE_NODE_ID: self._fix_duplicate_ids,
            ErrorKind.DUPLICATE_NODE_NAME: self._fix_duplicate_names,
            ErrorKind.READ_ONLY_FIELD: self._fix_read_only_field,
            ErrorKind.INVALID_WEBHOOK_PATH: self._fix_webhook_path,
            ErrorKind.RATE_LIMIT: self._fix_rate_limit,
        }

    def attempt_fix(self, graph: WorkflowGraph, diagnosis: Diagnosis) -> WorkflowGraph:
        """Return a repaired copy of graph, or raise FixNotApplicable."""
        rule = self._rules.get(diagnosis.kind)
        if not diagnosis.auto_fix_available or rule is None:
            raise FixNotApplicable(f"No automatic fix for {diagnosis.kind.value}")

        ops = rule(graph, diagnosis)
        if not ops:
            raise FixNotApplicable(f"Nothing to change for {diagnosis.kind.value}")
        op_errors, _ = validate_patch_ops(ops, graph.node_ids())
        if op_errors:
            raise FixNotApplicable("; ".join(op_errors))

        result = apply_patch_ops(graph, ops)
        if not result.ok:
            raise FixNotApplicable("; ".join(result.errors))
        if result.graph.digest() == graph.digest():
            raise FixNotApplicable(f"{diagnosis.kind.value} fix left the workflow unchanged")
        logger.info("[Healer] Applied %s fix:\n%s", diagnosis.kind.value, result.diff_summary)
        return result.graph

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _targets(self, graph: WorkflowGraph, diagnosis: Diagnosis) -> list:
        if diagnosis.node_id:
            node = graph.find_node(diagnosis.node_id)
            return [node] if node is not None else []
        return list(graph.nodes)

    def _fix_missing_parameter(self, graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        ops: list[PatchOp] = []
        for node in self._targets(graph, diagnosis):
            schema = self._catalog.get(node.type)
            if schema is None:
                continue
            if diagnosis.param:
                spec = schema.param(diagnosis.param)
                specs = [spec] if spec is not None else []
            else:
                specs = list(schema.required_params)
            for spec in specs:
                if node.parameters.get(spec.name) is None:
                    ops.append(SetParam(node_id=node.id, param_name=spec.name, value=spec.fallback_value()))
        return ops

    def _fix_type_mismatch(self, graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        ops: list[PatchOp] = []
        for node in self._targets(graph, diagnosis):
            schema = self._catalog.get(node.type)
            if schema is None:
                continue
            for name, value in node.parameters.items():
                if diagnosis.param and name != diagnosis.param:
                    continue
                spec = schema.param(name)
                if spec is None or value is None or type_compatible(value, spec):
                    continue
                ops.append(SetParam(node_id=node.id, param_name=name, value=coerce(value, spec)))
        return ops

    def _fix_invalid_connection(self, graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        ids = graph.node_ids()
        ops: list[PatchOp] = []
        for conn in graph.connections:
            bad = conn.source not in ids or conn.target not in ids
            if not bad:
                source = self._catalog.get(graph.get_node(conn.source).type)
                target = self._catalog.get(graph.get_node(conn.target).type)
                bad = bool(
                    (source and not source.has_output(conn.source_port, conn.source_index))
                    or (target and not target.has_input(conn.target_port, conn.target_index))
                )
            if bad:
                ops.append(Disconnect(
                    source_node_id=conn.source,
                    target_node_id=conn.target,
                    source_index=conn.source_index,
                    target_index=conn.target_index,
                ))
        return ops

    @staticmethod
    def _fix_duplicate_ids(graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        taken = graph.node_ids()
        ops: list[PatchOp] = []
        for node_id, count in Counter(n.id for n in graph.nodes).items():
            # Highest occurrence first so earlier indices stay valid.
            for occurrence in range(count - 1, 0, -1):
                new_id = _unique(f"{node_id}_{occurrence}", taken)
                ops.append(RenameNode(node_id=node_id, new_id=new_id, occurrence=occurrence))
        return ops

    @staticmethod
    def _fix_duplicate_names(graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        taken = {n.display_name for n in graph.nodes}
        seen: set[str] = set()
        id_seen: Counter[str] = Counter()
        ops: list[PatchOp] = []
        for node in graph.nodes:
            occurrence = id_seen[node.id]
            id_seen[node.id] += 1
            if node.display_name in seen:
                new_name = _unique(node.display_name, taken, sep=" ")
                ops.append(RenameNode(node_id=node.id, new_name=new_name, occurrence=occurrence))
            seen.add(node.display_name)
        return ops

    @staticmethod
    def _fix_read_only_field(graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        wanted = [diagnosis.param] if diagnosis.param else list(ENGINE_MANAGED_FIELDS)
        present = [f for f in wanted if f in graph.settings]
        if not present and diagnosis.param:
            present = [f for f in ENGINE_MANAGED_FIELDS if f in graph.settings]
        return [RemoveField(field_name=f) for f in present]

    @staticmethod
    def _fix_webhook_path(graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        # An engine-side conflict means the current path is taken, so always re-slug.
        conflict = diagnosis.stage != "structural"
        ops: list[PatchOp] = []
        for node in graph.nodes:
            if node.type != WEBHOOK_TYPE:
                continue
            if diagnosis.node_id and node.id != diagnosis.node_id and not conflict:
                continue
            current = node.parameters.get("path")
            slug = webhook_slug(current if isinstance(current, str) else "", node.id, unique=conflict)
            if slug != current:
                ops.append(SetParam(node_id=node.id, param_name="path", value=slug))
        return ops

    def _fix_rate_limit(self, graph: WorkflowGraph, diagnosis: Diagnosis) -> list[PatchOp]:
        node = graph.find_node(diagnosis.node_id) if diagnosis.node_id else None
        if node is None:
            raise FixNotApplicable("Rate limit could not be attributed to a node")
        wait_schema = self._catalog.get(WAIT_TYPE)
        if wait_schema is None:
            raise FixNotApplicable("Wait node is not available in the catalog")
        incoming = graph.incoming(node.id)
        if not incoming:
            raise FixNotApplicable(f"Node '{node.display_name}' has no upstream node to throttle")
        if any(graph.get_node(c.source) and graph.get_node(c.source).type == WAIT_TYPE for c in incoming):
            raise FixNotApplicable(f"Node '{node.display_name}' is already throttled")

        wait_id = _unique(f"wait_before_{node.id}", graph.node_ids())
        wait_name = _unique(f"Wait Before {node.display_name}", {n.display_name for n in graph.nodes}, sep=" ")
        params = {p.name: p.fallback_value() for p in wait_schema.required_params}
        params.setdefault("amount", 1)
        params.setdefault("unit", "seconds")

        ops: list[PatchOp] = [AddNode(
            node_type=WAIT_TYPE,
            node_id=wait_id,
            name=wait_name,
            parameters=params,
            position=[node.position[0] - 110.0, node.position[1] + 120.0],
        )]
        for conn in incoming:
            ops.append(Disconnect(
                source_node_id=conn.source,
                target_node_id=node.id,
                source_index=conn.source_index,
                target_index=conn.target_index,
            ))
            ops.append(Connect(
                source_node_id=conn.source,
                target_node_id=wait_id,
                source_port=conn.source_port,
                source_index=conn.source_index,
            ))
        ops.append(Connect(
            source_node_id=wait_id,
            target_node_id=node.id,
            target_index=incoming[0].target_index,
        ))
        return ops


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def coerce(value: Any, spec: ParamSpec) -> Any:
    """Convert value to spec.type, falling back to the schema default."""
    try:
        match spec.type:
            case "string":
                return json.dumps(value) if isinstance(value, (dict, list)) else str(value)
            case "number":
                number = float(str(value).strip())
                return int(number) if number.is_integer() else number
            case "boolean":
                text = str(value).strip().lower()
                if text in ("true", "1", "yes", "on"):
                    return True
                if text in ("false", "0", "no", "off", ""):
                    return False
            case "options":
                for option in spec.options:
                    if str(option).lower() == str(value).lower():
                        return option
            case "multiOptions":
                return [value]
            case "json":
                return json.dumps(value)
            case "collection" | "fixedCollection":
                if isinstance(value, str):
                    parsed = json.loads(value)
                    if isinstance(parsed, dict):
                        return parsed
    except (TypeError, ValueError) as e:
        logger.debug("[Healer] Cannot coerce %r to %s: %s", value, spec.type, e)
    return spec.fallback_value()


_SLUG_STRIP_RE = re.compile(r"[^A-Za-z0-9_\-/]+")


def webhook_slug(path: str, node_id: str, unique: bool = False) -> str:
    """Normalise a webhook path to [A-Za-z0-9_-/]; unique=True appends a random suffix."""
    slug = _SLUG_STRIP_RE.sub("-", path.strip()).strip("-/").lower()
    slug = re.sub(r"-{2,}", "-", slug) or f"autoflow-{node_id.lower()}"
    if unique:
        slug = f"{slug}-{uuid.uuid4().hex[:6]}"
    return slug


def _unique(base: str, taken: set[str], sep: str = "_") -> str:
    candidate, n = base, 2
    while candidate in taken:
        candidate = f"{base}{sep}{n}"
        n += 1
    taken.add(candidate)
    return candidate
