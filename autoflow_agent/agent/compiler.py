"""WorkflowGraph model and deterministic patch compiler.

WorkflowGraph is the canonical in-memory representation of one automation:
an ordered list of Nodes plus a list of Connections.  It is parsed strictly
from provider output (from_json / from_dict), serialized losslessly for
storage and responses (to_dict, keyed by node id), and rendered into the
engine's workflow payload (to_engine_payload, keyed by node display name).

Wire format (n8n workflow JSON):
  {
    "name": "Daily weather email",
    "nodes": [
      {
        "id": "schedule_0",
        "name": "Every Day 8am",
        "type": "n8n-nodes-base.scheduleTrigger",
        "typeVersion": 1,
        "position": [250, 300],
        "parameters": {"rule": {...}},
        "credentials": {}
      }
    ],
    "connections": {
      "Every Day 8am": {"main": [[{"node": "Get Weather", "type": "main", "index": 0}]]}
    }
  }

apply_patch_ops() applies Patch IR ops to a deep copy of a graph; the input
graph is never mutated.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from autoflow_agent.agent.patch_ir import (
    AddNode,
    Connect,
    Disconnect,
    PatchOp,
    RemoveField,
    RemoveNode,
    RenameNode,
    SetParam,
    strip_code_fences,
)

logger = logging.getLogger("autoflow_agent.agent.compiler")

# Top-level workflow fields the engine owns and rejects on create.  Dropped on
# parse: only name, nodes, connections and settings are ever sent.
ENGINE_MANAGED_FIELDS: tuple[str, ...] = (
    "active", "id", "createdAt", "updatedAt", "versionId", "tags",
    "triggerCount", "shared", "isArchived", "meta", "pinData", "staticData",
)

# Auto-layout grid constants (pixels)
_GRID_X: int = 220
_START_X: int = 250
_START_Y: int = 300


class GraphParseError(ValueError):
    """Raised when raw output cannot be parsed into a WorkflowGraph."""


# ---------------------------------------------------------------------------
# Graph model
# ---------------------------------------------------------------------------


@dataclass
class Node:
    """A node in the WorkflowGraph.

    id:           Unique node ID within the graph (e.g. "weather_0").
    type:         Catalog node type (e.g. "n8n-nodes-base.openWeatherMap").
    name:         Display name; the engine keys connections by this.
    parameters:   Configured parameter values.
    position:     [x, y] canvas coordinates.
    type_version: Engine node type version.
    credentials:  credential type -> credential reference.
    """

    id: str
    type: str
    name: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    position: list[float] = field(default_factory=lambda: [float(_START_X), float(_START_Y)])
    type_version: int = 1
    credentials: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Connection:
    """A directed edge from an output port of one node to an input port of another."""

    source: str
    target: str
    source_port: str = "main"
    source_index: int = 0
    target_port: str = "main"
    target_index: int = 0


@dataclass
class WorkflowGraph:
    """Canonical representation of one automation workflow."""

    name: str = ""
    nodes: list[Node] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    # Unrecognised top-level keys, kept for storage only; never sent to the engine.
    extra: dict[str, Any] = field(default_factory=dict)

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def node_types(self) -> list[str]:
        """Node types in graph order (duplicates kept)."""
        return [n.type for n in self.nodes]

    def get_node(self, node_id: str) -> Node | None:
        """Find a node by ID. Returns None if not found."""
        return next((n for n in self.nodes if n.id == node_id), None)

    def find_node(self, ref: str) -> Node | None:
        """Find a node by ID, then by display name (exact, then case-insensitive)."""
        node = self.get_node(ref)
        if node is not None:
            return node
        node = next((n for n in self.nodes if n.display_name == ref), None)
        if node is not None:
            return node
        lowered = ref.lower()
        return next((n for n in self.nodes if n.display_name.lower() == lowered), None)

    def incoming(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.target == node_id]

    def outgoing(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.source == node_id]

    def copy(self) -> "WorkflowGraph":
        return copy.deepcopy(self)

    def shape(self) -> dict[str, Any]:
        """Compact structural summary (for feedback entries and logs)."""
        return {
            "node_count": len(self.nodes),
            "connection_count": len(self.connections),
            "node_types": self.node_types(),
            "edges": [f"{c.source}->{c.target}" for c in self.connections],
        }

    def digest(self) -> str:
        """SHA-256 of the canonical to_dict() serialization."""
        raw = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Lossless dict form; connections are keyed by node id."""
        return {
            "name": self.name,
            "nodes": [_node_to_dict(n) for n in self.nodes],
            "connections": _connections_to_dict(self.connections, key=lambda node_id: node_id),
            "settings": dict(self.settings),
            **({"extra": dict(self.extra)} if self.extra else {}),
        }

    def to_engine_payload(self) -> tuple[list[dict[str, Any]], dict[str, Any]]:
        """Return (nodes, connections) in the engine's format.

        The engine keys connections by node display name, so ids are mapped
        to names here.  Unknown ids are passed through unchanged.
        """
        names = {n.id: n.display_name for n in self.nodes}
        nodes = [_node_to_dict(n) for n in self.nodes]
        connections = _connections_to_dict(
            self.connections, key=lambda node_id: names.get(node_id, node_id)
        )
        return nodes, connections

    @classmethod
    def from_dict(cls, data: Any) -> "WorkflowGraph":
        """Strictly parse a workflow dict. Raises GraphParseError on bad shape.

        Connection keys and targets are resolved by node id first, then by
        display name.  Unresolvable references are kept verbatim so the
        structural validator can report them.
        """
        if not isinstance(data, dict):
            raise GraphParseError(f"Expected a JSON object, got {type(data).__name__}")
        raw_nodes = data.get("nodes")
        if not isinstance(raw_nodes, list):
            raise GraphParseError("Workflow is missing a 'nodes' list")

        nodes: list[Node] = []
        for i, raw in enumerate(raw_nodes):
            if not isinstance(raw, dict):
                raise GraphParseError(f"nodes[{i}] is not an object")
            node_type = raw.get("type")
            if not isinstance(node_type, str) or not node_type.strip():
                raise GraphParseError(f"nodes[{i}] is missing 'type'")
            node_id = raw.get("id") or raw.get("name")
            if not isinstance(node_id, str) or not node_id.strip():
                raise GraphParseError(f"nodes[{i}] is missing 'id'")
            params = raw.get("parameters") or {}
            if not isinstance(params, dict):
                raise GraphParseError(f"nodes[{i}].parameters is not an object")
            creds = raw.get("credentials") or {}
            if not isinstance(creds, dict):
                raise GraphParseError(f"nodes[{i}].credentials is not an object")
            nodes.append(Node(
                id=node_id,
                type=node_type,
                name=str(raw.get("name") or ""),
                parameters=copy.deepcopy(params),
                position=_parse_position(raw.get("position"), i),
                type_version=_parse_version(raw.get("typeVersion")),
                credentials=copy.deepcopy(creds),
            ))

        raw_conns = data.get("connections") or {}
        if not isinstance(raw_conns, dict):
            raise GraphParseError("'connections' is not an object")
        connections = _parse_connections(raw_conns, nodes)

        known = {"name", "nodes", "connections", "settings", "extra", *ENGINE_MANAGED_FIELDS}
        extra = {k: v for k, v in (data.get("extra") or {}).items() if k not in ENGINE_MANAGED_FIELDS}
        extra.update({k: v for k, v in data.items() if k not in known})
        settings = data.get("settings") or {}
        return cls(
            name=str(data.get("name") or ""),
            nodes=nodes,
            connections=connections,
            settings=dict(settings) if isinstance(settings, dict) else {},
            extra=extra,
        )

    @classmethod
    def from_json(cls, raw: str) -> "WorkflowGraph":
        """Parse raw provider output (optionally code-fenced) into a graph."""
        if not isinstance(raw, str) or not raw.strip():
            raise GraphParseError("Empty output")
        try:
            data = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as e:
            raise GraphParseError(f"Malformed JSON: {e}") from e
        if isinstance(data, dict) and "workflow" in data and "nodes" not in data:
            data = data["workflow"]
        return cls.from_dict(data)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _auto_position(index: int) -> list[float]:
    return [float(_START_X + _GRID_X * index), float(_START_Y)]


def _parse_position(value: Any, index: int) -> list[float]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            return [float(value[0]), float(value[1])]
        except (TypeError, ValueError):
            pass
    if isinstance(value, dict) and "x" in value and "y" in value:
        try:
            return [float(value["x"]), float(value["y"])]
        except (TypeError, ValueError):
            pass
    return _auto_position(index)


def _parse_version(value: Any) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return 1


def _parse_connections(raw_conns: dict[str, Any], nodes: list[Node]) -> list[Connection]:
    by_id = {n.id: n.id for n in nodes}
    by_name = {n.display_name: n.id for n in nodes}

    def _resolve(ref: str) -> str:
        return by_id.get(ref) or by_name.get(ref) or ref

    connections: list[Connection] = []
    for source_ref, ports in raw_conns.items():
        if not isinstance(ports, dict):
            raise GraphParseError(f"connections[{source_ref!r}] is not an object")
        for port, outputs in ports.items():
            if not isinstance(outputs, list):
                raise GraphParseError(f"connections[{source_ref!r}][{port!r}] is not a list")
            for out_index, targets in enumerate(outputs):
                if targets is None:
                    continue
                if not isinstance(targets, list):
                    raise GraphParseError(
                        f"connections[{source_ref!r}][{port!r}][{out_index}] is not a list"
                    )
                for target in targets:
                    if not isinstance(target, dict) or not target.get("node"):
                        raise GraphParseError(
                            f"connections[{source_ref!r}] has a target without 'node'"
                        )
                    connections.append(Connection(
                        source=_resolve(source_ref),
                        target=_resolve(str(target["node"])),
                        source_port=str(port),
                        source_index=out_index,
                        target_port=str(target.get("type") or port),
                        target_index=_parse_index(target.get("index")),
                    ))
    return connections


def _parse_index(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _node_to_dict(node: Node) -> dict[str, Any]:
    d: dict[str, Any] = {
        "id": node.id,
        "name": node.display_name,
        "type": node.type,
        "typeVersion": node.type_version,
        "position": list(node.position),
        "parameters": copy.deepcopy(node.parameters),
    }
    if node.credentials:
        d["credentials"] = copy.deepcopy(node.credentials)
    return d


def _connections_to_dict(connections: list[Connection], key) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for c in connections:
        ports = out.setdefault(key(c.source), {})
        slots: list[list[dict[str, Any]]] = ports.setdefault(c.source_port, [])
        while len(slots) <= c.source_index:
            slots.append([])
        slots[c.source_index].append(
            {"node": key(c.target), "type": c.target_port, "index": c.target_index}
        )
    return out


# ---------------------------------------------------------------------------
# PatchResult
# ---------------------------------------------------------------------------


@dataclass
class PatchResult:
    """Result of applying PatchOps to a base graph.

    graph:        The patched graph (a new object; the base is untouched).
    diff_summary: Human-readable change log.
    errors:       Ops that could not be applied. Empty list = success.
    """

    graph: WorkflowGraph
    diff_summary: str
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def apply_patch_ops(base_graph: WorkflowGraph, ops: list[PatchOp]) -> PatchResult:
    """Apply Patch IR ops to a copy of base_graph.

    Ops are applied in order.  An op that cannot be applied is recorded in
    errors and skipped; later ops still run.
    """
    errors: list[str] = []
    graph = base_graph.copy()
    diff_lines: list[str] = []

    for op in ops:
        if isinstance(op, AddNode):
            if graph.get_node(op.node_id) is not None:
                errors.append(f"AddNode: node_id '{op.node_id}' already exists")
                continue
            graph.nodes.append(Node(
                id=op.node_id,
                type=op.node_type,
                name=op.name,
                parameters=copy.deepcopy(op.parameters),
                position=list(op.position) if op.position else _auto_position(len(graph.nodes)),
                type_version=op.type_version,
            ))
            diff_lines.append(f"NODE ADDED: [{op.node_id}] type={op.node_type}")

        elif isinstance(op, RemoveNode):
            before = len(graph.nodes)
            graph.nodes = [n for n in graph.nodes if n.id != op.node_id]
            if len(graph.nodes) == before:
                errors.append(f"RemoveNode: node_id '{op.node_id}' not found")
                continue
            graph.connections = [
                c for c in graph.connections
                if c.source != op.node_id and c.target != op.node_id
            ]
            diff_lines.append(f"NODE REMOVED: [{op.node_id}]")

        elif isinstance(op, SetParam):
            node = graph.get_node(op.node_id)
            if node is None:
                errors.append(f"SetParam: node_id '{op.node_id}' not found")
                continue
            node.parameters[op.param_name] = copy.deepcopy(op.value)
            diff_lines.append(
                f'PARAM SET: [{op.node_id}] {op.param_name}="{str(op.value)[:80]}"'
            )

        elif isinstance(op, RenameNode):
            matches = [n for n in graph.nodes if n.id == op.node_id]
            if len(matches) <= op.occurrence:
                errors.append(
                    f"RenameNode: node_id '{op.node_id}' occurrence {op.occurrence} not found"
                )
                continue
            node = matches[op.occurrence]
            if op.new_name:
                node.name = op.new_name
            if op.new_id and op.new_id != node.id:
                node.id = op.new_id
                if op.occurrence == 0 and len(matches) == 1:
                    graph.connections = [
                        _rewire(c, op.node_id, op.new_id) for c in graph.connections
                    ]
            diff_lines.append(
                f"NODE RENAMED: [{op.node_id}] -> id={node.id} name={node.display_name}"
            )

        elif isinstance(op, Connect):
            conn = Connection(
                source=op.source_node_id,
                target=op.target_node_id,
                source_port=op.source_port,
                source_index=op.source_index,
                target_port=op.target_port,
                target_index=op.target_index,
            )
            if graph.get_node(conn.source) is None or graph.get_node(conn.target) is None:
                errors.append(f"Connect: {conn.source}->{conn.target} references a missing node")
                continue
            if conn not in graph.connections:
                graph.connections.append(conn)
            diff_lines.append(f"EDGE ADDED: {conn.source}→{conn.target}")

        elif isinstance(op, Disconnect):
            before = len(graph.connections)
            graph.connections = [
                c for c in graph.connections
                if not (
                    c.source == op.source_node_id
                    and c.target == op.target_node_id
                    and (op.source_index is None or c.source_index == op.source_index)
                    and (op.target_index is None or c.target_index == op.target_index)
                )
            ]
            removed = before - len(graph.connections)
            diff_lines.append(
                f"EDGE REMOVED: {op.source_node_id}→{op.target_node_id} (x{removed})"
            )

        elif isinstance(op, RemoveField):
            if graph.settings.pop(op.field_name, None) is None:
                logger.debug("RemoveField: %r not in settings", op.field_name)
            diff_lines.append(f"SETTING REMOVED: {op.field_name}")

        else:
            errors.append(f"Unknown op: {op!r}")

    return PatchResult(
        graph=graph,
        diff_summary="\n".join(diff_lines) if diff_lines else "(no changes)",
        errors=errors,
    )


def _rewire(conn: Connection, old_id: str, new_id: str) -> Connection:
    if conn.source != old_id and conn.target != old_id:
        return conn
    return Connection(
        source=new_id if conn.source == old_id else conn.source,
        target=new_id if conn.target == old_id else conn.target,
        source_port=conn.source_port,
        source_index=conn.source_index,
        target_port=conn.target_port,
        target_index=conn.target_index,
    )
