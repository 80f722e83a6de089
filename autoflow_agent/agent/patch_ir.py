"""Patch IR: typed, validated operations for repairing a WorkflowGraph.

Each op describes a single atomic change to a graph:
  AddNode     add a node of a catalog node type
  RemoveNode  drop a node and every connection touching it
  SetParam    set (or overwrite) one parameter on an existing node
  RenameNode  change a node's id and/or display name, rewiring connections
  Connect     connect two nodes (port + index on both ends)
  Disconnect  remove matching connections between two nodes
  RemoveField drop a top-level workflow field (e.g. read-only "active")

Auto-fix rules emit lists of these ops; apply_patch_ops() in compiler.py
applies them to a deep copy of the graph, so a fix never mutates its input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Patch IR operation types
# ---------------------------------------------------------------------------


@dataclass
class AddNode:
    """Add a new node of type `node_type` with ID `node_id`.

    name:         Display name; defaults to node_id when empty.
    parameters:   Initial parameter values.
    position:     Optional [x, y] canvas hint. Auto-placed when None.
    type_version: Engine node type version.
    """

    op_type: str = "add_node"
    node_type: str = ""
    node_id: str = ""
    name: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    position: list[float] | None = None
    type_version: int = 1


@dataclass
class RemoveNode:
    op_type: str = "remove_node"
    node_id: str = ""


@dataclass
class SetParam:
    """Set a single parameter on an existing node."""

    op_type: str = "set_param"
    node_id: str = ""
    param_name: str = ""
    value: Any = None


@dataclass
class RenameNode:
    """Rename a node. new_id and/or new_name may be empty to keep the current value.

    occurrence selects which node to rename when several share node_id
    (0 = first).  Connections are rewired only when renaming occurrence 0.
    """

    op_type: str = "rename_node"
    node_id: str = ""
    new_id: str = ""
    new_name: str = ""
    occurrence: int = 0


@dataclass
class Connect:
    op_type: str = "connect"
    source_node_id: str = ""
    target_node_id: str = ""
    source_port: str = "main"
    source_index: int = 0
    target_port: str = "main"
    target_index: int = 0


@dataclass
class Disconnect:
    """Remove connections from source to target.

    source_index / target_index of None match any index.
    """

    op_type: str = "disconnect"
    source_node_id: str = ""
    target_node_id: str = ""
    source_index: int | None = None
    target_index: int | None = None


@dataclass
class RemoveField:
    op_type: str = "remove_field"
    field_name: str = ""


PatchOp = Union[AddNode, RemoveNode, SetParam, RenameNode, Connect, Disconnect, RemoveField]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_patch_ops(
    ops: list[PatchOp],
    base_node_ids: set[str] | None = None,
) -> tuple[list[str], list[str]]:
    """Validate a list of Patch IR ops. Returns (errors, warnings).

    Checks performed:
    - Required string fields are non-empty
    - No duplicate node_ids across AddNode ops, nor an AddNode reusing a base id
    - Every reference resolves to a base node, a node added earlier in the
      list, or a node renamed earlier in the list
    """
    errors: list[str] = []
    warnings: list[str] = []
    known_ids: set[str] = set(base_node_ids or set())

    for i, op in enumerate(ops):
        if isinstance(op, AddNode):
            if not op.node_type:
                errors.append(f"ops[{i}] AddNode: node_type is required")
            if not op.node_id:
                errors.append(f"ops[{i}] AddNode: node_id is required")
            elif op.node_id in known_ids:
                errors.append(f"ops[{i}] AddNode: duplicate node_id '{op.node_id}'")
            else:
                known_ids.add(op.node_id)

        elif isinstance(op, RemoveNode):
            if op.node_id not in known_ids:
                warnings.append(f"ops[{i}] RemoveNode: node_id '{op.node_id}' not in graph")
            known_ids.discard(op.node_id)

        elif isinstance(op, SetParam):
            if not op.param_name:
                errors.append(f"ops[{i}] SetParam: param_name is required")
            if op.node_id not in known_ids:
                errors.append(f"ops[{i}] SetParam: node_id '{op.node_id}' not found")

        elif isinstance(op, RenameNode):
            if op.node_id not in known_ids:
                errors.append(f"ops[{i}] RenameNode: node_id '{op.node_id}' not found")
            elif not op.new_id and not op.new_name:
                errors.append(f"ops[{i}] RenameNode: new_id or new_name is required")
            elif op.new_id:
                if op.new_id != op.node_id and op.new_id in known_ids:
                    errors.append(f"ops[{i}] RenameNode: new_id '{op.new_id}' already exists")
                # Duplicate ids share one entry in known_ids; keep the old id
                # resolvable so a later rename of its twin still validates.
                known_ids.add(op.new_id)

        elif isinstance(op, Connect):
            for label, node_id in (("source", op.source_node_id), ("target", op.target_node_id)):
                if node_id not in known_ids:
                    errors.append(f"ops[{i}] Connect: {label} '{node_id}' not found")
            if op.source_index < 0 or op.target_index < 0:
                errors.append(f"ops[{i}] Connect: port indexes must be >= 0")

        elif isinstance(op, Disconnect):
            if not op.source_node_id or not op.target_node_id:
                errors.append(f"ops[{i}] Disconnect: source and target are required")

        elif isinstance(op, RemoveField):
            if not op.field_name:
                errors.append(f"ops[{i}] RemoveField: field_name is required")

    return errors, warnings


def strip_code_fences(s: str) -> str:
    """Remove an optional ```json ... ``` wrapper from LLM output."""
    stripped = s.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()
        inner = "\n".join(lines[1:])
        if inner.rstrip().endswith("```"):
            inner = inner.rstrip()[:-3].rstrip()
        stripped = inner.strip()
    return stripped
