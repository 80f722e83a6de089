"""Shared fixtures: the bundled capability catalog and an in-memory engine."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import pytest

from autoflow_agent.knowledge.catalog import CapabilityCatalog


class FakeEngine:
    """In-memory stand-in for EngineClient.

    Workflows live in self.workflows keyed by id.  Failure knobs:
      create_error    error dict returned by create_workflow
      create_delay    seconds create_workflow takes before the workflow exists
      activate_error  error dict returned by activate_workflow
      delete_error    error dict returned by delete_workflow
      run_result      dict returned by run_workflow (default: immediate success)
      executions      execution id -> list of get_execution responses (popped in order)
    """

    def __init__(self) -> None:
        self.workflows: dict[str, dict[str, Any]] = {}
        self.active: set[str] = set()
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.calls: list[str] = []
        self.create_error: dict[str, Any] | None = None
        self.create_errors: list[dict[str, Any]] = []
        self.create_delay: float = 0.0
        self.activate_error: dict[str, Any] | None = None
        self.delete_error: dict[str, Any] | None = None
        self.run_result: dict[str, Any] | None = None
        self.executions: dict[str, list[dict[str, Any]]] = {}
        self._ids = itertools.count(1)

    @property
    def leaked(self) -> list[str]:
        """Ids of workflows that still exist on the engine."""
        return sorted(self.workflows)

    async def ping(self) -> dict[str, Any]:
        return {"status": "ok"}

    async def list_node_types(self) -> Any:
        return {"error": "not supported by FakeEngine"}

    async def list_workflows(self, name: str | None = None, limit: int = 50) -> dict[str, Any]:
        self.calls.append("list_workflows")
        data = [
            {"id": wid, "name": wf["name"]}
            for wid, wf in self.workflows.items()
            if name is None or wf["name"] == name
        ]
        return {"data": data[:limit]}

    async def create_workflow(self, name, nodes, connections, settings=None) -> dict[str, Any]:
        self.calls.append("create_workflow")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_errors:
            return self.create_errors.pop(0)
        if self.create_error is not None:
            return self.create_error
        wid = f"wf-{next(self._ids)}"
        self.workflows[wid] = {
            "id": wid, "name": name, "nodes": nodes,
            "connections": connections, "settings": settings or {},
        }
        self.created.append(wid)
        return dict(self.workflows[wid])

    async def delete_workflow(self, workflow_id: str) -> dict[str, Any]:
        self.calls.append("delete_workflow")
        if self.delete_error is not None:
            return self.delete_error
        if workflow_id not in self.workflows:
            return {"error": "HTTP 404", "status_code": 404, "detail": "Not Found"}
        del self.workflows[workflow_id]
        self.active.discard(workflow_id)
        self.deleted.append(workflow_id)
        return {"id": workflow_id}

    async def activate_workflow(self, workflow_id: str) -> dict[str, Any]:
        self.calls.append("activate_workflow")
        if self.activate_error is not None:
            return self.activate_error
        self.active.add(workflow_id)
        return {"id": workflow_id, "active": True}

    async def deactivate_workflow(self, workflow_id: str) -> dict[str, Any]:
        self.calls.append("deactivate_workflow")
        self.active.discard(workflow_id)
        return {"id": workflow_id, "active": False}

    async def run_workflow(self, workflow_id: str, pin_data=None) -> dict[str, Any]:
        self.calls.append("run_workflow")
        if self.run_result is not None:
            return self.run_result
        return {"data": {"resultData": {"runData": {}}}}

    async def get_execution(self, execution_id: str) -> dict[str, Any]:
        self.calls.append("get_execution")
        queue = self.executions.get(execution_id) or []
        if not queue:
            return {"error": "HTTP 404", "status_code": 404}
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def close(self) -> None:
        pass


@pytest.fixture
def catalog() -> CapabilityCatalog:
    """The bundled fallback catalog, with no live engine behind it."""
    return CapabilityCatalog(client=None)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()
