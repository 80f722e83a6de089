"""Deployment saga: ordered steps, reverse compensation, idempotency."""

from __future__ import annotations

from unittest.mock import patch

import pytest
import pytest_asyncio

from autoflow_agent.agent.compiler import Connection, Node, WorkflowGraph
from autoflow_agent.agent.resilience import RetryPolicy
from autoflow_agent.agent.saga import DeploymentSaga
from autoflow_agent.persistence.records import DeploymentRecord, RecordStore


_FAST = RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=False, attempt_timeout=5.0)


async def _no_sleep(_delay: float) -> None:
    return None


def _graph() -> WorkflowGraph:
    return WorkflowGraph(
        name="Daily weather",
        nodes=[
            Node("trigger", "n8n-nodes-base.scheduleTrigger", "Every Morning",
                 parameters={"rule": {"interval": [{"field": "cronExpression", "expression": "0 8 * * *"}]}}),
            Node("weather", "n8n-nodes-base.openWeatherMap", "Get Weather",
                 parameters={"operation": "currentWeather", "cityName": "Berlin"}),
        ],
        connections=[Connection("trigger", "weather")],
    )


@pytest_asyncio.fixture
async def records(tmp_path):
    s = await RecordStore.open(str(tmp_path / "saga.db"))
    yield s
    await s.close()


def _saga(records, engine, **kw) -> DeploymentSaga:
    return DeploymentSaga(
        records, engine, step_retry=_FAST, compensation_retry=_FAST, sleep=_no_sleep, **kw
    )


class TestCommit:
    @pytest.mark.asyncio
    async def test_all_steps_commit(self, records, engine):
        result = await _saga(records, engine).deploy(_graph(), "key-1", user_id="u")

        assert result.status == "committed"
        assert result.success
        assert result.workflow_id == "wf-1"
        assert result.furthest_step == "mark_active"
        assert "wf-1" in engine.active

        stored = await records.get_deployment("key-1")
        assert stored.committed
        assert stored.status == "active"
        assert stored.steps_completed == [
            "persist_draft", "create_in_engine", "activate", "mark_active",
        ]

    def test_step_order(self, engine):
        saga = DeploymentSaga(records=None, client=engine)
        assert [s.name for s in saga.steps] == [
            "persist_draft", "create_in_engine", "activate", "mark_active",
        ]


class TestCompensation:
    @pytest.mark.asyncio
    async def test_activate_failure_rolls_back_in_reverse(self, records, engine):
        """Activation fails: the engine workflow and the draft are both removed."""
        engine.activate_error = {"error": "HTTP 500", "status_code": 500, "detail": "boom"}

        result = await _saga(records, engine).deploy(_graph(), "key-2", user_id="u")

        assert result.status == "rolled_back"
        assert result.furthest_step == "create_in_engine"
        assert result.rolled_back == ["create_in_engine", "persist_draft"]
        assert result.compensation_failures == []
        assert result.error.step == "activate"
        assert engine.deleted == ["wf-1"]
        assert engine.leaked == []
        assert await records.get_deployment("key-2") is None
        assert result.feedback_id is not None

        feedback = await records.list_feedback(kind="saga_rolled_back")
        assert feedback[0].diagnosis["failed_step"] == "activate"
        assert feedback[0].graph_shape["node_types"]

    @pytest.mark.asyncio
    async def test_activate_retried_before_compensation(self, records, engine):
        engine.activate_error = {"error": "HTTP 503", "status_code": 503}
        await _saga(records, engine).deploy(_graph(), "key-3")
        assert engine.calls.count("activate_workflow") == _FAST.max_attempts

    @pytest.mark.asyncio
    async def test_create_failure_only_deletes_draft(self, records, engine):
        engine.create_error = {"error": "HTTP 400", "status_code": 400, "detail": "bad"}

        result = await _saga(records, engine).deploy(_graph(), "key-4")

        assert result.status == "rolled_back"
        assert result.furthest_step == "persist_draft"
        assert result.rolled_back == ["persist_draft"]
        assert "delete_workflow" not in engine.calls
        assert await records.get_deployment("key-4") is None

    @pytest.mark.asyncio
    async def test_compensation_failure_continues_with_earlier_steps(self, records, engine):
        engine.activate_error = {"error": "HTTP 500", "status_code": 500}
        engine.delete_error = {"error": "HTTP 500", "status_code": 500}

        result = await _saga(records, engine).deploy(_graph(), "key-5")

        assert result.status == "rolled_back"
        assert result.compensation_failures == ["create_in_engine"]
        assert result.rolled_back == ["persist_draft"]
        assert "manual cleanup" in result.message
        assert await records.get_deployment("key-5") is None


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_key_returns_cached_result(self, records, engine):
        saga = _saga(records, engine)
        first = await saga.deploy(_graph(), "same")
        second = await saga.deploy(_graph(), "same")

        assert first.status == second.status == "committed"
        assert second.cached is True
        assert second.workflow_id == first.workflow_id
        assert engine.calls.count("create_workflow") == 1

    @pytest.mark.asyncio
    async def test_expired_record_is_replaced(self, records, engine):
        clock = {"now": 1_000_000.0}
        saga = _saga(records, engine, idempotency_window=60, clock=lambda: clock["now"])
        await records.insert_deployment(
            DeploymentRecord(idempotency_key="old", saga_state="committed", created_at=clock["now"] - 120)
        )

        result = await saga.deploy(_graph(), "old")

        assert result.cached is False
        assert result.status == "committed"
        assert engine.calls.count("create_workflow") == 1

    @pytest.mark.asyncio
    async def test_running_record_reports_in_progress(self, records, engine):
        import time

        await records.insert_deployment(
            DeploymentRecord(idempotency_key="busy", saga_state="running", created_at=time.time())
        )
        result = await _saga(records, engine).deploy(_graph(), "busy")

        assert result.status == "in_progress"
        assert result.success is False
        assert "create_workflow" not in engine.calls

    @pytest.mark.asyncio
    async def test_rolled_back_key_may_be_retried(self, records, engine):
        import time

        await records.insert_deployment(
            DeploymentRecord(idempotency_key="retry-me", saga_state="rolled_back", created_at=time.time())
        )
        result = await _saga(records, engine).deploy(_graph(), "retry-me")

        assert result.status == "committed"
        assert result.cached is False


def _failing_updates(records, failures: int, seen: list | None = None):
    """Replace update_deployment with one that fails the first `failures` calls."""
    original = records.update_deployment
    left = {"n": failures}

    async def update(record):
        if seen is not None:
            seen.append((record.status, record.saga_state))
        if left["n"]:
            left["n"] -= 1
            raise RuntimeError("database is locked")
        await original(record)

    return patch.object(records, "update_deployment", new=update)


class TestPartialSteps:
    @pytest.mark.asyncio
    async def test_record_write_retry_reuses_engine_workflow(self, records, engine):
        with _failing_updates(records, failures=1):
            result = await _saga(records, engine).deploy(_graph(), "flaky-once")

        assert result.status == "committed"
        assert engine.created == ["wf-1"]
        assert engine.leaked == ["wf-1"]
        assert engine.active == {"wf-1"}

    @pytest.mark.asyncio
    async def test_record_write_never_succeeds_deletes_workflow(self, records, engine):
        with _failing_updates(records, failures=100):
            result = await _saga(records, engine).deploy(_graph(), "flaky-always")

        assert result.status == "rolled_back"
        assert result.error.step == "create_in_engine"
        assert result.rolled_back == ["create_in_engine", "persist_draft"]
        assert engine.created == ["wf-1"]
        assert engine.leaked == []
        assert await records.get_deployment("flaky-always") is None

    @pytest.mark.asyncio
    async def test_slow_create_adopted_by_next_attempt(self, records, engine):
        policy = RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=False, attempt_timeout=0.2)
        engine.create_delay = 0.3
        saga = DeploymentSaga(records, engine, step_retry=policy, compensation_retry=_FAST, sleep=_no_sleep)

        result = await saga.deploy(_graph(), "slow")

        assert result.status == "committed"
        assert engine.created == ["wf-1"]
        assert engine.calls.count("create_workflow") == 1

    @pytest.mark.asyncio
    async def test_create_outliving_every_attempt_is_cleaned_up(self, records, engine):
        policy = RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=False, attempt_timeout=0.1)
        engine.create_delay = 0.4
        saga = DeploymentSaga(records, engine, step_retry=policy, compensation_retry=_FAST, sleep=_no_sleep)

        result = await saga.deploy(_graph(), "too-slow")

        assert result.status == "rolled_back"
        assert result.rolled_back == ["create_in_engine", "persist_draft"]
        assert engine.created == ["wf-1"]
        assert engine.leaked == []


class TestStepBoundaries:
    @pytest.mark.asyncio
    async def test_first_step_failure_leaves_nothing(self, records, engine):
        async def broken_insert(record):
            raise RuntimeError("disk full")

        with patch.object(records, "insert_deployment", new=broken_insert):
            result = await _saga(records, engine).deploy(_graph(), "no-draft")

        assert result.status == "rolled_back"
        assert result.error.step == "persist_draft"
        assert result.furthest_step is None
        assert result.rolled_back == []
        assert result.compensation_failures == []
        assert engine.calls == []
        assert await records.get_deployment("no-draft") is None

    @pytest.mark.asyncio
    async def test_steps_after_failure_never_run(self, records, engine):
        engine.activate_error = {"error": "HTTP 500", "status_code": 500}
        writes: list = []

        with _failing_updates(records, failures=0, seen=writes):
            result = await _saga(records, engine).deploy(_graph(), "stop-here")

        assert result.error.step == "activate"
        assert result.record.status == "draft"
        assert ("active", "committed") not in writes
        assert all(status == "draft" for status, _ in writes)
        assert "deactivate_workflow" not in engine.calls
