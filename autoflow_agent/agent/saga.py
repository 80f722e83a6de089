"""Deployment Saga: transactional deployment with compensation.

An explicit, ordered list of SagaSteps run by a coordinator loop:

    #  execute              compensate
    1  persist_draft        delete the draft record
    2  create_in_engine     delete the engine workflow
    3  activate             deactivate
    4  mark_active          revert the record status

Each step is retried with exponential backoff (RetryPolicy) and bounded by a
per-attempt timeout.  Steps are safe to re-run: create_in_engine adopts the
workflow an earlier attempt created instead of creating another.  When a step
exhausts its retries, the completed steps are compensated in strict reverse
order, preceded by the failed step itself if it left an engine artifact.
Each compensation is retried a bounded number of times; a compensation
failure is logged and the remaining (earlier) compensations still run.

A committed record for the same idempotency key inside the idempotency window
short-circuits the saga with the cached result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from autoflow_agent.agent.compiler import WorkflowGraph
from autoflow_agent.agent.errors import DuplicateIdempotencyKeyError, SagaStepFailure
from autoflow_agent.agent.resilience import RetryPolicy
from autoflow_agent.client.engine_client import EngineClient, EngineError, raise_for_engine_error
from autoflow_agent.persistence.records import DeploymentRecord, FeedbackEntry, RecordStore

logger = logging.getLogger("autoflow_agent.agent.saga")


@dataclass
class SagaContext:
    """Mutable state shared by the steps of one saga run."""

    graph: WorkflowGraph
    record: DeploymentRecord
    # Engine create that outlived the attempt which started it.
    pending_create: asyncio.Task | None = None


@dataclass(frozen=True)
class SagaStep:
    name: str
    execute: Callable[[SagaContext], Awaitable[None]]
    compensate: Callable[[SagaContext], Awaitable[None]]
    # True when a failed execute() still left something to undo.
    leftover: Callable[[SagaContext], bool] | None = None

    def needs_undo_after_failure(self, ctx: SagaContext) -> bool:
        return self.leftover is not None and self.leftover(ctx)


@dataclass
class DeploymentResult:
    """Outcome of one deploy() call.

    status: "committed", "rolled_back" or "in_progress" (another request holds the key).
    furthest_step: last step that completed before the saga ended.
    rolled_back: steps whose compensation succeeded, in the order they ran.
    """

    status: str
    record: DeploymentRecord | None = None
    furthest_step: str | None = None
    rolled_back: list[str] = field(default_factory=list)
    compensation_failures: list[str] = field(default_factory=list)
    message: str = ""
    cached: bool = False
    error: SagaStepFailure | None = None
    feedback_id: int | None = None

    @property
    def success(self) -> bool:
        return self.status == "committed"

    @property
    def workflow_id(self) -> str | None:
        return self.record.external_workflow_id if self.record else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "record": self.record.to_dict() if self.record else None,
            "furthest_step": self.furthest_step,
            "rolled_back": list(self.rolled_back),
            "compensation_failures": list(self.compensation_failures),
            "message": self.message,
            "cached": self.cached,
        }


class DeploymentSaga:
    """Runs the deployment steps for one graph under one idempotency key."""

    def __init__(
        self,
        records: RecordStore,
        client: EngineClient,
        step_retry: RetryPolicy | None = None,
        compensation_retry: RetryPolicy | None = None,
        idempotency_window: float = 86400.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._records = records
        self._client = client
        self._step_retry = step_retry or RetryPolicy()
        self._compensation_retry = compensation_retry or RetryPolicy()
        self._window = idempotency_window
        self._clock = clock
        self._sleep = sleep
        self._steps: tuple[SagaStep, ...] = (
            SagaStep("persist_draft", self._persist_draft, self._delete_draft),
            SagaStep(
                "create_in_engine", self._create_in_engine, self._delete_from_engine,
                leftover=_has_engine_workflow,
            ),
            SagaStep("activate", self._activate, self._deactivate),
            SagaStep("mark_active", self._mark_active, self._revert_status),
        )

    @property
    def steps(self) -> tuple[SagaStep, ...]:
        return self._steps

    # ------------------------------------------------------------------
    # Coordinator
    # ------------------------------------------------------------------

    async def deploy(
        self,
        graph: WorkflowGraph,
        idempotency_key: str,
        user_id: str | None = None,
        intent: dict[str, Any] | None = None,
    ) -> DeploymentResult:
        cached = await self._check_idempotency(idempotency_key)
        if cached is not None:
            return cached

        ctx = SagaContext(
            graph=graph,
            record=DeploymentRecord(
                idempotency_key=idempotency_key,
                graph_json=json.dumps(graph.to_dict()),
            ),
        )
        completed: list[SagaStep] = []
        for step in self._steps:
            try:
                await self._step_retry.run(
                    lambda step=step: step.execute(ctx),
                    label=f"saga:{step.name}",
                    sleep=self._sleep,
                    give_up_on=(DuplicateIdempotencyKeyError,),
                )
            except DuplicateIdempotencyKeyError:
                logger.info("[Saga] Lost idempotency race for %s", idempotency_key)
                existing = await self._records.get_deployment(idempotency_key)
                return _existing_result(existing, idempotency_key)
            except asyncio.CancelledError:
                logger.warning("[Saga] Cancelled during %s; compensating", step.name)
                await asyncio.shield(self._compensate(ctx, _to_undo(ctx, completed, step)))
                raise
            except Exception as e:
                furthest = completed[-1].name if completed else None
                failure = SagaStepFailure(step.name, furthest, e)
                logger.error("[Saga] %s", failure)
                rolled_back, comp_failures = await self._compensate(
                    ctx, _to_undo(ctx, completed, step)
                )
                result = DeploymentResult(
                    status="rolled_back",
                    record=ctx.record,
                    furthest_step=furthest,
                    rolled_back=rolled_back,
                    compensation_failures=comp_failures,
                    message=_rollback_message(step.name, e, rolled_back, comp_failures),
                    error=failure,
                )
                result.feedback_id = await self._record_rollback(result, graph, user_id, intent)
                return result
            completed.append(step)
            if step.name not in ctx.record.steps_completed:
                ctx.record.steps_completed.append(step.name)
            logger.info("[Saga] %s: step %s done", idempotency_key, step.name)

        logger.info(
            "[Saga] Committed %s -> workflow %s", idempotency_key, ctx.record.external_workflow_id
        )
        return DeploymentResult(
            status="committed",
            record=ctx.record,
            furthest_step=self._steps[-1].name,
            message=f"Workflow {ctx.record.external_workflow_id} deployed and active",
        )

    async def _check_idempotency(self, key: str) -> DeploymentResult | None:
        existing = await self._records.get_deployment(key)
        if existing is None:
            return None
        age = self._clock() - existing.created_at
        if existing.saga_state == "rolled_back":
            logger.info("[Saga] Replacing rolled-back record for %s", key)
            await self._records.delete_deployment(key)
            return None
        if age <= self._window:
            return _existing_result(existing, key)
        logger.info("[Saga] Record for %s is %.0fs old (window %.0fs); replacing", key, age, self._window)
        await self._records.delete_deployment(key)
        return None

    async def _compensate(
        self, ctx: SagaContext, completed: list[SagaStep]
    ) -> tuple[list[str], list[str]]:
        rolled_back: list[str] = []
        failures: list[str] = []
        ctx.record.saga_state = "compensating"
        for step in reversed(completed):
            try:
                await self._compensation_retry.run(
                    lambda step=step: step.compensate(ctx),
                    label=f"saga:compensate:{step.name}",
                    sleep=self._sleep,
                )
            except Exception as e:
                logger.error("[Saga] Compensation of %s failed: %s", step.name, e)
                failures.append(step.name)
                continue
            rolled_back.append(step.name)
            if step.name in ctx.record.steps_completed:
                ctx.record.steps_completed.remove(step.name)
        ctx.record.saga_state = "rolled_back"
        if "persist_draft" in failures:
            # The draft survived; leave it marked so the key can be inspected.
            try:
                await self._records.update_deployment(ctx.record)
            except Exception as e:
                logger.error("[Saga] Could not mark %s rolled back: %s", ctx.record.idempotency_key, e)
        return rolled_back, failures

    async def _record_rollback(
        self,
        result: DeploymentResult,
        graph: WorkflowGraph,
        user_id: str | None,
        intent: dict[str, Any] | None,
    ) -> int | None:
        entry = FeedbackEntry(
            kind="saga_rolled_back",
            message=result.message,
            user_id=user_id,
            intent=intent,
            graph_shape=graph.shape(),
            diagnosis={
                "failed_step": result.error.step if result.error else None,
                "furthest_completed": result.furthest_step,
                "rolled_back": result.rolled_back,
                "compensation_failures": result.compensation_failures,
            },
        )
        try:
            return await self._records.record(entry)
        except Exception as e:
            logger.error("[Saga] Could not record rollback feedback: %s", e)
            return None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _persist_draft(self, ctx: SagaContext) -> None:
        ctx.record.saga_state = "running"
        ctx.record.status = "draft"
        await self._records.insert_deployment(ctx.record)

    async def _delete_draft(self, ctx: SagaContext) -> None:
        await self._records.delete_deployment(ctx.record.idempotency_key)

    async def _create_in_engine(self, ctx: SagaContext) -> None:
        if ctx.pending_create is None and not ctx.record.external_workflow_id:
            ctx.pending_create = asyncio.ensure_future(self._create_remote(ctx))
        await self._settle_create(ctx)
        # A retry after a failed write reuses the workflow created above.
        await self._records.update_deployment(ctx.record)

    async def _create_remote(self, ctx: SagaContext) -> None:
        nodes, connections = ctx.graph.to_engine_payload()
        result = await self._client.create_workflow(
            ctx.graph.name or "autoflow workflow", nodes, connections, settings=ctx.graph.settings
        )
        raise_for_engine_error(result, "create workflow")
        workflow_id = str(result.get("id") or "")
        if not workflow_id:
            raise RuntimeError("engine returned no workflow id")
        ctx.record.external_workflow_id = workflow_id

    async def _settle_create(self, ctx: SagaContext) -> None:
        """Wait for the in-flight engine create, if any.

        The create runs shielded, so an attempt timeout cancels only the wait.
        The next attempt (or the compensation) picks the same create up again.
        """
        task = ctx.pending_create
        if task is None:
            return
        try:
            await asyncio.shield(task)
        finally:
            if task.done():
                ctx.pending_create = None

    async def _delete_from_engine(self, ctx: SagaContext) -> None:
        if ctx.pending_create is not None:
            try:
                await self._settle_create(ctx)
            except (EngineError, RuntimeError) as e:
                logger.info("[Saga] In-flight create ended without a workflow: %s", e)
        workflow_id = ctx.record.external_workflow_id
        if not workflow_id:
            return
        result = await self._client.delete_workflow(workflow_id)
        if not (isinstance(result, dict) and result.get("status_code") == 404):
            raise_for_engine_error(result, "delete workflow")
        ctx.record.external_workflow_id = None

    async def _activate(self, ctx: SagaContext) -> None:
        raise_for_engine_error(
            await self._client.activate_workflow(ctx.record.external_workflow_id), "activate workflow"
        )

    async def _deactivate(self, ctx: SagaContext) -> None:
        raise_for_engine_error(
            await self._client.deactivate_workflow(ctx.record.external_workflow_id),
            "deactivate workflow",
        )

    async def _mark_active(self, ctx: SagaContext) -> None:
        ctx.record.status = "active"
        ctx.record.saga_state = "committed"
        ctx.record.steps_completed = [s.name for s in self._steps]
        await self._records.update_deployment(ctx.record)

    async def _revert_status(self, ctx: SagaContext) -> None:
        ctx.record.status = "draft"
        ctx.record.saga_state = "compensating"
        await self._records.update_deployment(ctx.record)


def _has_engine_workflow(ctx: SagaContext) -> bool:
    return bool(ctx.record.external_workflow_id) or ctx.pending_create is not None


def _to_undo(ctx: SagaContext, completed: list[SagaStep], failed: SagaStep) -> list[SagaStep]:
    if failed.needs_undo_after_failure(ctx):
        return [*completed, failed]
    return completed


def _existing_result(record: DeploymentRecord | None, key: str) -> DeploymentResult:
    if record is not None and record.committed:
        logger.info("[Saga] Returning cached deployment for %s", key)
        return DeploymentResult(
            status="committed",
            record=record,
            furthest_step=record.steps_completed[-1] if record.steps_completed else None,
            message=f"Workflow {record.external_workflow_id} already deployed for this request",
            cached=True,
        )
    return DeploymentResult(
        status="in_progress",
        record=record,
        furthest_step=record.steps_completed[-1] if record and record.steps_completed else None,
        message="A deployment for this request is already in progress",
        cached=True,
    )


def _rollback_message(
    step: str, error: Exception, rolled_back: list[str], failures: list[str]
) -> str:
    msg = f"Deployment failed at step '{step}' ({error}). "
    if rolled_back:
        msg += f"Rolled back: {', '.join(rolled_back)}."
    else:
        msg += "Nothing needed rolling back."
    if failures:
        msg += f" Compensation failed for: {', '.join(failures)}; manual cleanup may be needed."
    return msg
