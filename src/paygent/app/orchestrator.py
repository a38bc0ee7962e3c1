"""Pipeline orchestration: plan, budget-check, execute steps in order, record.

Run lifecycle: created -> planning -> running -> complete | failed.

Each run owns its ExecutionContext. The only state shared between concurrent
runs is the spend ledger, the event broadcaster, the history log and the
run-status table, all of which lock internally. Every run, successful or
not, ends with a PipelineResult, a history entry and a terminal event.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from . import events
from .catalog import ServiceCatalog
from .events import EventBroadcaster
from .executor import StepExecutor, interpolate_variables
from .formatting import format_duration, format_stx
from .history import HistoryStore, history_entry_from_result
from .ledger import SpendLedger
from .models import (
    ExecutionContext,
    HistoryEntry,
    PipelineResult,
    PipelineRunStatus,
    PipelineStatus,
    PlanPreview,
    ServiceDescriptor,
    StepResult,
    StepStatus,
    TaskPlan,
)
from .planner import Planner

logger = logging.getLogger(__name__)

NO_PLAN_ERROR = "Could not create execution plan for this task"
NO_SERVICES_ERROR = "No paid services available"


class _PlanningFailed(Exception):
    def __init__(self, message: str, *, stage: str, plan: TaskPlan | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.plan = plan


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        catalog: ServiceCatalog,
        planner: Planner,
        executor: StepExecutor,
        ledger: SpendLedger,
        broadcaster: EventBroadcaster,
        history: HistoryStore,
        default_max_steps: int = 5,
        max_concurrent_runs: int = 4,
        max_tracked_runs: int = 200,
    ) -> None:
        self.catalog = catalog
        self.planner = planner
        self.executor = executor
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.history = history
        self.default_max_steps = default_max_steps
        self.max_tracked_runs = max_tracked_runs
        self._runs: OrderedDict[str, PipelineRunStatus] = OrderedDict()
        self._runs_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrent_runs, thread_name_prefix="paygent-run"
        )

    def start_pipeline(
        self,
        query: str,
        *,
        budget: int | None = None,
        max_steps: int | None = None,
    ) -> str:
        """Submit a run to the background pool and return its id at once."""
        pipeline_id = _new_pipeline_id()
        self._track(PipelineRunStatus(pipeline_id=pipeline_id, query=query, started_at=_utc_now()))
        self._pool.submit(
            self._run_in_background, query, budget=budget, max_steps=max_steps, pipeline_id=pipeline_id
        )
        return pipeline_id

    def run_pipeline(
        self,
        query: str,
        *,
        budget: int | None = None,
        max_steps: int | None = None,
        pipeline_id: str | None = None,
    ) -> PipelineResult:
        pipeline_id = pipeline_id or _new_pipeline_id()
        started_at = _utc_now()
        started_perf = time.perf_counter()
        max_budget = self.ledger.max_per_task if budget is None else budget
        step_limit = self._clamp_steps(max_steps)
        if self.get_status(pipeline_id) is None:
            self._track(PipelineRunStatus(pipeline_id=pipeline_id, query=query, started_at=started_at))

        logger.info(
            "pipeline_run event=start pipeline_id=%s budget=%s max_steps=%d",
            pipeline_id,
            format_stx(max_budget),
            step_limit,
        )
        self._publish(events.PIPELINE_STARTED, pipeline_id, {"query": query})

        context = ExecutionContext(pipeline_id=pipeline_id, query=query)
        try:
            plan = self._plan(context, max_budget=max_budget, max_steps=step_limit)
        except _PlanningFailed as exc:
            return self._finish(
                context,
                plan=exc.plan,
                started_at=started_at,
                started_perf=started_perf,
                error=str(exc),
                extra={"stage": exc.stage},
            )

        try:
            # Re-resolved here: the catalog may have changed since planning.
            error, failed_step = self._execute_steps(plan, context, self.catalog.index())
        finally:
            if context.reservation_id is not None:
                self.ledger.release(context.reservation_id)

        extra = {"stage": "execution", "step_id": failed_step} if error else {}
        return self._finish(
            context,
            plan=plan,
            started_at=started_at,
            started_perf=started_perf,
            error=error,
            extra=extra,
        )

    def preview(
        self,
        query: str,
        *,
        budget: int | None = None,
        max_steps: int | None = None,
    ) -> PlanPreview:
        max_budget = self.ledger.max_per_task if budget is None else budget
        plan = self.planner.build_plan(
            query,
            self.catalog.all(),
            max_budget=max_budget,
            max_steps=self._clamp_steps(max_steps),
        )
        if plan is None or not plan.steps:
            return PlanPreview(plan=None, can_afford=False, reason=NO_PLAN_ERROR)
        check = self.ledger.can_spend(plan.estimated_total_cost)
        return PlanPreview(plan=plan, can_afford=check.allowed, reason=check.reason)

    def get_status(self, pipeline_id: str) -> PipelineRunStatus | None:
        with self._runs_lock:
            status = self._runs.get(pipeline_id)
            return status.model_copy(deep=True) if status is not None else None

    def get_history(self, limit: int = 20) -> list[HistoryEntry]:
        return self.history.get_recent(limit)

    def shutdown(self, *, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)

    def _plan(
        self,
        context: ExecutionContext,
        *,
        max_budget: int,
        max_steps: int,
    ) -> TaskPlan:
        pipeline_id = context.pipeline_id
        self._update(pipeline_id, status="planning")
        self._publish(events.PIPELINE_PLANNING, pipeline_id, {"message": "Discovering services..."})
        try:
            services = self.catalog.all()
            if not services:
                raise _PlanningFailed(NO_SERVICES_ERROR, stage="planning")
            self._publish(
                events.PIPELINE_PLANNING,
                pipeline_id,
                {"message": f"Planning with {len(services)} services..."},
            )
            plan = self.planner.build_plan(
                context.query, services, max_budget=max_budget, max_steps=max_steps
            )
        except _PlanningFailed:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("pipeline_run event=planning_error pipeline_id=%s reason=%s", pipeline_id, exc)
            raise _PlanningFailed(f"{NO_PLAN_ERROR}: {exc}", stage="planning") from exc
        if plan is None or not plan.steps:
            raise _PlanningFailed(NO_PLAN_ERROR, stage="planning")

        check, reservation = self.ledger.reserve(plan.estimated_total_cost)
        if reservation is None:
            raise _PlanningFailed(f"Budget exceeded: {check.reason}", stage="budget", plan=plan)
        context.reservation_id = reservation.reservation_id

        self._update(
            pipeline_id,
            steps=[
                StepStatus(step_id=step.id, description=step.description, service_id=step.service_id)
                for step in plan.steps
            ],
        )
        self._publish(
            events.PIPELINE_PLANNED,
            pipeline_id,
            {
                "plan_id": plan.id,
                "description": plan.description,
                "total_steps": len(plan.steps),
                "estimated_total_cost": plan.estimated_total_cost,
                "steps": [step.model_dump(mode="json") for step in plan.steps],
            },
        )
        logger.info(
            "pipeline_run event=planned pipeline_id=%s steps=%d estimated_cost=%s",
            pipeline_id,
            len(plan.steps),
            format_stx(plan.estimated_total_cost),
        )
        return plan

    def _execute_steps(
        self,
        plan: TaskPlan,
        context: ExecutionContext,
        services: Mapping[str, ServiceDescriptor],
    ) -> tuple[str | None, str | None]:
        """Run steps strictly in order. Returns (error, failed_step_id) on abort."""
        pipeline_id = context.pipeline_id
        self._update(pipeline_id, status="running")
        total = len(plan.steps)
        for position, step in enumerate(plan.steps):
            self._update_step(pipeline_id, position, status="running")
            self._publish(
                events.STEP_STARTED,
                pipeline_id,
                {
                    "step_index": position,
                    "total_steps": total,
                    "step_id": step.id,
                    "description": step.description,
                    "service_id": step.service_id,
                },
            )
            try:
                result = self.executor.execute(step, context, services)
            except Exception as exc:  # noqa: BLE001
                result = StepResult(step_id=step.id, service_id=step.service_id, success=False, error=str(exc))

            context.results.append(result)
            context.total_spent += result.cost
            self._update(pipeline_id, total_cost=context.total_spent)

            if result.success:
                if result.data is not None:
                    context.variables[f"step{position + 1}"] = result.data
                    context.variables["lastResult"] = result.data
                self._update_step(
                    pipeline_id,
                    position,
                    status="completed",
                    cost=result.cost,
                    tx_id=result.payment.tx_id if result.payment else None,
                )
                self._publish(
                    events.STEP_COMPLETED,
                    pipeline_id,
                    {
                        "step_index": position,
                        "step_id": step.id,
                        "service_id": step.service_id,
                        "kind": result.kind,
                        "cost": result.cost,
                        "tx_id": result.payment.tx_id if result.payment else None,
                        "explorer_url": result.payment.explorer_url if result.payment else None,
                        "result": result.data,
                    },
                )
                continue

            error = result.error or "Step failed"
            self._update_step(pipeline_id, position, status="failed", cost=result.cost, error=error)
            self._publish(
                events.STEP_FAILED,
                pipeline_id,
                {
                    "step_index": position,
                    "step_id": step.id,
                    "service_id": step.service_id,
                    "required": step.required,
                    "error": error,
                },
            )
            logger.info(
                "pipeline_run event=step_failed pipeline_id=%s step_id=%s required=%s error=%s",
                pipeline_id,
                step.id,
                step.required,
                error,
            )
            if step.required:
                return error, step.id
        return None, None

    def _finish(
        self,
        context: ExecutionContext,
        *,
        plan: TaskPlan | None,
        started_at: datetime,
        started_perf: float,
        error: str | None,
        extra: dict[str, Any],
    ) -> PipelineResult:
        pipeline_id = context.pipeline_id
        success = error is None
        result = PipelineResult(
            pipeline_id=pipeline_id,
            query=context.query,
            success=success,
            plan=plan,
            step_results=list(context.results),
            final_output=compile_final_output(context, plan) if success else None,
            total_cost=context.total_spent,
            started_at=started_at,
            completed_at=_utc_now(),
            duration_ms=round((time.perf_counter() - started_perf) * 1000.0, 2),
            error=error,
        )
        try:
            self.history.add_entry(history_entry_from_result(result))
        except Exception:  # noqa: BLE001
            logger.exception("pipeline_run event=history_write_failed pipeline_id=%s", pipeline_id)

        terminal: PipelineStatus = "complete" if success else "failed"
        self._update(
            pipeline_id,
            status=terminal,
            finished_at=result.completed_at,
            duration_ms=result.duration_ms,
            total_cost=result.total_cost,
            error=error,
            final_output=result.final_output,
        )
        if success:
            self._publish(
                events.PIPELINE_COMPLETED,
                pipeline_id,
                {
                    "total_cost": result.total_cost,
                    "duration_ms": result.duration_ms,
                    "result": result.final_output,
                },
            )
        else:
            self._publish(
                events.PIPELINE_FAILED,
                pipeline_id,
                {"error": error, "total_cost": result.total_cost, **extra},
            )
        logger.info(
            "pipeline_run event=%s pipeline_id=%s total_cost=%s duration=%s error=%s",
            "completed" if success else "failed",
            pipeline_id,
            format_stx(result.total_cost),
            format_duration(result.duration_ms),
            error,
        )
        return result

    def _run_in_background(self, query: str, **kwargs: Any) -> None:
        try:
            self.run_pipeline(query, **kwargs)
        except Exception:  # noqa: BLE001
            logger.exception("pipeline_run event=crashed pipeline_id=%s", kwargs.get("pipeline_id"))
            self._update(kwargs["pipeline_id"], status="failed", error="Internal pipeline error")

    def _clamp_steps(self, max_steps: int | None) -> int:
        if max_steps is None:
            return self.default_max_steps
        return max(1, min(max_steps, self.default_max_steps))

    def _publish(self, event: str, pipeline_id: str, data: dict[str, Any]) -> None:
        self.broadcaster.publish(event, pipeline_id, data)

    def _track(self, status: PipelineRunStatus) -> None:
        with self._runs_lock:
            self._runs[status.pipeline_id] = status
            while len(self._runs) > self.max_tracked_runs:
                self._runs.popitem(last=False)

    def _update(self, pipeline_id: str, **fields: Any) -> None:
        with self._runs_lock:
            current = self._runs.get(pipeline_id)
            if current is not None:
                self._runs[pipeline_id] = current.model_copy(update=fields)

    def _update_step(self, pipeline_id: str, position: int, **fields: Any) -> None:
        with self._runs_lock:
            current = self._runs.get(pipeline_id)
            if current is None or position >= len(current.steps):
                return
            steps = list(current.steps)
            steps[position] = steps[position].model_copy(update=fields)
            self._runs[pipeline_id] = current.model_copy(update={"steps": steps})


def compile_final_output(context: ExecutionContext, plan: TaskPlan | None) -> Any:
    """Prefer the interpolated output template, else the last successful payload."""
    if plan is not None and plan.output_template:
        return interpolate_variables(plan.output_template, context.variables)
    for result in reversed(context.results):
        if result.success and result.data is not None:
            return result.data
    return None


def _new_pipeline_id() -> str:
    return f"pipeline-{uuid4().hex}"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)
