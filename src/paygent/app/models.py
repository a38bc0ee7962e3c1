"""Pydantic models shared across API, planner, executor, orchestrator, and storage.

Amounts are always integers in micro-units of the service's asset
(1 STX = 1_000_000 micro-STX, 1 sBTC = 100_000_000 sats).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

AssetType = Literal["STX", "sBTC", "USDCx"]
# Only this asset counts toward budget ceilings.
PRIMARY_ASSET: AssetType = "STX"

# Run lifecycle: created -> planning -> running -> complete | failed.
PipelineStatus = Literal["created", "planning", "running", "complete", "failed"]
StepStatusValue = Literal["pending", "running", "completed", "failed"]

# Tagged union of paid-service responses, decided once by the step executor.
ResponseKind = Literal[
    "price",
    "news",
    "sentiment",
    "summary",
    "generated_tweet",
    "generated_report",
    "generic",
]


class ServicePrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: int = Field(ge=0)
    asset: AssetType = PRIMARY_ASSET


class ServiceDescriptor(BaseModel):
    """A priced, tagged catalog entry."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    category: str = "general"
    tags: list[str] = Field(default_factory=list)
    price: ServicePrice
    url: str
    endpoint: str = ""
    network: str = "stacks:testnet"
    seller: str = ""
    uptime: float | None = None
    avg_response_time_ms: float | None = None
    total_transactions: int | None = None


class PlanStep(BaseModel):
    """One unit of work bound to exactly one catalog service."""

    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    service_id: str
    # May contain {{name}} placeholders resolved from earlier step outputs.
    request_data: Any = None
    required: bool = True
    estimated_cost: int = 0


class TaskPlan(BaseModel):
    """Ordered steps produced by the planner and consumed by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    id: str
    query: str
    description: str
    steps: list[PlanStep] = Field(default_factory=list)
    estimated_total_cost: int = 0
    output_template: str | None = None


class PaymentOutcome(BaseModel):
    success: bool
    tx_id: str | None = None
    amount: int | None = None
    asset: AssetType | None = None
    error: str | None = None
    explorer_url: str | None = None


class PaymentResponse(BaseModel):
    """What a payment provider returns for one paid call."""

    payment: PaymentOutcome
    data: Any = None


class StepResult(BaseModel):
    step_id: str
    success: bool
    service_id: str | None = None
    service: ServiceDescriptor | None = None
    data: Any = None
    kind: ResponseKind = "generic"
    payment: PaymentOutcome | None = None
    cost: int = 0
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float = 0.0


@dataclass
class ExecutionContext:
    """Per-run accumulator. Owned by exactly one orchestrator invocation."""

    pipeline_id: str
    query: str
    variables: dict[str, Any] = field(default_factory=dict)
    results: list[StepResult] = field(default_factory=list)
    total_spent: int = 0
    reservation_id: str | None = None


class PipelineResult(BaseModel):
    pipeline_id: str
    query: str
    success: bool
    plan: TaskPlan | None = None
    step_results: list[StepResult] = Field(default_factory=list)
    final_output: Any = None
    total_cost: int = 0
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    error: str | None = None


class SpendRecord(BaseModel):
    timestamp: datetime
    amount: int
    asset: AssetType
    service_id: str
    service_name: str
    tx_id: str | None = None


class SpendCheck(BaseModel):
    allowed: bool
    reason: str | None = None


class Reservation(BaseModel):
    reservation_id: str
    amount: int


class TodaySpend(BaseModel):
    total: int
    transactions: int
    by_service: dict[str, int] = Field(default_factory=dict)


class AllTimeSpend(BaseModel):
    total: int
    transactions: int


class SpendLimits(BaseModel):
    per_task: int
    per_day: int
    remaining_today: int


class SpendingSummary(BaseModel):
    today: TodaySpend
    all_time: AllTimeSpend
    limits: SpendLimits


class HistoryEntry(BaseModel):
    """Display/audit projection of a PipelineResult."""

    id: str
    query: str
    step_count: int
    total_cost: int
    duration_ms: float
    status: Literal["success", "failed"]
    tx_hashes: list[str] = Field(default_factory=list)
    timestamp: datetime
    output: Any = None
    error: str | None = None


class PipelineEvent(BaseModel):
    event: str
    pipeline_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class StepStatus(BaseModel):
    step_id: str
    description: str
    service_id: str
    status: StepStatusValue = "pending"
    cost: int = 0
    tx_id: str | None = None
    error: str | None = None


class PipelineRunStatus(BaseModel):
    pipeline_id: str
    query: str
    status: PipelineStatus = "created"
    steps: list[StepStatus] = Field(default_factory=list)
    total_cost: int = 0
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: float = 0.0
    error: str | None = None
    final_output: Any = None


class PlanPreview(BaseModel):
    plan: TaskPlan | None = None
    can_afford: bool = False
    reason: str | None = None


class ExecutePipelineRequest(BaseModel):
    """Request body for POST /api/pipeline/execute."""

    query: str = Field(min_length=1)
    # Micro-units of the primary asset; defaults to the per-task ceiling.
    budget: int | None = Field(default=None, ge=0)
    max_steps: int | None = Field(default=None, ge=1)


class ExecutePipelineResponse(BaseModel):
    pipeline_id: str


class PreviewRequest(BaseModel):
    query: str = Field(min_length=1)
    budget: int | None = Field(default=None, ge=0)
    max_steps: int | None = Field(default=None, ge=1)


class PreviewStep(BaseModel):
    id: str
    description: str
    service_id: str
    service_name: str
    estimated_cost: int


class PreviewResponse(BaseModel):
    steps: list[PreviewStep] = Field(default_factory=list)
    description: str | None = None
    estimated_total_cost: int = 0
    can_afford: bool = False
    reason: str | None = None


class LimitsUpdate(BaseModel):
    max_per_task: int | None = Field(default=None, ge=0)
    max_per_day: int | None = Field(default=None, ge=0)
