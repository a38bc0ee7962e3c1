"""Planning layer: turn a free-text query into an ordered plan of paid steps.

Two tiers, attempted in order:
1) LLM planning: the model picks services from the catalog; code validates the draft.
2) Heuristic planning, itself layered:
   a) pattern detectors mapped to task categories (gather -> process -> produce),
   b) keyword overlap scoring when no detector matches,
   c) the single cheapest affordable service when both produce nothing.

The planner never executes anything. Every plan it returns satisfies
``len(steps) <= max_steps`` and ``estimated_total_cost <= max_budget``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from .formatting import format_price, format_stx
from .llm import LLMAdapter
from .models import PlanStep, ServiceDescriptor, TaskPlan

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 5
DEFAULT_MAX_BUDGET = 1_000_000
CHAIN_PLACEHOLDER = "{{lastResult}}"

# Category tier scoring.
CATEGORY_MATCH = 10
NAME_HIT = 5
DESCRIPTION_HIT = 3
TAG_HIT = 4

# Keyword tier scoring.
KEYWORD_NAME_HIT = 3
KEYWORD_DESCRIPTION_HIT = 2
KEYWORD_TAG_HIT = 2
MIN_KEYWORD_LENGTH = 3


@dataclass(frozen=True)
class TaskPattern:
    pattern: re.Pattern[str]
    category: str
    keywords: tuple[str, ...]


# Order matters: data gathering first, processing in the middle, output last.
TASK_PATTERNS: tuple[TaskPattern, ...] = (
    TaskPattern(re.compile(r"bitcoin\s*(news|headlines?|updates?)"), "news", ("bitcoin", "news")),
    TaskPattern(re.compile(r"stacks?\s*(news|headlines?|updates?)"), "news", ("stacks", "news")),
    TaskPattern(re.compile(r"(news|headlines?|updates?)"), "news", ("news",)),
    TaskPattern(re.compile(r"bitcoin\s*price"), "market", ("bitcoin", "price", "btc")),
    TaskPattern(re.compile(r"stx\s*price|stacks?\s*price"), "market", ("stx", "price")),
    TaskPattern(re.compile(r"blockchain\s*info"), "blockchain", ("blockchain", "info")),
    TaskPattern(re.compile(r"summarize|summary"), "ai", ("summarize", "ai")),
    TaskPattern(re.compile(r"sentiment|analyze"), "ai", ("sentiment", "analysis")),
    TaskPattern(re.compile(r"translate"), "ai", ("translate", "language")),
    TaskPattern(re.compile(r"tweet|post|social"), "generation", ("tweet", "generate", "social")),
    TaskPattern(re.compile(r"report"), "generation", ("report", "generate")),
)


class LLMPlanStepDraft(BaseModel):
    id: str | None = None
    description: str = ""
    service_id: str
    request_data: dict[str, Any] | None = None
    required: bool = True


class LLMPlanDraft(BaseModel):
    """Structured response requested from the model."""

    description: str = ""
    steps: list[LLMPlanStepDraft] = Field(default_factory=list)
    output_template: str | None = None
    error: str | None = None


def detect_tasks(query: str) -> list[TaskPattern]:
    """Matching detectors in table order, one per category."""
    lowered = query.lower()
    detected: list[TaskPattern] = []
    seen_categories: set[str] = set()
    for task in TASK_PATTERNS:
        if task.category in seen_categories or not task.pattern.search(lowered):
            continue
        detected.append(task)
        seen_categories.add(task.category)
    return detected


def score_for_task(service: ServiceDescriptor, task: TaskPattern, selected_ids: set[str]) -> int:
    if service.id in selected_ids:
        return 0
    name = service.name.lower()
    description = service.description.lower()
    tags = {tag.lower() for tag in service.tags}
    score = CATEGORY_MATCH if service.category == task.category else 0
    for keyword in task.keywords:
        if keyword in name:
            score += NAME_HIT
        if keyword in description:
            score += DESCRIPTION_HIT
        if keyword in tags:
            score += TAG_HIT
    return score


def keyword_score(service: ServiceDescriptor, words: list[str]) -> int:
    name = service.name.lower()
    description = service.description.lower()
    tags = [tag.lower() for tag in service.tags]
    score = 0
    for word in words:
        if word in name:
            score += KEYWORD_NAME_HIT
        if word in description:
            score += KEYWORD_DESCRIPTION_HIT
        if any(word in tag for tag in tags):
            score += KEYWORD_TAG_HIT
    return score


def build_heuristic_plan(
    query: str,
    services: list[ServiceDescriptor],
    *,
    max_budget: int = DEFAULT_MAX_BUDGET,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> TaskPlan | None:
    if not services or max_steps < 1:
        return None
    tasks = detect_tasks(query)
    if tasks:
        selected = _select_by_pattern(tasks[:max_steps], services, max_budget)
    else:
        selected = _select_by_keyword(query, services, max_budget, max_steps)
    if not selected:
        cheapest = min(services, key=lambda s: s.price.amount)
        if cheapest.price.amount > max_budget:
            return None
        selected = [cheapest]
    return _plan_from_services(query, selected)


def _select_by_pattern(
    tasks: list[TaskPattern],
    services: list[ServiceDescriptor],
    max_budget: int,
) -> list[ServiceDescriptor]:
    selected: list[ServiceDescriptor] = []
    selected_ids: set[str] = set()
    running_cost = 0
    for task in tasks:
        best: ServiceDescriptor | None = None
        best_score = 0
        for service in services:
            score = score_for_task(service, task, selected_ids)
            if score > best_score:
                best, best_score = service, score
        if best is None:
            continue
        if running_cost + best.price.amount <= max_budget:
            selected.append(best)
            selected_ids.add(best.id)
            running_cost += best.price.amount
        else:
            logger.debug("planner event=skip_over_budget category=%s service=%s", task.category, best.id)
    return selected


def _select_by_keyword(
    query: str,
    services: list[ServiceDescriptor],
    max_budget: int,
    max_steps: int,
) -> list[ServiceDescriptor]:
    words = [w for w in query.lower().split() if len(w) >= MIN_KEYWORD_LENGTH]
    scored = sorted(
        ((keyword_score(service, words), service) for service in services),
        key=lambda pair: (-pair[0], pair[1].price.amount),
    )
    selected: list[ServiceDescriptor] = []
    running_cost = 0
    for score, service in scored:
        if len(selected) >= max_steps:
            break
        if score == 0 and selected:
            break
        if running_cost + service.price.amount <= max_budget:
            selected.append(service)
            running_cost += service.price.amount
    return selected


def _plan_from_services(query: str, selected: list[ServiceDescriptor]) -> TaskPlan:
    steps = [
        PlanStep(
            id=f"step-{index + 1}",
            description=f"Use {service.name}: {service.description}",
            service_id=service.id,
            request_data={"input": CHAIN_PLACEHOLDER} if index > 0 else None,
            required=True,
            estimated_cost=service.price.amount,
        )
        for index, service in enumerate(selected)
    ]
    return TaskPlan(
        id=_new_plan_id(),
        query=query,
        description=f"Execute {len(steps)} service(s) to complete the task",
        steps=steps,
        estimated_total_cost=sum(step.estimated_cost for step in steps),
    )


class LLMPlanner:
    """Planner that asks an LLM for a draft plan and validates it against the catalog."""

    def __init__(self, *, llm_adapter: LLMAdapter, timeout_s: float = 8.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def build_plan(
        self,
        query: str,
        services: list[ServiceDescriptor],
        *,
        max_budget: int,
        max_steps: int,
    ) -> TaskPlan:
        catalog = "\n".join(
            f'- ID: "{s.id}", Name: "{s.name}", Description: "{s.description}", '
            f"Price: {format_price(s.price.amount, s.price.asset)}, Tags: [{', '.join(s.tags)}]"
            for s in services
        )
        system_prompt = (
            "You are Paygent, an agent that orchestrates multi-step tasks using paid API "
            "services. Return JSON only. Each step must use exactly ONE service from the list. "
            "Steps may reference earlier outputs with {{stepN}} or {{lastResult}}. "
            'If no service can help, return {"error": "reason"}.'
        )
        user_prompt = (
            f'User request: "{query}"\n\n'
            f"Available services:\n{catalog}\n\n"
            f"Constraints:\n- Maximum {max_steps} steps\n"
            f"- Maximum budget: {format_stx(max_budget)}\n\n"
            "Return a plan that conforms to the provided schema."
        )
        draft = self.llm_adapter.generate_structured(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            response_model=LLMPlanDraft,
            timeout_s=self.timeout_s,
        )
        return self._validate_draft(draft, query, services, max_budget=max_budget, max_steps=max_steps)

    @staticmethod
    def _validate_draft(
        draft: LLMPlanDraft,
        query: str,
        services: list[ServiceDescriptor],
        *,
        max_budget: int,
        max_steps: int,
    ) -> TaskPlan:
        if draft.error:
            raise ValueError(f"LLM planner declined: {draft.error}")
        if not draft.steps:
            raise ValueError("LLM plan has no steps")
        if len(draft.steps) > max_steps:
            raise ValueError(f"LLM plan has {len(draft.steps)} steps; limit is {max_steps}")
        index = {service.id: service for service in services}
        steps: list[PlanStep] = []
        for position, step in enumerate(draft.steps):
            service = index.get(step.service_id)
            if service is None:
                raise ValueError(f"Unknown service from LLM planner: {step.service_id}")
            steps.append(
                PlanStep(
                    id=step.id or f"step-{position + 1}",
                    description=step.description or f"Use {service.name}",
                    service_id=service.id,
                    request_data=step.request_data,
                    required=step.required,
                    estimated_cost=service.price.amount,
                )
            )
        total = sum(step.estimated_cost for step in steps)
        if total > max_budget:
            raise ValueError(
                f"LLM plan costs {format_stx(total)}; budget is {format_stx(max_budget)}"
            )
        return TaskPlan(
            id=_new_plan_id(),
            query=query,
            description=draft.description or f"Execute {len(steps)} service(s) to complete the task",
            steps=steps,
            estimated_total_cost=total,
            output_template=draft.output_template,
        )


class Planner:
    """Route planning requests to the LLM planner or the heuristic planner."""

    def __init__(
        self,
        *,
        mode: str = "heuristic",
        llm_adapter: LLMAdapter | None = None,
        timeout_s: float = 8.0,
    ) -> None:
        self.mode = mode.lower().strip()
        self.llm_planner = (
            LLMPlanner(llm_adapter=llm_adapter, timeout_s=timeout_s) if llm_adapter else None
        )

    def build_plan(
        self,
        query: str,
        services: list[ServiceDescriptor],
        *,
        max_budget: int | None = None,
        max_steps: int | None = None,
    ) -> TaskPlan | None:
        budget = DEFAULT_MAX_BUDGET if max_budget is None else max_budget
        steps = DEFAULT_MAX_STEPS if max_steps is None else max_steps
        if not services:
            logger.warning("planner event=no_services query=%s", json.dumps(query))
            return None

        if self.mode == "llm" and self.llm_planner is not None:
            try:
                plan = self.llm_planner.build_plan(query, services, max_budget=budget, max_steps=steps)
            except Exception as exc:  # noqa: BLE001
                logger.warning("planner event=llm_failed action=heuristic_fallback reason=%s", exc)
            else:
                logger.info("planner event=planned tier=llm steps=%d", len(plan.steps))
                return plan
        elif self.mode == "llm":
            logger.warning("planner event=llm_unavailable action=heuristic_fallback")

        plan = build_heuristic_plan(query, services, max_budget=budget, max_steps=steps)
        if plan is None:
            logger.info("planner event=no_plan query=%s budget=%s", json.dumps(query), budget)
        else:
            logger.info(
                "planner event=planned tier=heuristic steps=%d estimated_cost=%s",
                len(plan.steps),
                plan.estimated_total_cost,
            )
        return plan


def _new_plan_id() -> str:
    return f"plan-{uuid4().hex[:12]}"
