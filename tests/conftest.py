from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from paygent.app.catalog import fallback_services
from paygent.app.events import EventBroadcaster
from paygent.app.executor import StepExecutor
from paygent.app.history import InMemoryHistoryLog
from paygent.app.ledger import SpendLedger
from paygent.app.models import ServiceDescriptor
from paygent.app.orchestrator import PipelineOrchestrator
from paygent.app.planner import Planner
from paygent.app.settings import Settings

from .doubles import ScriptedPaymentProvider, StaticCatalog


@pytest.fixture
def offline_settings() -> Settings:
    return Settings(
        _env_file=None,
        catalog_url="",
        payment_mode="demo",
        planner_mode="heuristic",
        database_url="",
        openai_api_key="",
        llm_provider="none",
    )


@pytest.fixture
def make_orchestrator() -> Iterator[Callable[..., PipelineOrchestrator]]:
    created: list[PipelineOrchestrator] = []

    def factory(
        *,
        services: list[ServiceDescriptor] | None = None,
        catalog: Any = None,
        provider: Any = None,
        planner: Any = None,
        ledger: SpendLedger | None = None,
        history: Any = None,
        max_per_task: int = 100_000,
        max_per_day: int = 1_000_000,
        default_max_steps: int = 5,
        max_concurrent_runs: int = 4,
    ) -> PipelineOrchestrator:
        ledger = ledger or SpendLedger(max_per_task, max_per_day)
        orchestrator = PipelineOrchestrator(
            catalog=catalog or StaticCatalog(services if services is not None else fallback_services()),
            planner=planner or Planner(mode="heuristic"),
            executor=StepExecutor(
                payment_provider=provider or ScriptedPaymentProvider(),
                ledger=ledger,
                timeout_s=5.0,
            ),
            ledger=ledger,
            broadcaster=EventBroadcaster(),
            history=history or InMemoryHistoryLog(capacity=50),
            default_max_steps=default_max_steps,
            max_concurrent_runs=max_concurrent_runs,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown(wait=True)


@pytest.fixture
def client(offline_settings: Settings) -> Iterator[TestClient]:
    from paygent.main import create_app

    app = create_app(settings_override=offline_settings)
    with TestClient(app) as test_client:
        yield test_client
