"""FastAPI application wiring for the paygent pipeline service.

- Shared runtime objects (catalog, ledger, orchestrator, broadcaster) live in ``app.state``.
- Pipeline runs execute on the orchestrator's worker pool; HTTP handlers only submit and read.
- ``/ws`` streams every lifecycle event to each connected session.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from fastapi.websockets import WebSocketState

from .app.catalog import ServiceCatalog
from .app.content import ContentGenerator
from .app.demo_services import DemoServiceRouter
from .app.events import EventBroadcaster, QueueSubscriber
from .app.executor import StepExecutor
from .app.history import HistoryStore, InMemoryHistoryLog, PostgresHistoryLog
from .app.ledger import SpendLedger
from .app.llm import LLMAdapter, build_llm_adapter
from .app.models import (
    ExecutePipelineRequest,
    ExecutePipelineResponse,
    HistoryEntry,
    LimitsUpdate,
    PipelineRunStatus,
    PreviewRequest,
    PreviewResponse,
    PreviewStep,
    ServiceDescriptor,
    SpendingSummary,
    SpendLimits,
)
from .app.orchestrator import PipelineOrchestrator
from .app.payment import DemoPaymentProvider, HttpPaymentProvider, PaymentProvider
from .app.planner import Planner
from .app.settings import Settings, get_settings
from .app.ui import render_homepage

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    catalog: ServiceCatalog | None = None,
    payment_provider: PaymentProvider | None = None,
    llm_adapter: LLMAdapter | None = None,
    history: HistoryStore | None = None,
) -> FastAPI:
    """Application factory. Overrides replace the collaborators built from settings."""
    settings = settings_override or get_settings()
    logging.getLogger("paygent").setLevel(settings.log_level.upper())

    llm_adapter = llm_adapter or build_llm_adapter(settings)
    if settings.planner_mode.lower() == "llm" and llm_adapter is None:
        logger.warning(
            "app event=llm_unconfigured planner_mode=llm action=heuristic_only "
            "hint='set PAYGENT_OPENAI_API_KEY or OPENAI_API_KEY'"
        )
    content = ContentGenerator(llm_adapter=llm_adapter, timeout_s=settings.llm_timeout_s)
    catalog = catalog or ServiceCatalog(
        registry_url=settings.catalog_url,
        demo_server_url=settings.demo_server_url,
        ttl_s=settings.catalog_ttl_s,
        timeout_s=settings.catalog_timeout_s,
    )
    payment_provider = payment_provider or _build_payment_provider(settings, content)
    ledger = SpendLedger(settings.max_spend_per_task, settings.max_spend_per_day)
    history = history or _build_history(settings)
    broadcaster = EventBroadcaster()
    orchestrator = PipelineOrchestrator(
        catalog=catalog,
        planner=Planner(
            mode=settings.planner_mode,
            llm_adapter=llm_adapter,
            timeout_s=settings.llm_timeout_s,
        ),
        executor=StepExecutor(
            payment_provider=payment_provider,
            ledger=ledger,
            timeout_s=settings.payment_timeout_s,
        ),
        ledger=ledger,
        broadcaster=broadcaster,
        history=history,
        default_max_steps=settings.default_max_steps,
        max_concurrent_runs=settings.max_concurrent_runs,
        max_tracked_runs=settings.max_tracked_runs,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "app event=startup env=%s payment_mode=%s planner_mode=%s",
            settings.app_env,
            settings.payment_mode,
            settings.planner_mode,
        )
        yield
        app.state.orchestrator.shutdown(wait=False)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.catalog = catalog
    app.state.ledger = ledger
    app.state.history = history
    app.state.broadcaster = broadcaster
    app.state.orchestrator = orchestrator

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/", response_class=HTMLResponse)
    def home() -> str:
        return render_homepage(app_name=settings.app_name)

    @app.get("/api/services", response_model=list[ServiceDescriptor])
    def list_services(request: Request, q: str | None = None) -> list[ServiceDescriptor]:
        service_catalog = request.app.state.catalog
        return service_catalog.search(q) if q else service_catalog.all()

    @app.get("/api/spending", response_model=SpendingSummary)
    def spending(request: Request) -> SpendingSummary:
        return request.app.state.ledger.get_summary()

    @app.put("/api/limits", response_model=SpendLimits)
    def update_limits(payload: LimitsUpdate, request: Request) -> SpendLimits:
        spend_ledger: SpendLedger = request.app.state.ledger
        spend_ledger.set_limits(max_per_task=payload.max_per_task, max_per_day=payload.max_per_day)
        return spend_ledger.get_summary().limits

    @app.get("/api/history", response_model=list[HistoryEntry])
    def list_history(request: Request, limit: int = Query(default=20, ge=1, le=500)) -> list[HistoryEntry]:
        return request.app.state.orchestrator.get_history(limit)

    @app.post("/api/pipeline/execute", response_model=ExecutePipelineResponse)
    def execute_pipeline(payload: ExecutePipelineRequest, request: Request) -> ExecutePipelineResponse:
        pipeline_id = request.app.state.orchestrator.start_pipeline(
            payload.query,
            budget=payload.budget,
            max_steps=payload.max_steps,
        )
        logger.info("pipeline_api event=submitted pipeline_id=%s", pipeline_id)
        return ExecutePipelineResponse(pipeline_id=pipeline_id)

    @app.get("/api/pipeline/{pipeline_id}", response_model=PipelineRunStatus)
    def get_pipeline(pipeline_id: str, request: Request) -> PipelineRunStatus:
        status = request.app.state.orchestrator.get_status(pipeline_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Pipeline not found")
        return status

    @app.post("/api/pipeline/preview", response_model=PreviewResponse)
    def preview_pipeline(payload: PreviewRequest, request: Request) -> PreviewResponse:
        preview = request.app.state.orchestrator.preview(
            payload.query,
            budget=payload.budget,
            max_steps=payload.max_steps,
        )
        if preview.plan is None:
            return PreviewResponse(can_afford=False, reason=preview.reason)
        index = request.app.state.catalog.index()
        return PreviewResponse(
            steps=[
                PreviewStep(
                    id=step.id,
                    description=step.description,
                    service_id=step.service_id,
                    service_name=index[step.service_id].name if step.service_id in index else step.service_id,
                    estimated_cost=step.estimated_cost,
                )
                for step in preview.plan.steps
            ],
            description=preview.plan.description,
            estimated_total_cost=preview.plan.estimated_total_cost,
            can_afford=preview.can_afford,
            reason=preview.reason,
        )

    @app.websocket("/ws")
    async def events_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        subscriber = QueueSubscriber(asyncio.get_running_loop())
        unsubscribe = websocket.app.state.broadcaster.subscribe(subscriber)

        async def forward() -> None:
            while True:
                event = await subscriber.queue.get()
                await websocket.send_json(event.model_dump(mode="json"))

        async def drain() -> None:
            # Client messages are ignored; receiving detects the disconnect.
            while True:
                await websocket.receive_text()

        try:
            await websocket.send_json({"event": "connected", "data": {"message": "Connected to Paygent"}})
            tasks = {asyncio.create_task(forward()), asyncio.create_task(drain())}
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is None or isinstance(exc, WebSocketDisconnect):
                    logger.debug("events_ws event=disconnected")
                    continue
                logger.warning("events_ws event=send_failed reason=%s", exc)
                if websocket.client_state == WebSocketState.CONNECTED:
                    await websocket.close(code=1011)
        except WebSocketDisconnect:
            logger.debug("events_ws event=disconnected")
        finally:
            unsubscribe()

    return app


def _build_payment_provider(settings: Settings, content: ContentGenerator) -> PaymentProvider:
    mode = settings.payment_mode.lower().strip()
    if mode == "demo":
        return DemoPaymentProvider(
            DemoServiceRouter(content, network=settings.network),
            network=settings.network,
            starting_balance=settings.demo_wallet_balance,
        )
    if mode == "http":
        return HttpPaymentProvider(timeout_s=settings.payment_timeout_s, network=settings.network)
    raise RuntimeError(f"Unknown payment mode: {settings.payment_mode!r}. Use 'demo' or 'http'.")


def _build_history(settings: Settings) -> HistoryStore:
    if settings.database_url:
        return PostgresHistoryLog(settings.database_url, capacity=settings.history_capacity)
    return InMemoryHistoryLog(capacity=settings.history_capacity)


# Module-level app for `uvicorn paygent.main:app`.
app = create_app()
