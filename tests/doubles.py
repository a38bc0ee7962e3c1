"""Test doubles shared by the unit and API tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from paygent.app.models import (
    AssetType,
    PaymentOutcome,
    PaymentResponse,
    PipelineEvent,
    ServiceDescriptor,
    ServicePrice,
)


def make_service(
    service_id: str,
    *,
    category: str = "general",
    amount: int = 500,
    asset: AssetType = "STX",
    name: str | None = None,
    description: str = "",
    tags: tuple[str, ...] = (),
    endpoint: str = "/api/echo",
) -> ServiceDescriptor:
    return ServiceDescriptor(
        id=service_id,
        name=name or service_id,
        description=description,
        category=category,
        tags=list(tags),
        price=ServicePrice(amount=amount, asset=asset),
        url=f"http://services.test{endpoint}",
        endpoint=endpoint,
    )


class StaticCatalog:
    """Test-only catalog double serving a fixed, mutable list."""

    def __init__(self, services: list[ServiceDescriptor]) -> None:
        self.services = list(services)

    def all(self) -> list[ServiceDescriptor]:
        return list(self.services)

    def search(self, query: str) -> list[ServiceDescriptor]:
        needle = query.lower()
        return [s for s in self.services if needle in s.name.lower() or needle in s.description.lower()]

    def by_category(self, category: str) -> list[ServiceDescriptor]:
        return [s for s in self.services if s.category == category]

    def index(self) -> dict[str, ServiceDescriptor]:
        return {s.id: s for s in self.services}


class ScriptedPaymentProvider:
    """Pays every call successfully unless ``outcomes`` scripts something else per service id."""

    def __init__(
        self,
        *,
        outcomes: dict[str, PaymentResponse | Callable[[ServiceDescriptor, Any], PaymentResponse]] | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.data = data or {}
        self.calls: list[tuple[str, Any]] = []

    def pay(self, service: ServiceDescriptor, payload: Any = None) -> PaymentResponse:
        self.calls.append((service.id, payload))
        scripted = self.outcomes.get(service.id)
        if callable(scripted):
            return scripted(service, payload)
        if scripted is not None:
            return scripted
        return PaymentResponse(
            payment=PaymentOutcome(
                success=True,
                tx_id=f"tx-{len(self.calls)}",
                amount=service.price.amount,
                asset=service.price.asset,
            ),
            data=self.data.get(service.id, {"success": True, "type": "echo", "data": {"from": service.id}}),
        )

    @property
    def called_ids(self) -> list[str]:
        return [service_id for service_id, _ in self.calls]


def failed_payment(message: str) -> PaymentResponse:
    return PaymentResponse(payment=PaymentOutcome(success=False, error=message))


class FixedClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 14, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def names(self, pipeline_id: str | None = None) -> list[str]:
        return [e.event for e in self.events if pipeline_id is None or e.pipeline_id == pipeline_id]

    def of(self, name: str) -> list[PipelineEvent]:
        return [e for e in self.events if e.event == name]


