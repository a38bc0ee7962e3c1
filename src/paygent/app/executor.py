from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError
from datetime import UTC, datetime
from typing import Any

from .ledger import SpendLedger
from .models import (
    ExecutionContext,
    PaymentResponse,
    PlanStep,
    ResponseKind,
    ServiceDescriptor,
    StepResult,
)
from .payment import PaymentProvider

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

_SIMPLE_KINDS: dict[str, ResponseKind] = {
    "price": "price",
    "news": "news",
    "sentiment": "sentiment",
    "summary": "summary",
}
_GENERATED_KINDS: dict[str, ResponseKind] = {
    "tweet": "generated_tweet",
    "report": "generated_report",
}


def interpolate_variables(data: Any, variables: Mapping[str, Any]) -> Any:
    """Replace ``{{name}}`` with the compact JSON form of ``variables[name]``.

    Walks strings, lists and dicts. Unknown names stay in place verbatim.
    """
    if isinstance(data, str):
        return PLACEHOLDER.sub(lambda match: _render(match, variables), data)
    if isinstance(data, list):
        return [interpolate_variables(item, variables) for item in data]
    if isinstance(data, dict):
        return {key: interpolate_variables(value, variables) for key, value in data.items()}
    return data


def _render(match: re.Match[str], variables: Mapping[str, Any]) -> str:
    name = match.group(1)
    if name not in variables or variables[name] is None:
        return match.group(0)
    return json.dumps(variables[name], separators=(",", ":"), ensure_ascii=False, default=str)


def classify_response(data: Any) -> ResponseKind:
    """Decide the response kind once from the payload's ``type``/``contentType``."""
    if not isinstance(data, dict):
        return "generic"
    response_type = str(data.get("type") or "").lower()
    if response_type in _SIMPLE_KINDS:
        return _SIMPLE_KINDS[response_type]
    if response_type in {"generated_content", "generation"}:
        content_type = str(data.get("contentType") or "").lower()
        return _GENERATED_KINDS.get(content_type, "generic")
    return "generic"


def service_reported_failure(data: Any) -> str | None:
    if isinstance(data, dict) and data.get("success") is False:
        return str(data.get("error") or data.get("message") or "Service reported failure")
    return None


class StepExecutor:
    """Runs one plan step: resolve, interpolate, pay, record spend.

    Never raises for step-level problems. Unknown services, payment failures,
    service-reported failures and timeouts all come back as failed results.
    No retries.
    """

    def __init__(
        self,
        *,
        payment_provider: PaymentProvider,
        ledger: SpendLedger,
        timeout_s: float = 60.0,
    ) -> None:
        self.payment_provider = payment_provider
        self.ledger = ledger
        self.timeout_s = timeout_s

    def execute(
        self,
        step: PlanStep,
        context: ExecutionContext,
        services: Mapping[str, ServiceDescriptor],
    ) -> StepResult:
        started_at = datetime.now(tz=UTC)
        started_perf = time.perf_counter()

        def finish(**fields: Any) -> StepResult:
            return StepResult(
                step_id=step.id,
                service_id=step.service_id,
                started_at=started_at,
                finished_at=datetime.now(tz=UTC),
                duration_ms=_duration_ms(started_perf),
                **fields,
            )

        service = services.get(step.service_id)
        if service is None:
            return finish(success=False, error=f"Service not found: {step.service_id}")

        request_data = interpolate_variables(step.request_data, context.variables)
        try:
            response = self._pay_with_timeout(service, request_data, context.pipeline_id)
        except TimeoutError:
            return finish(
                success=False,
                service=service,
                error=f"Payment call to {service.name} timed out after {self.timeout_s:.2f}s",
            )
        except Exception as exc:  # noqa: BLE001
            return finish(success=False, service=service, error=str(exc) or "Payment failed")

        payment = response.payment
        if not payment.success:
            return finish(
                success=False,
                service=service,
                payment=payment,
                error=payment.error or "Payment failed",
            )

        cost = payment.amount if payment.amount is not None else service.price.amount
        self.ledger.record_payment(
            cost,
            payment.asset or service.price.asset,
            service.id,
            service.name,
            payment.tx_id,
            reservation_id=context.reservation_id,
        )

        failure = service_reported_failure(response.data)
        if failure is not None:
            logger.info(
                "step_run event=service_reported_failure pipeline_id=%s step_id=%s service=%s",
                context.pipeline_id,
                step.id,
                service.id,
            )
            return finish(
                success=False,
                service=service,
                data=response.data,
                payment=payment,
                cost=cost,
                error=failure,
            )

        return finish(
            success=True,
            service=service,
            data=response.data,
            kind=classify_response(response.data),
            payment=payment,
            cost=cost,
        )

    def _pay_with_timeout(
        self, service: ServiceDescriptor, request_data: Any, pipeline_id: str
    ) -> PaymentResponse:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="paygent-pay")
        try:
            future = pool.submit(self.payment_provider.pay, service, request_data)
            try:
                return future.result(timeout=self.timeout_s)
            except TimeoutError:
                future.add_done_callback(
                    lambda done: self._record_late_payment(done, service, pipeline_id)
                )
                raise
        finally:
            # A stalled call keeps its worker thread; the step still returns.
            pool.shutdown(wait=False, cancel_futures=True)

    def _record_late_payment(
        self, future: Future[PaymentResponse], service: ServiceDescriptor, pipeline_id: str
    ) -> None:
        """Book a payment that settled after its step already timed out.

        The run's reservation is gone by then, so the spend goes straight to the ledger.
        """
        if future.cancelled() or future.exception() is not None:
            return
        payment = future.result().payment
        if not payment.success:
            return
        cost = payment.amount if payment.amount is not None else service.price.amount
        logger.warning(
            "step_run event=late_payment pipeline_id=%s service=%s tx_id=%s cost=%s",
            pipeline_id,
            service.id,
            payment.tx_id,
            cost,
        )
        self.ledger.record_payment(
            cost,
            payment.asset or service.price.asset,
            service.id,
            service.name,
            payment.tx_id,
        )


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
