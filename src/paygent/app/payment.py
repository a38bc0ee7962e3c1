"""Payment providers: execute one paid call and report the outcome.

Providers never raise on an expected failure. Balance problems, unknown
endpoints, HTTP errors and transport errors all come back as a failed
``PaymentOutcome`` so the step executor can record them as step failures.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import threading
from collections.abc import Callable
from typing import Any, Protocol
from urllib import error, request
from urllib.parse import urlparse

from .demo_services import DemoServiceRouter
from .formatting import explorer_url, format_price
from .models import AssetType, PaymentOutcome, PaymentResponse, ServiceDescriptor

logger = logging.getLogger(__name__)

POST_PATH_MARKERS = ("/generate/", "/summarize", "/sentiment", "/translate", "/echo")
GET_PATH_MARKERS = ("/news/", "/price/")

# Builds the X-PAYMENT header value from the service and its 402 requirements.
PaymentSigner = Callable[[ServiceDescriptor, Any], str]


class PaymentProvider(Protocol):
    def pay(self, service: ServiceDescriptor, payload: Any = None) -> PaymentResponse: ...


class DemoPaymentProvider:
    """Simulated wallet that pays in-process demo services."""

    def __init__(
        self,
        router: DemoServiceRouter,
        *,
        network: str = "testnet",
        starting_balance: int = 10_000_000,
    ) -> None:
        self.router = router
        self.network = network
        self._balances: dict[str, int] = {
            "STX": starting_balance,
            "sBTC": starting_balance,
            "USDCx": starting_balance,
        }
        self._lock = threading.Lock()

    def balance(self, asset: AssetType) -> int:
        with self._lock:
            return self._balances.get(asset, 0)

    def pay(self, service: ServiceDescriptor, payload: Any = None) -> PaymentResponse:
        amount = service.price.amount
        asset = service.price.asset
        path = service_path(service)
        logger.debug(
            "payment event=initiate mode=demo service=%s path=%s price=%s",
            service.id,
            path,
            format_price(amount, asset),
        )
        if not self.router.handles(path):
            return _failed(f"No demo handler for {path}")

        with self._lock:
            if self._balances.get(asset, 0) < amount:
                return _failed(f"Insufficient {asset} balance")
            self._balances[asset] -= amount

        try:
            data = self.router.dispatch(path, payload)
        except Exception as exc:  # noqa: BLE001
            with self._lock:
                self._balances[asset] += amount
            logger.warning("payment event=demo_handler_failed path=%s reason=%s", path, exc)
            return _failed(f"Demo service error: {exc}")

        tx_id = secrets.token_hex(32)
        logger.debug("payment event=settled mode=demo service=%s tx_id=%s", service.id, tx_id)
        return PaymentResponse(
            payment=PaymentOutcome(
                success=True,
                tx_id=tx_id,
                amount=amount,
                asset=asset,
                explorer_url=explorer_url(tx_id, self.network),
            ),
            data=data,
        )


class HttpPaymentProvider:
    """Calls the service URL and settles a 402 challenge through ``signer``."""

    def __init__(
        self,
        *,
        timeout_s: float = 60.0,
        network: str = "testnet",
        signer: PaymentSigner | None = None,
        opener=request.urlopen,
    ) -> None:
        self.timeout_s = timeout_s
        self.network = network
        self.signer = signer
        self._opener = opener

    def pay(self, service: ServiceDescriptor, payload: Any = None) -> PaymentResponse:
        method = http_method_for(service.url)
        body = payload if payload is not None else {"query": "execute"}
        logger.debug(
            "payment event=initiate mode=http service=%s method=%s price=%s",
            service.id,
            method,
            format_price(service.price.amount, service.price.asset),
        )
        try:
            try:
                data, headers = self._send(service.url, method, body)
            except error.HTTPError as exc:
                if exc.code != 402:
                    raise
                if self.signer is None:
                    return _failed("Payment required but no signer is configured")
                requirements = _read_json(exc)
                header = self.signer(service, requirements)
                data, headers = self._send(service.url, method, body, {"X-PAYMENT": header})
        except error.HTTPError as exc:
            message = _error_message(exc)
            logger.warning("payment event=failed service=%s status=%s reason=%s", service.id, exc.code, message)
            return _failed(message)
        except (error.URLError, TimeoutError, OSError, ValueError) as exc:
            logger.warning("payment event=failed service=%s reason=%s", service.id, exc)
            return _failed(str(getattr(exc, "reason", exc)) or "Unknown payment error")

        tx_id = decode_payment_response(headers.get("X-PAYMENT-RESPONSE"))
        return PaymentResponse(
            payment=PaymentOutcome(
                success=True,
                tx_id=tx_id,
                amount=service.price.amount,
                asset=service.price.asset,
                explorer_url=explorer_url(tx_id, self.network) if tx_id else None,
            ),
            data=data,
        )

    def _send(
        self,
        url: str,
        method: str,
        body: Any,
        extra_headers: dict[str, str] | None = None,
    ) -> tuple[Any, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(extra_headers or {})
        req = request.Request(
            url=url,
            data=json.dumps(body).encode("utf-8") if method == "POST" else None,
            method=method,
            headers=headers,
        )
        with self._opener(req, timeout=self.timeout_s) as response:
            raw = response.read().decode("utf-8")
            response_headers = response.headers
        try:
            return json.loads(raw), response_headers
        except ValueError:
            return raw, response_headers


def http_method_for(url: str) -> str:
    if any(marker in url for marker in GET_PATH_MARKERS):
        return "GET"
    if any(marker in url for marker in POST_PATH_MARKERS):
        return "POST"
    return "GET"


def service_path(service: ServiceDescriptor) -> str:
    if service.endpoint.startswith("/"):
        return service.endpoint
    return urlparse(service.url or service.endpoint).path


def decode_payment_response(header: str | None) -> str | None:
    """Extract the transaction id from a base64 JSON payment-response header."""
    if not header:
        return None
    try:
        info = json.loads(base64.b64decode(header).decode("utf-8"))
    except ValueError:
        logger.debug("payment event=undecodable_payment_response")
        return None
    if not isinstance(info, dict):
        return None
    return info.get("txId") or info.get("transaction") or info.get("tx_id")


def _read_json(exc: error.HTTPError) -> Any:
    try:
        return json.loads(exc.read().decode("utf-8"))
    except ValueError:
        return None


def _error_message(exc: error.HTTPError) -> str:
    body = _read_json(exc)
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    return f"HTTP {exc.code}: {exc.reason}"


def _failed(message: str) -> PaymentResponse:
    return PaymentResponse(payment=PaymentOutcome(success=False, error=message))
