from __future__ import annotations

import json
from typing import Any
from urllib import error

from paygent.app.catalog import ServiceCatalog, fallback_services, normalize_services


class FakeResponse:
    def __init__(self, payload: Any) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def read(self) -> bytes:
        return self._body


class FakeOpener:
    def __init__(self, payload: Any = None, *, fail: bool = False) -> None:
        self.payload = payload
        self.fail = fail
        self.urls: list[str] = []

    def __call__(self, req: Any, timeout: float) -> FakeResponse:
        self.urls.append(req.full_url)
        if self.fail:
            raise error.URLError("connection refused")
        return FakeResponse(self.payload)


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


REGISTRY_PAYLOAD = {
    "services": [
        {
            "_id": "svc-1",
            "title": "Registry Weather",
            "description": "Weather data",
            "category": "data",
            "tags": ["weather"],
            "price": {"amount": "1500", "asset": "stx"},
            "url": "https://weather.example/api",
            "seller": "SP1SELLER",
            "uptime": 99.5,
            "avgResponseTime": 120,
            "totalTransactions": 42,
        },
        {"id": "svc-2", "name": "BTC Oracle", "amount": 300, "asset": "sbtc-token", "endpoint": "https://o.example"},
        "not-a-service",
    ]
}


def test_offline_catalog_serves_fallback_services() -> None:
    catalog = ServiceCatalog(registry_url="", demo_server_url="http://localhost:3403/")

    services = catalog.all()

    assert len(services) == 11
    assert {s.category for s in services} == {"news", "ai", "generation", "market", "blockchain", "utility"}
    price = catalog.get("demo-btc-price")
    assert price is not None
    assert price.url == "http://localhost:3403/api/price/bitcoin"
    assert price.network == "stacks:testnet"
    assert all(s.price.asset == "STX" for s in services)


def test_registry_payload_is_normalized() -> None:
    services = normalize_services(REGISTRY_PAYLOAD)

    assert [s.id for s in services] == ["svc-1", "svc-2"]
    weather, oracle = services
    assert weather.name == "Registry Weather"
    assert weather.price.amount == 1500
    assert weather.price.asset == "STX"
    assert weather.endpoint == "https://weather.example/api"
    assert weather.network == "stacks:mainnet"
    assert weather.total_transactions == 42
    assert oracle.price.asset == "sBTC"
    assert oracle.url == "https://o.example"
    assert oracle.category == "general"


def test_normalize_accepts_bare_lists_and_empty_payloads() -> None:
    assert [s.id for s in normalize_services([{"id": "x", "name": "X"}])] == ["x"]
    assert normalize_services(None) == []
    assert normalize_services({"services": []}) == []


def test_registry_results_are_cached_for_ttl() -> None:
    opener = FakeOpener(REGISTRY_PAYLOAD)
    clock = FakeMonotonic()
    catalog = ServiceCatalog(registry_url="https://registry.example/", ttl_s=60.0, opener=opener, clock=clock)

    assert [s.id for s in catalog.all()] == ["svc-1", "svc-2"]
    catalog.all()
    assert opener.urls == ["https://registry.example/api/services"]

    clock.now += 61.0
    catalog.all()
    assert len(opener.urls) == 2

    catalog.invalidate()
    catalog.all()
    assert len(opener.urls) == 3


def test_registry_failure_falls_back_without_caching() -> None:
    opener = FakeOpener(fail=True)
    catalog = ServiceCatalog(registry_url="https://registry.example", opener=opener, clock=FakeMonotonic())

    assert len(catalog.all()) == 11
    assert len(catalog.all()) == 11
    assert len(opener.urls) == 2


def test_search_and_filters() -> None:
    catalog = ServiceCatalog(registry_url="")

    assert {s.id for s in catalog.search("TWEET")} == {"demo-tweet-generator"}
    assert {s.id for s in catalog.by_category("Market")} == {"demo-btc-price", "demo-stx-price"}
    assert {s.id for s in catalog.within_budget(500)} == {
        "demo-btc-price",
        "demo-stx-price",
        "demo-blockchain-info",
        "demo-echo",
    }
    assert catalog.within_budget(500, "sBTC") == []
    assert catalog.get("missing") is None


def test_fallback_services_are_fresh_copies() -> None:
    assert fallback_services() == fallback_services()
    assert fallback_services()[0] is not fallback_services()[0]
