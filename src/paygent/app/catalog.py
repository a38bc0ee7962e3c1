"""Service catalog: registry fetch with a short TTL cache and a static fallback list."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any
from urllib import error, request

from pydantic import ValidationError

from .models import PRIMARY_ASSET, AssetType, ServiceDescriptor, ServicePrice

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_NETWORK = "stacks:mainnet"
DEMO_NETWORK = "stacks:testnet"


class ServiceCatalog:
    """Priced service descriptors, refreshed from the registry at most once per TTL.

    An empty ``registry_url`` keeps the catalog offline: only the fallback list
    is served. A failed fetch is logged and answered from the fallback list
    without being cached, so the next call retries the registry.
    """

    def __init__(
        self,
        *,
        registry_url: str = "",
        demo_server_url: str = "http://localhost:3403",
        ttl_s: float = 60.0,
        timeout_s: float = 10.0,
        opener=request.urlopen,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.demo_server_url = demo_server_url.rstrip("/")
        self.ttl_s = ttl_s
        self.timeout_s = timeout_s
        self._opener = opener
        self._clock = clock
        self._cached: list[ServiceDescriptor] | None = None
        self._cached_at = 0.0
        self._lock = threading.Lock()

    def all(self) -> list[ServiceDescriptor]:
        with self._lock:
            if self._cached is not None and self._clock() - self._cached_at < self.ttl_s:
                return list(self._cached)
        if not self.registry_url:
            return fallback_services(self.demo_server_url)
        try:
            services = self._fetch()
        except (OSError, ValueError) as exc:
            logger.warning(
                "catalog event=registry_unavailable url=%s reason=%s action=fallback",
                self.registry_url,
                exc,
            )
            return fallback_services(self.demo_server_url)
        with self._lock:
            self._cached = services
            self._cached_at = self._clock()
        logger.info("catalog event=discovered count=%d", len(services))
        return list(services)

    def search(self, query: str) -> list[ServiceDescriptor]:
        needle = query.lower()
        return [
            service
            for service in self.all()
            if needle in service.name.lower()
            or needle in service.description.lower()
            or any(needle in tag.lower() for tag in service.tags)
        ]

    def by_category(self, category: str) -> list[ServiceDescriptor]:
        wanted = category.lower()
        return [s for s in self.all() if s.category.lower() == wanted]

    def within_budget(self, max_amount: int, asset: AssetType = PRIMARY_ASSET) -> list[ServiceDescriptor]:
        return [s for s in self.all() if s.price.asset == asset and s.price.amount <= max_amount]

    def get(self, service_id: str) -> ServiceDescriptor | None:
        return self.index().get(service_id)

    def index(self) -> dict[str, ServiceDescriptor]:
        return {service.id: service for service in self.all()}

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def _fetch(self) -> list[ServiceDescriptor]:
        req = request.Request(
            url=f"{self.registry_url}/api/services",
            method="GET",
            headers={"Accept": "application/json"},
        )
        try:
            with self._opener(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.URLError as exc:
            raise OSError(f"registry request failed: {exc}") from exc
        return normalize_services(json.loads(body))


def normalize_services(data: Any) -> list[ServiceDescriptor]:
    """Coerce a registry payload (list or ``{"services": [...]}``) into descriptors."""
    if not data:
        return []
    raw_services = data if isinstance(data, list) else data.get("services") or []
    services: list[ServiceDescriptor] = []
    for index, raw in enumerate(raw_services):
        if not isinstance(raw, dict):
            continue
        try:
            services.append(_normalize_one(raw, index))
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("catalog event=skip_invalid_service index=%d reason=%s", index, exc)
    return services


def _normalize_one(raw: dict[str, Any], index: int) -> ServiceDescriptor:
    price = raw.get("price") if isinstance(raw.get("price"), dict) else {}
    amount = price.get("amount") or raw.get("amount") or 0
    asset = price.get("asset") or raw.get("asset") or PRIMARY_ASSET
    url = raw.get("url") or raw.get("endpoint") or ""
    return ServiceDescriptor(
        id=str(raw.get("id") or raw.get("_id") or f"service-{index}"),
        name=raw.get("name") or raw.get("title") or "Unnamed Service",
        description=raw.get("description") or "",
        category=raw.get("category") or "general",
        tags=[str(tag) for tag in raw.get("tags") or []],
        price=ServicePrice(amount=int(amount), asset=_normalize_asset(str(asset))),
        url=url,
        endpoint=raw.get("endpoint") or url,
        network=raw.get("network") or DEFAULT_REGISTRY_NETWORK,
        seller=raw.get("seller") or raw.get("owner") or "",
        uptime=raw.get("uptime"),
        avg_response_time_ms=raw.get("avgResponseTime"),
        total_transactions=raw.get("totalTransactions"),
    )


def _normalize_asset(asset: str) -> AssetType:
    lowered = asset.lower()
    if "sbtc" in lowered:
        return "sBTC"
    if "usdc" in lowered:
        return "USDCx"
    return PRIMARY_ASSET


# id, name, description, category, price, tags, endpoint
_FALLBACK_TABLE: tuple[tuple[str, str, str, str, int, tuple[str, ...], str], ...] = (
    (
        "demo-bitcoin-news",
        "Bitcoin News API",
        "Get latest Bitcoin news headlines with sentiment analysis",
        "news",
        1000,
        ("bitcoin", "news", "crypto", "btc", "headlines"),
        "/api/news/bitcoin",
    ),
    (
        "demo-stacks-news",
        "Stacks News API",
        "Get latest Stacks ecosystem news and updates",
        "news",
        1000,
        ("stacks", "news", "defi", "headlines"),
        "/api/news/stacks",
    ),
    (
        "demo-summarize",
        "AI Summarizer",
        "Summarize any text content with key points extraction",
        "ai",
        2000,
        ("ai", "summarize", "nlp", "text", "summary"),
        "/api/summarize",
    ),
    (
        "demo-sentiment",
        "Sentiment Analyzer",
        "Analyze sentiment of text - positive, negative, or neutral",
        "ai",
        1500,
        ("ai", "sentiment", "analysis", "nlp"),
        "/api/sentiment",
    ),
    (
        "demo-translate",
        "Translation API",
        "Translate text between multiple languages",
        "ai",
        1500,
        ("translate", "language", "ai", "i18n"),
        "/api/translate",
    ),
    (
        "demo-tweet-generator",
        "Tweet Generator",
        "Generate engaging tweets from any content or topic",
        "generation",
        1000,
        ("ai", "tweet", "social", "generate", "content", "twitter"),
        "/api/generate/tweet",
    ),
    (
        "demo-report-generator",
        "Report Generator",
        "Generate comprehensive reports from data and insights",
        "generation",
        3000,
        ("ai", "report", "generate", "analysis", "document"),
        "/api/generate/report",
    ),
    (
        "demo-btc-price",
        "Bitcoin Price API",
        "Get current Bitcoin price and market data",
        "market",
        500,
        ("bitcoin", "price", "btc", "market", "data"),
        "/api/price/bitcoin",
    ),
    (
        "demo-stx-price",
        "STX Price API",
        "Get current STX price and market data",
        "market",
        500,
        ("stx", "stacks", "price", "market", "data"),
        "/api/price/stx",
    ),
    (
        "demo-blockchain-info",
        "Blockchain Info API",
        "Get Stacks blockchain information and statistics",
        "blockchain",
        500,
        ("stacks", "blockchain", "info", "chain", "blocks"),
        "/api/blockchain/info",
    ),
    (
        "demo-echo",
        "Echo API",
        "Simple echo service for testing payments",
        "utility",
        100,
        ("echo", "test", "demo"),
        "/api/echo",
    ),
)


def fallback_services(demo_server_url: str = "http://localhost:3403") -> list[ServiceDescriptor]:
    base_url = demo_server_url.rstrip("/")
    return [
        ServiceDescriptor(
            id=service_id,
            name=name,
            description=description,
            category=category,
            tags=list(tags),
            price=ServicePrice(amount=amount, asset=PRIMARY_ASSET),
            url=f"{base_url}{endpoint}",
            endpoint=endpoint,
            network=DEMO_NETWORK,
        )
        for service_id, name, description, category, amount, tags, endpoint in _FALLBACK_TABLE
    ]
