"""In-process handlers for the demo paid services.

Each handler takes the (already interpolated) request body and returns the
payload the service would send back: ``{"success": True, "type": ..., "data": {...}}``.
Generated content additionally carries ``contentType``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from .content import ContentGenerator

logger = logging.getLogger(__name__)

Handler = Callable[[Any], dict[str, Any]]

MOCK_BITCOIN_HEADLINES = [
    {"title": "Bitcoin Shows Strong Support Above $95K Level", "sentiment": "bullish", "source": "CoinDesk", "time": "1h ago"},
    {"title": "Institutional Bitcoin Adoption Continues to Grow", "sentiment": "bullish", "source": "Bloomberg", "time": "2h ago"},
    {"title": "Lightning Network Sees Record Transaction Volume", "sentiment": "bullish", "source": "Bitcoin Magazine", "time": "3h ago"},
    {"title": "Bitcoin ETF Inflows Remain Positive This Week", "sentiment": "bullish", "source": "Reuters", "time": "4h ago"},
    {"title": "Analysts Predict Strong Q1 for Crypto Markets", "sentiment": "neutral", "source": "Forbes", "time": "5h ago"},
]
MOCK_STACKS_HEADLINES = [
    {"title": "Stacks Ecosystem Shows Strong DeFi Growth", "sentiment": "bullish", "source": "Stacks Blog", "time": "1h ago"},
    {"title": "sBTC Development Progresses Ahead of Schedule", "sentiment": "bullish", "source": "Decrypt", "time": "3h ago"},
    {"title": "Stacks TVL Continues Upward Trend", "sentiment": "bullish", "source": "DeFi Pulse", "time": "4h ago"},
    {"title": "New dApps Launch on Stacks Network", "sentiment": "neutral", "source": "Hiro Systems", "time": "6h ago"},
]

# asset: (price, change24h, volume24h, market_cap, decimals)
MOCK_PRICES: dict[str, tuple[float, str, str, str, int]] = {
    "BTC": (97_500.0, "+1.85%", "45.2B", "1.9T", 2),
    "STX": (1.75, "+3.20%", "125M", "2.2B", 4),
}


class DemoServiceRouter:
    """Maps demo endpoint paths to payload builders."""

    def __init__(self, content: ContentGenerator, *, network: str = "testnet") -> None:
        self.content = content
        self.network = network
        self._routes: dict[str, Handler] = {
            "/api/news/bitcoin": lambda body: self._news("bitcoin"),
            "/api/news/stacks": lambda body: self._news("stacks"),
            "/api/summarize": self._summarize,
            "/api/sentiment": self._sentiment,
            "/api/translate": self._translate,
            "/api/generate/tweet": self._tweet,
            "/api/generate/report": self._report,
            "/api/price/bitcoin": lambda body: self._price("BTC"),
            "/api/price/stx": lambda body: self._price("STX"),
            "/api/blockchain/info": lambda body: self._blockchain_info(),
            "/api/echo": self._echo,
        }

    def paths(self) -> list[str]:
        return sorted(self._routes)

    def handles(self, path: str) -> bool:
        return path in self._routes

    def dispatch(self, path: str, body: Any) -> dict[str, Any]:
        handler = self._routes.get(path)
        if handler is None:
            raise KeyError(path)
        return handler(body)

    def _news(self, topic: str) -> dict[str, Any]:
        headlines = MOCK_BITCOIN_HEADLINES if topic == "bitcoin" else MOCK_STACKS_HEADLINES
        summary = (
            "Bitcoin market shows resilience with strong institutional interest."
            if topic == "bitcoin"
            else "Stacks ecosystem growing with strong developer activity."
        )
        return {
            "success": True,
            "type": "news",
            "topic": topic,
            "data": {
                "headlines": [dict(h) for h in headlines],
                "summary": summary,
                "overallSentiment": _overall_sentiment(headlines),
                "isRealData": False,
                "timestamp": _now_iso(),
            },
        }

    def _summarize(self, body: Any) -> dict[str, Any]:
        fields = _fields(body)
        parsed = _parse_chained(fields.get("input"))
        content = (
            fields.get("text")
            or _headline_titles(parsed, join=". ")
            or _headline_titles({"data": fields.get("data")}, join=". ")
            or _dig(parsed, "data", "summary")
            or (parsed if isinstance(parsed, str) else "")
            or "No content provided"
        )
        result = self.content.summarize(content)
        return {
            "success": True,
            "type": "summary",
            "data": {
                "originalLength": len(content),
                "summary": result.summary,
                "keyPoints": result.key_points,
                "isRealData": result.is_real,
                "timestamp": _now_iso(),
            },
        }

    def _sentiment(self, body: Any) -> dict[str, Any]:
        fields = _fields(body)
        parsed = _parse_chained(fields.get("input"))
        content = (
            fields.get("text")
            or _dig(parsed, "data", "summary")
            or _headline_titles(parsed, join=". ")
            or (parsed if isinstance(parsed, str) else "")
            or _dig(fields, "data", "summary")
            or ""
        )
        result = self.content.analyze_sentiment(content)
        return {
            "success": True,
            "type": "sentiment",
            "data": {
                "sentiment": result.sentiment,
                "score": result.score,
                "confidence": result.confidence,
                "isRealData": result.is_real,
                "timestamp": _now_iso(),
            },
        }

    def _translate(self, body: Any) -> dict[str, Any]:
        fields = _fields(body)
        parsed = _parse_chained(fields.get("input"))
        content = (
            fields.get("text")
            or _dig(parsed, "data", "summary")
            or (parsed if isinstance(parsed, str) else "")
            or "No text provided"
        )
        language = fields.get("targetLanguage") or "es"
        result = self.content.translate(content, language)
        return {
            "success": True,
            "type": "translation",
            "data": {
                "original": content,
                "translated": result.translated,
                "sourceLanguage": "en",
                "targetLanguage": language,
                "isRealData": result.is_real,
                "timestamp": _now_iso(),
            },
        }

    def _tweet(self, body: Any) -> dict[str, Any]:
        fields = _fields(body)
        parsed = _parse_chained(fields.get("input"))
        content = (
            fields.get("text")
            or _dig(parsed, "data", "headlines", 0, "title")
            or _dig(parsed, "data", "summary")
            or _dig(parsed, "summary")
            or _dig(fields, "data", "headlines", 0, "title")
            or _dig(fields, "data", "summary")
            or fields.get("topic")
            or (parsed if isinstance(parsed, str) else "")
            or "Amazing things happening in crypto"
        )
        style = fields.get("style") or "enthusiastic"
        result = self.content.generate_tweet(content, style)
        return {
            "success": True,
            "type": "generated_content",
            "contentType": "tweet",
            "data": {
                "tweet": result.tweet,
                "characterCount": len(result.tweet),
                "hashtags": result.hashtags,
                "style": style,
                "isRealData": result.is_real,
                "timestamp": _now_iso(),
            },
        }

    def _report(self, body: Any) -> dict[str, Any]:
        fields = _fields(body)
        parsed = _parse_chained(fields.get("input"))
        data = fields.get("data")
        if not isinstance(data, dict):
            data = _dig(parsed, "data")
        if not isinstance(data, dict):
            data = {}
        topic = fields.get("topic") or data.get("topic") or "Market Analysis"
        report = self.content.generate_report(topic, data)
        payload = report.model_dump(exclude={"is_real"})
        payload["generated_at"] = _now_iso()
        payload["isRealData"] = report.is_real
        return {
            "success": True,
            "type": "generated_content",
            "contentType": "report",
            "data": payload,
        }

    def _price(self, asset: str) -> dict[str, Any]:
        price, change, volume, market_cap, decimals = MOCK_PRICES[asset]
        return {
            "success": True,
            "type": "price",
            "asset": asset,
            "data": {
                "price": f"{price:.{decimals}f}",
                "currency": "USD",
                "change24h": change,
                "high24h": f"{price * 1.02:.{decimals}f}",
                "low24h": f"{price * 0.98:.{decimals}f}",
                "volume24h": volume,
                "marketCap": market_cap,
                "isRealData": False,
                "timestamp": _now_iso(),
            },
        }

    def _blockchain_info(self) -> dict[str, Any]:
        return {
            "success": True,
            "type": "blockchain_info",
            "network": self.network,
            "data": {
                "stacksHeight": 150_000,
                "burnBlockHeight": 850_000,
                "status": "mock_data",
                "timestamp": _now_iso(),
            },
        }

    def _echo(self, body: Any) -> dict[str, Any]:
        fields = _fields(body)
        return {
            "success": True,
            "type": "echo",
            "data": {
                "echo": fields.get("message") or fields.get("input") or "Hello from Paygent!",
                "timestamp": _now_iso(),
            },
        }


def _fields(body: Any) -> dict[str, Any]:
    if isinstance(body, dict):
        return body
    if isinstance(body, str):
        return {"input": body}
    return {}


def _parse_chained(value: Any) -> Any:
    """Chained steps pass the previous payload as a JSON string."""
    if isinstance(value, str) and value.lstrip().startswith(("{", "[")):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _dig(value: Any, *path: str | int) -> Any:
    current = value
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
    return current


def _headline_titles(value: Any, *, join: str) -> str:
    headlines = _dig(value, "data", "headlines")
    if not isinstance(headlines, list):
        return ""
    return join.join(str(h.get("title", "")) for h in headlines if isinstance(h, dict))


def _overall_sentiment(headlines: list[dict[str, str]]) -> str:
    bullish = sum(1 for h in headlines if h["sentiment"] == "bullish")
    bearish = sum(1 for h in headlines if h["sentiment"] == "bearish")
    neutral = len(headlines) - bullish - bearish
    if bullish > bearish and bullish >= neutral:
        return "bullish"
    if bearish > bullish and bearish >= neutral:
        return "bearish"
    return "neutral"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()
