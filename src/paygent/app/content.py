"""Content generation for the demo paid services.

Every method always returns a usable result. With an LLM adapter configured the
model is asked for a structured response; any failure degrades to a
deterministic mock and the result carries ``is_real=False``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field

from .llm import LLMAdapter

logger = logging.getLogger(__name__)

TResult = TypeVar("TResult", bound=BaseModel)

POSITIVE_WORDS = ("surge", "growth", "bullish", "record", "high", "adoption", "launch", "strong")
NEGATIVE_WORDS = ("crash", "bearish", "decline", "drop", "concern", "risk", "fall")

LANGUAGE_NAMES = {
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "ja": "Japanese",
    "zh": "Chinese",
    "pt": "Portuguese",
    "it": "Italian",
}

MOCK_KEY_POINTS = [
    "Strong market momentum observed",
    "Institutional adoption continues",
    "Technology developments driving growth",
]
MOCK_HASHTAGS = ["#Bitcoin", "#Stacks", "#Crypto"]
MOCK_DEVELOPMENTS = [
    "Significant technological upgrades",
    "Growing institutional adoption",
    "Expanding DeFi ecosystem",
]
MOCK_RECOMMENDATION = (
    "1. Monitor institutional flows\n"
    "2. Track DeFi growth metrics\n"
    "3. Stay updated on protocol upgrades"
)


class SummaryResult(BaseModel):
    summary: str
    key_points: list[str] = Field(default_factory=list)
    is_real: bool = False


class SentimentResult(BaseModel):
    sentiment: Literal["positive", "negative", "neutral"]
    score: int = Field(ge=0, le=100)
    confidence: float = Field(ge=0.0, le=1.0)
    is_real: bool = False


class TweetResult(BaseModel):
    tweet: str = Field(max_length=280)
    hashtags: list[str] = Field(default_factory=list)
    is_real: bool = False


class ReportSection(BaseModel):
    heading: str
    content: str


class ReportResult(BaseModel):
    title: str
    executive_summary: str
    sections: list[ReportSection] = Field(default_factory=list)
    recommendation: str = ""
    is_real: bool = False


class TranslationResult(BaseModel):
    translated: str
    target_language: str
    is_real: bool = False


class ContentGenerator:
    def __init__(self, *, llm_adapter: LLMAdapter | None = None, timeout_s: float = 8.0) -> None:
        self.llm_adapter = llm_adapter
        self.timeout_s = timeout_s

    def summarize(self, text: str) -> SummaryResult:
        prompt = (
            "Summarize this text in 2-3 sentences and provide exactly 3 key points.\n\n"
            f"Text: {text[:1000]}"
        )
        result = self._generate(prompt, SummaryResult, operation="summarize")
        if result is not None:
            return result.model_copy(update={"key_points": result.key_points[:3]})
        return mock_summary(text)

    def analyze_sentiment(self, text: str) -> SentimentResult:
        prompt = (
            "Analyze the sentiment of this text. Score 0-100 where 100 is most positive, "
            "confidence between 0.0 and 1.0.\n\n"
            f"Text: {text[:500]}"
        )
        return self._generate(prompt, SentimentResult, operation="sentiment") or mock_sentiment(text)

    def generate_tweet(self, content: str, style: str = "enthusiastic") -> TweetResult:
        prompt = (
            f"Generate a {style} tweet about this content. Include 2-3 relevant hashtags. "
            "Keep it under 280 characters.\n\n"
            f"Content: {content[:300]}"
        )
        return self._generate(prompt, TweetResult, operation="tweet") or mock_tweet(content)

    def generate_report(self, topic: str, data: Any = None) -> ReportResult:
        prompt = (
            f"Write a short market report about '{topic}' with an executive summary, "
            "sections for market overview, key developments and sentiment, and a recommendation.\n\n"
            f"Data JSON: {json.dumps(data, ensure_ascii=True, default=str)[:1500]}"
        )
        return self._generate(prompt, ReportResult, operation="report") or mock_report(topic, data)

    def translate(self, text: str, target_language: str = "es") -> TranslationResult:
        language = LANGUAGE_NAMES.get(target_language, "Spanish")
        prompt = f"Translate this text to {language}. Return only the translation.\n\n{text[:500]}"
        result = self._generate(prompt, TranslationResult, operation="translate")
        if result is not None:
            return result.model_copy(update={"target_language": target_language})
        return TranslationResult(
            translated=f"[{target_language.upper()}] {text}",
            target_language=target_language,
        )

    def _generate(self, prompt: str, response_model: type[TResult], *, operation: str) -> TResult | None:
        if self.llm_adapter is None:
            return None
        try:
            result = self.llm_adapter.generate_structured(
                system_prompt="You are a concise crypto market content assistant. Return JSON only.",
                user_prompt=prompt,
                response_model=response_model,
                timeout_s=self.timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("content event=llm_failed operation=%s action=mock reason=%s", operation, exc)
            return None
        return result.model_copy(update={"is_real": True})


def mock_summary(text: str) -> SummaryResult:
    words = text.split()
    summary = " ".join(words[:30]) + ("..." if len(words) > 30 else "")
    return SummaryResult(summary=summary, key_points=list(MOCK_KEY_POINTS))


def mock_sentiment(text: str) -> SentimentResult:
    lowered = text.lower()
    score = 50
    score += 10 * sum(1 for word in POSITIVE_WORDS if word in lowered)
    score -= 10 * sum(1 for word in NEGATIVE_WORDS if word in lowered)
    score = max(0, min(100, score))
    if score > 60:
        sentiment = "positive"
    elif score < 40:
        sentiment = "negative"
    else:
        sentiment = "neutral"
    return SentimentResult(sentiment=sentiment, score=score, confidence=0.75)


def mock_tweet(content: str) -> TweetResult:
    tweet = f"\U0001f680 {content[:100]}... The future is being built! #Bitcoin #Crypto"
    return TweetResult(tweet=tweet, hashtags=list(MOCK_HASHTAGS))


def mock_report(topic: str, data: Any = None) -> ReportResult:
    values = data if isinstance(data, dict) else {}
    summary = values.get("summary") or ""
    headlines = values.get("headlines") or []
    sentiment = values.get("sentiment") or ""
    score = values.get("score", 85)

    overview = summary or (
        "The cryptocurrency market continues to show strong momentum with increasing "
        "institutional participation."
    )
    if headlines:
        developments = "\n".join(
            f"• {h.get('title', h) if isinstance(h, dict) else h}" for h in headlines[:3]
        )
    else:
        developments = "\n".join(f"• {item}" for item in MOCK_DEVELOPMENTS)
    if sentiment:
        sentiment_text = (
            f"Overall market sentiment is {sentiment} with a confidence score of {score}%."
        )
    else:
        sentiment_text = "Overall market sentiment remains positive with strong investor confidence."

    return ReportResult(
        title=f"{topic} Report - {datetime.now(tz=UTC).date().isoformat()}",
        executive_summary=(
            "This automated report provides a comprehensive analysis of the current market "
            "conditions and emerging trends in the cryptocurrency ecosystem."
        ),
        sections=[
            ReportSection(heading="Market Overview", content=overview),
            ReportSection(heading="Key Developments", content=developments),
            ReportSection(heading="Sentiment Analysis", content=sentiment_text),
        ],
        recommendation=MOCK_RECOMMENDATION,
    )
