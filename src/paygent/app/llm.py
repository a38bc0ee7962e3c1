from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel

from .settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)


class LLMAdapter(Protocol):
    """Interface for structured LLM completions used by the planner and content generator."""

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...


class OpenAIChatCompletionsAdapter:
    """Chat completions client that asks for JSON shaped like a pydantic model.

    Transport errors are retried ``max_retries`` times. Anything else propagates
    so the planner and content generator can drop to their deterministic paths.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
        opener=request.urlopen,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self._opener = opener

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        body = {
            "model": self.model,
            "temperature": 0.7,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": _json_schema_format(response_model),
        }
        reply = self._post(body, timeout_s)
        return response_model.model_validate_json(_strip_code_fence(_message_text(reply)))

    def _post(self, body: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            f"{self.base_url}/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._opener(req, timeout=timeout_s) as response:
                    return json.loads(response.read())
            except (TimeoutError, error.URLError) as exc:
                if attempt > self.max_retries:
                    raise
                logger.warning(
                    "llm event=retry attempt=%d/%d model=%s reason=%s",
                    attempt,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                time.sleep(self.backoff_s)


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    """Return a configured adapter, or None when the provider or key is missing."""
    if settings.llm_provider.lower() != "openai":
        return None
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def _json_schema_format(response_model: type[BaseModel]) -> dict[str, Any]:
    # Plan drafts carry free-form request bodies, which strict mode rejects.
    return {
        "type": "json_schema",
        "json_schema": {
            "name": response_model.__name__.lower(),
            "strict": False,
            "schema": response_model.model_json_schema(),
        },
    }


def _message_text(reply: dict[str, Any]) -> str:
    choices = reply.get("choices") or []
    if not choices:
        raise ValueError("OpenAI response did not contain choices")
    content = choices[0].get("message", {}).get("content")
    if isinstance(content, list):
        content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
    if not isinstance(content, str) or not content.strip():
        raise ValueError("OpenAI response carried no text content")
    return content
