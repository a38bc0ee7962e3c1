from __future__ import annotations

import json
from typing import Any
from urllib import error

import pytest
from pydantic import ValidationError

from paygent.app.llm import OpenAIChatCompletionsAdapter, build_llm_adapter
from paygent.app.planner import LLMPlanDraft
from paygent.app.settings import Settings


class FakeResponse:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def read(self) -> bytes:
        return self._body


def _completion(content: Any) -> dict[str, Any]:
    return {"choices": [{"message": {"content": content}}]}


class ScriptedOpener:
    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.bodies: list[dict[str, Any]] = []

    def __call__(self, req: Any, timeout: float) -> FakeResponse:
        self.bodies.append(json.loads(req.data))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return FakeResponse(reply)


def test_adapter_parses_fenced_json_into_model() -> None:
    content = '```json\n{"description": "d", "steps": [{"service_id": "demo-echo"}]}\n```'
    opener = ScriptedOpener(_completion(content))
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", opener=opener)

    draft = adapter.generate_structured(
        system_prompt="sys",
        user_prompt="user",
        response_model=LLMPlanDraft,
        timeout_s=1.0,
    )

    assert draft.steps[0].service_id == "demo-echo"
    sent = opener.bodies[0]
    assert sent["model"] == "gpt-4o-mini"
    assert sent["response_format"]["json_schema"]["name"] == "llmplandraft"
    assert [m["role"] for m in sent["messages"]] == ["system", "user"]


def test_adapter_merges_list_content() -> None:
    parts = [{"type": "text", "text": '{"error": '}, {"type": "text", "text": '"none fit"}'}]
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", opener=ScriptedOpener(_completion(parts)))

    draft = adapter.generate_structured(
        system_prompt="sys", user_prompt="user", response_model=LLMPlanDraft, timeout_s=1.0
    )

    assert draft.error == "none fit"


def test_adapter_retries_transport_errors() -> None:
    opener = ScriptedOpener(error.URLError("reset"), _completion('{"steps": []}'))
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=1, backoff_s=0.0, opener=opener)

    draft = adapter.generate_structured(
        system_prompt="sys", user_prompt="user", response_model=LLMPlanDraft, timeout_s=1.0
    )

    assert draft.steps == []
    assert len(opener.bodies) == 2


def test_adapter_gives_up_after_retries() -> None:
    opener = ScriptedOpener(error.URLError("reset"), error.URLError("reset again"))
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=1, backoff_s=0.0, opener=opener)

    with pytest.raises(error.URLError):
        adapter.generate_structured(
            system_prompt="sys", user_prompt="user", response_model=LLMPlanDraft, timeout_s=1.0
        )


def test_empty_choices_are_rejected() -> None:
    adapter = OpenAIChatCompletionsAdapter(
        api_key="sk-test", max_retries=0, opener=ScriptedOpener({"choices": []})
    )

    with pytest.raises(ValueError, match="choices"):
        adapter.generate_structured(
            system_prompt="sys", user_prompt="user", response_model=LLMPlanDraft, timeout_s=1.0
        )


def test_build_llm_adapter_requires_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    settings = Settings(_env_file=None, openai_api_key="")
    assert build_llm_adapter(settings) is None

    keyed = settings.model_copy(update={"openai_api_key": "sk-test", "llm_model": "gpt-4.1-mini"})
    adapter = build_llm_adapter(keyed)
    assert isinstance(adapter, OpenAIChatCompletionsAdapter)
    assert adapter.model == "gpt-4.1-mini"

    assert build_llm_adapter(keyed.model_copy(update={"llm_provider": "local"})) is None


def test_malformed_output_is_not_retried() -> None:
    opener = ScriptedOpener(_completion("not json at all"), _completion('{"steps": []}'))
    adapter = OpenAIChatCompletionsAdapter(api_key="sk-test", max_retries=1, backoff_s=0.0, opener=opener)

    with pytest.raises(ValidationError):
        adapter.generate_structured(
            system_prompt="sys", user_prompt="user", response_model=LLMPlanDraft, timeout_s=1.0
        )
    assert len(opener.bodies) == 1
