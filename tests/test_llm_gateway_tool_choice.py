from __future__ import annotations

from types import SimpleNamespace

import pytest

from core.llm import LLMConfig, LLMRequest
from infra.llm_gateway import LLMService


def _fake_response() -> SimpleNamespace:
    msg = SimpleNamespace(content="ok", tool_calls=None, role="assistant")
    choice = SimpleNamespace(message=msg, finish_reason="stop")
    return SimpleNamespace(choices=[choice], usage=None)


_LOOKUP_TOOL = {
    "name": "lookup",
    "description": "look a value up",
    "input_schema": {
        "type": "object",
        "properties": {"q": {"type": "string"}},
        "required": ["q"],
    },
}


@pytest.mark.asyncio
async def test_named_tool_choice_is_sent_as_function_choice(monkeypatch):
    captured: dict[str, object] = {}

    async def fake_acompletion(**params):
        captured.update(params)
        return _fake_response()

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    req = LLMRequest(
        messages=[{"role": "user", "content": "hi"}],
        tools=[_LOOKUP_TOOL],
        tool_choice={"name": "lookup"},
        config=LLMConfig(model="anthropic/claude-test", stream=False),
    )

    svc = LLMService()
    await svc.completion(req)

    assert captured.get("tool_choice") == {"type": "function", "function": {"name": "lookup"}}
    assert captured["tools"] == [
        {
            "type": "function",
            "function": {
                "name": "lookup",
                "description": "look a value up",
                "parameters": _LOOKUP_TOOL["input_schema"],
            },
        }
    ]


@pytest.mark.asyncio
async def test_any_tool_choice_maps_to_required(monkeypatch):
    captured: dict[str, object] = {}

    async def fake_acompletion(**params):
        captured.update(params)
        return _fake_response()

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    req = LLMRequest(
        messages=[{"role": "user", "content": "hi"}],
        tools=[_LOOKUP_TOOL],
        tool_choice="any",
        config=LLMConfig(model="anthropic/claude-test", stream=False),
    )

    await LLMService().completion(req)

    assert captured.get("tool_choice") == "required"


@pytest.mark.asyncio
async def test_tool_choice_is_dropped_without_tools(monkeypatch):
    captured: dict[str, object] = {}

    async def fake_acompletion(**params):
        captured.update(params)
        return _fake_response()

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    req = LLMRequest(
        messages=[{"role": "user", "content": "hi"}],
        tool_choice="auto",
        config=LLMConfig(model="anthropic/claude-test", stream=False),
    )

    await LLMService().completion(req)

    assert "tools" not in captured
    assert "tool_choice" not in captured


@pytest.mark.asyncio
async def test_provider_options_and_thinking_are_forwarded(monkeypatch):
    captured: dict[str, object] = {}

    async def fake_acompletion(**params):
        captured.update(params)
        return _fake_response()

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    req = LLMRequest(
        messages=[{"role": "user", "content": "hi"}],
        system_prompt="Be brief.",
        config=LLMConfig(
            model="anthropic/claude-test",
            stream=False,
            api_key="sk-test",
            max_tokens=4096,
            thinking={"type": "enabled", "budget_tokens": 2048},
            provider_options={"extra_headers": {"anthropic-beta": "mcp-client-2025-04-04"}},
        ),
    )

    await LLMService().completion(req)

    assert captured["api_key"] == "sk-test"
    assert captured["thinking"] == {"type": "enabled", "budget_tokens": 2048}
    assert captured["extra_headers"] == {"anthropic-beta": "mcp-client-2025-04-04"}
    assert captured["messages"][0] == {"role": "system", "content": "Be brief."}
    assert "provider_options" not in captured
    assert "temperature" not in captured
