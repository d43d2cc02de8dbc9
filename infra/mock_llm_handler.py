from __future__ import annotations

import json
import re
from typing import Any, Dict, List

import uuid6

from core.llm import LLMRequest
from core.model_response import ModelResponse
from core.turn_state import TokenUsage


def _last_user_text(messages: List[Dict[str, Any]]) -> str:
    for msg in reversed(messages):
        if msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            return content
        for block in content or []:
            if block.get("type") == "text":
                return str(block.get("text") or "")
            if block.get("type") == "tool_result":
                return str(block.get("content") or "")
    return ""


def _has_tool_results(messages: List[Dict[str, Any]]) -> bool:
    last = messages[-1] if messages else {}
    content = last.get("content")
    return isinstance(content, list) and any(b.get("type") == "tool_result" for b in content)


def _text_response(text: str) -> ModelResponse:
    return ModelResponse(
        message={"role": "assistant", "content": [{"type": "text", "text": text}]},
        stop_reason="end_turn",
        usage=TokenUsage(input_tokens=len(text.split()), output_tokens=len(text.split())),
    )


async def mock_chat(request: LLMRequest) -> ModelResponse:
    """
    Offline stand-in for local demos.

    - forced "json" tool: answers with an empty object for the schema
    - `mock-tool`: calls the first offered tool once, then reports its result
    - anything else: echoes arithmetic (`2 + 3`) or "ok"
    """
    messages = request.messages
    tools = request.tools or []

    if isinstance(request.tool_choice, dict) and request.tool_choice.get("name") == "json":
        return ModelResponse(
            message={
                "role": "assistant",
                "content": [{"type": "tool_use", "id": f"call_mock_json_{uuid6.uuid7().hex}", "name": "json", "input": {}}],
            },
            stop_reason="tool_use",
            usage=TokenUsage(input_tokens=1, output_tokens=1),
        )

    if request.config.model == "mock-tool" and tools and not _has_tool_results(messages):
        tool = tools[0]
        return ModelResponse(
            message={
                "role": "assistant",
                "content": [
                    {"type": "text", "text": f"Let me use {tool['name']}."},
                    {
                        "type": "tool_use",
                        "id": f"call_mock_{uuid6.uuid7().hex}",
                        "name": tool["name"],
                        "input": {"q": _last_user_text(messages)},
                    },
                ],
            },
            stop_reason="tool_use",
            usage=TokenUsage(input_tokens=1, output_tokens=1),
        )

    text = _last_user_text(messages)
    if _has_tool_results(messages):
        return _text_response(f"The answer is {text}")
    m = re.search(r"(-?\d+)\s*([+\-*])\s*(-?\d+)", text)
    if m:
        a, op, b = int(m.group(1)), m.group(2), int(m.group(3))
        ans = a + b if op == "+" else a - b if op == "-" else a * b
        return _text_response(json.dumps(ans))
    return _text_response("ok")
