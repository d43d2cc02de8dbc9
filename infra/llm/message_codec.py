"""
Translation between the content-block history kept in turn state and the
OpenAI-style messages litellm accepts.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from core.utils import stringify_payload

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": "end_turn",
    "end_turn": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "tool_use": "tool_use",
    "length": "max_tokens",
}


def map_finish_reason(finish_reason: Optional[str]) -> str:
    if not finish_reason:
        return "unknown"
    return _FINISH_REASONS.get(str(finish_reason), str(finish_reason))


def _text_of(blocks: List[Dict[str, Any]]) -> str:
    return "".join(str(b.get("text") or "") for b in blocks if b.get("type") == "text")


def to_litellm_messages(
    messages: List[Dict[str, Any]], *, system_prompt: Optional[str] = None
) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if isinstance(content, str) or content is None:
            out.append({"role": role, "content": content or ""})
            continue

        if role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": _text_of(content) or None}
            tool_calls = [
                {
                    "id": b["id"],
                    "type": "function",
                    "function": {"name": b["name"], "arguments": json.dumps(b.get("input") or {})},
                }
                for b in content
                if b.get("type") == "tool_use"
            ]
            if tool_calls:
                entry["tool_calls"] = tool_calls
            # Thinking blocks are only replayable with their provider signature.
            thinking = [b for b in content if b.get("type") == "redacted_thinking" or b.get("signature")]
            if thinking:
                entry["thinking_blocks"] = thinking
            out.append(entry)
            continue

        texts: List[Dict[str, Any]] = []
        for block in content:
            block_type = block.get("type")
            if block_type == "tool_result":
                out.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.get("tool_use_id"),
                        "content": stringify_payload(block.get("content")),
                    }
                )
            elif block_type == "text":
                texts.append({"type": "text", "text": block.get("text") or ""})
            else:
                logger.debug("Dropping unsupported %s block in %s message", block_type, role)
        if texts:
            out.append({"role": role, "content": texts})
    return out


def _parse_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def from_litellm_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Build an assistant content-block message from a formatted litellm message."""
    blocks: List[Dict[str, Any]] = []
    for block in message.get("thinking_blocks") or []:
        if isinstance(block, dict):
            blocks.append(dict(block))
    if not blocks and message.get("reasoning_content"):
        blocks.append({"type": "thinking", "thinking": message["reasoning_content"]})

    content = message.get("content")
    if content:
        blocks.append({"type": "text", "text": content})

    for call in message.get("tool_calls") or []:
        fn = call.get("function") or {}
        blocks.append(
            {
                "type": "tool_use",
                "id": call.get("id"),
                "name": fn.get("name"),
                "input": _parse_arguments(fn.get("arguments")),
            }
        )
    return {"role": "assistant", "content": blocks}
