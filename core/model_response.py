"""Model response shape and its classification into the four turn outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from core.errors import MissingTextError
from core.turn_state import TokenUsage

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
REASONING_BLOCK_TYPES = ("thinking", "redacted_thinking")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelResponse:
    """Assistant message in content-block form plus stop reason and usage."""

    message: Dict[str, Any]
    stop_reason: str
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def blocks(self) -> List[Dict[str, Any]]:
        content = self.message.get("content")
        if isinstance(content, str):
            return [{"type": "text", "text": content}]
        return list(content or [])

    def last_text(self) -> Optional[str]:
        texts = [b.get("text") for b in self.blocks if b.get("type") == "text" and b.get("text")]
        return texts[-1] if texts else None

    def tool_calls(self) -> List[ToolCall]:
        return [
            ToolCall(id=str(b.get("id")), name=str(b.get("name") or ""), input=dict(b.get("input") or {}))
            for b in self.blocks
            if b.get("type") == "tool_use"
        ]


@dataclass(frozen=True)
class EndTurnText:
    text: str


@dataclass(frozen=True)
class EndTurnWithSchema:
    text: str
    schema: Dict[str, Any]


@dataclass(frozen=True)
class ToolUseRequested:
    tool_calls: List[ToolCall]


@dataclass(frozen=True)
class UnexpectedStop:
    stop_reason: str


ResponseKind = Union[EndTurnText, EndTurnWithSchema, ToolUseRequested, UnexpectedStop]


def classify_response(response: ModelResponse, schema: Optional[Dict[str, Any]] = None) -> ResponseKind:
    if response.stop_reason == STOP_END_TURN:
        text = response.last_text()
        if text is None:
            raise MissingTextError()
        if schema:
            return EndTurnWithSchema(text=text, schema=schema)
        return EndTurnText(text=text)
    if response.stop_reason == STOP_TOOL_USE:
        return ToolUseRequested(tool_calls=response.tool_calls())
    return UnexpectedStop(stop_reason=response.stop_reason)


def strip_reasoning(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Copy of `messages` without thinking blocks; messages left empty are dropped."""
    stripped: List[Dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        if not isinstance(content, list):
            stripped.append(dict(msg))
            continue
        kept = [b for b in content if b.get("type") not in REASONING_BLOCK_TYPES]
        if kept:
            stripped.append({**msg, "content": kept})
    return stripped
