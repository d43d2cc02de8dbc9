"""Durable turn models shared by the worker, the stores and the tool bridge."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ToolDefinition(BaseModel):
    """A caller-supplied tool; `block_id` addresses the executor that runs it."""

    model_config = ConfigDict(extra="ignore")

    block_id: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class RemoteToolServer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    url: str
    type: Literal["url"] = "url"
    authorization_token: Optional[str] = None
    # None exposes every tool on the server; [] exposes none.
    allowed_tools: Optional[List[str]] = None

    def to_provider_config(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {"name": self.name, "type": self.type, "url": self.url}
        if self.authorization_token:
            config["authorization_token"] = self.authorization_token
        if self.allowed_tools is not None:
            config["tool_configuration"] = {"enabled": True, "allowed_tools": list(self.allowed_tools)}
        return config


class TurnParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str
    max_tokens: int = 4096
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    # False: auto; True: any tool; str: that tool's display name.
    force: Union[bool, str] = False
    thinking: bool = True
    thinking_budget: Optional[int] = 2048
    output_schema: Optional[Dict[str, Any]] = None
    max_retries: int = 1


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_payload(self) -> Dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


class TurnResult(BaseModel):
    text: Optional[str] = None
    object: Optional[Any] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)

    def to_payload(self) -> Dict[str, Any]:
        return {"text": self.text, "object": self.object, "usage": self.usage.to_payload()}


class TurnState(BaseModel):
    """
    Snapshot of one conversation turn.

    `messages` holds the history in content-block form and only ever grows.
    `tool_call_ids` is non-empty exactly while the turn waits on tools; `turn`
    is the number fragments for those calls are stored under.
    """

    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    origin_id: str
    pending_id: str
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    tool_call_ids: List[str] = Field(default_factory=list)
    turn: int = 0
    params: TurnParams
    tool_definitions: List[ToolDefinition] = Field(default_factory=list)
    remote_servers: List[RemoteToolServer] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)

    @property
    def suspended(self) -> bool:
        return bool(self.tool_call_ids)


class ToolResultFragment(BaseModel):
    tool_call_id: str
    turn: int
    result: Any = None
    stored_at: float = Field(default_factory=time.time)
