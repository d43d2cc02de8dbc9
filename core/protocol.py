"""Message payloads exchanged over NATS."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from core.turn_state import RemoteToolServer, ToolDefinition


class GenerateRequest(BaseModel):
    """Inbound trigger that starts a new turn."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    conversation_id: str
    origin_id: Optional[str] = None
    prompt: str
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    force: Union[bool, str] = False
    thinking: Optional[bool] = None
    thinking_budget: Optional[int] = None
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")
    max_retries: Optional[int] = None
    tool_definitions: List[ToolDefinition] = Field(default_factory=list)
    remote_servers: List[RemoteToolServer] = Field(default_factory=list)


class ToolDispatchMessage(BaseModel):
    """Sent to the executor block of one tool call."""

    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    tool_call_id: str
    turn: int
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    origin_id: str
    reply_subject: str


class ToolResultMessage(BaseModel):
    """Reported back by an executor; delivery is at-least-once."""

    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    tool_call_id: str
    turn: Optional[int] = None
    result: Any = None


class PendingEvent(BaseModel):
    """Caller-facing lifecycle of one pending turn."""

    model_config = ConfigDict(extra="ignore")

    pending_id: str
    conversation_id: str
    origin_id: str
    status: str
    description: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
