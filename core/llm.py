from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class LLMConfig(BaseModel):
    model: str
    api_key: Optional[str] = None
    api_base: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = True
    # Anthropic-style thinking block: {"type": "enabled", "budget_tokens": N}.
    thinking: Optional[Dict[str, Any]] = None
    # Generic container for provider-specific settings (e.g., extra_body, extra_headers).
    # These are passed directly to litellm.acompletion as kwargs.
    provider_options: Optional[Dict[str, Any]] = None


class LLMRequest(BaseModel):
    """Model request in content-block form; the gateway translates it for litellm."""

    messages: List[Dict[str, Any]]
    system_prompt: Optional[str] = None
    tools: Optional[List[Dict[str, Any]]] = None
    # "auto" | "any" | {"name": "..."}; None sends no tool choice.
    tool_choice: Optional[Any] = None
    parallel_tool_calls: Optional[bool] = None
    config: LLMConfig
