from __future__ import annotations

from typing import Any, Dict, List, Optional

from core.llm import LLMConfig, LLMRequest
from core.model_response import strip_reasoning
from core.turn_state import TurnState
from infra.llm.tool_specs import JSON_TOOL_NAME, ToolCatalog, json_tool_spec
from services.turn_worker.models import ModelSettings


def _tool_choice(state: TurnState, catalog: ToolCatalog) -> Optional[Any]:
    if not catalog.tools:
        return None
    forced = catalog.resolve_force(state.params.force)
    if forced:
        return {"name": forced}
    if state.params.force is True:
        return "any"
    return "auto"


def _provider_options(state: TurnState, settings: ModelSettings) -> Optional[Dict[str, Any]]:
    if not state.remote_servers:
        return None
    return {
        "extra_body": {"mcp_servers": [s.to_provider_config() for s in state.remote_servers]},
        "extra_headers": {"anthropic-beta": settings.mcp_beta},
    }


def build_turn_request(state: TurnState, catalog: ToolCatalog, settings: ModelSettings) -> LLMRequest:
    params = state.params
    thinking = None
    if params.thinking and params.thinking_budget:
        thinking = {"type": "enabled", "budget_tokens": int(params.thinking_budget)}
    return LLMRequest(
        messages=list(state.messages),
        system_prompt=params.system_prompt,
        tools=list(catalog.tools) or None,
        tool_choice=_tool_choice(state, catalog),
        parallel_tool_calls=False if state.remote_servers and catalog.tools else None,
        config=LLMConfig(
            model=params.model,
            api_key=settings.api_key or None,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            stream=settings.stream,
            thinking=thinking,
            provider_options=_provider_options(state, settings),
        ),
    )


def build_object_request(
    state: TurnState, messages: List[Dict[str, Any]], schema: Dict[str, Any], settings: ModelSettings
) -> LLMRequest:
    """Forced `json` tool call; reasoning blocks cannot accompany a forced tool choice."""
    return LLMRequest(
        messages=strip_reasoning(messages),
        tools=[json_tool_spec(schema)],
        tool_choice={"name": JSON_TOOL_NAME},
        config=LLMConfig(
            model=state.params.model,
            api_key=settings.api_key or None,
            max_tokens=state.params.max_tokens,
            stream=settings.stream,
        ),
    )
