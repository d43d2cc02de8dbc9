from __future__ import annotations

from typing import Optional

from core.app_config import LLMSectionConfig, TurnConfig
from core.errors import ConfigurationError
from core.json_schema import validate_json_schema
from core.protocol import GenerateRequest
from core.turn_state import TurnParams


def validate_generate_request(
    request: GenerateRequest,
    *,
    llm_config: LLMSectionConfig,
    turn_config: TurnConfig,
    api_key: Optional[str] = None,
) -> TurnParams:
    """
    Resolve request parameters against configured defaults.

    Raises ConfigurationError before any pending operation exists, so a bad
    request never produces a half-started turn.
    """
    key = api_key if api_key is not None else llm_config.api_key
    model = request.model or llm_config.default_model
    if not key and not str(model or "").startswith("mock"):
        raise ConfigurationError("Anthropic API key is required")
    if not model:
        raise ConfigurationError("Model is required")

    max_tokens = request.max_tokens if request.max_tokens is not None else turn_config.max_tokens
    thinking = request.thinking if request.thinking is not None else turn_config.thinking
    budget = request.thinking_budget if request.thinking_budget is not None else turn_config.thinking_budget
    if thinking and (not budget or budget >= max_tokens):
        raise ConfigurationError("You need to set thinking budget to a value less than max tokens")

    if request.output_schema is not None:
        try:
            validate_json_schema(request.output_schema, context="schema")
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    max_retries = request.max_retries if request.max_retries is not None else turn_config.max_retries
    if max_retries < 1:
        raise ConfigurationError("max_retries must be at least 1")

    return TurnParams(
        model=model,
        max_tokens=max_tokens,
        system_prompt=request.system_prompt,
        temperature=request.temperature,
        force=request.force,
        thinking=bool(thinking),
        thinking_budget=budget if thinking else None,
        output_schema=request.output_schema,
        max_retries=max_retries,
    )
