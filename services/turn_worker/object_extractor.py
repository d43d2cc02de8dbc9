from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from core.errors import ObjectGenerationError
from core.json_schema import validate_instance
from core.turn_state import TokenUsage, TurnResult, TurnState
from infra.llm.tool_specs import JSON_TOOL_NAME
from services.turn_worker.lifecycle import TurnLifecycle
from services.turn_worker.models import ModelSettings, TurnFinalized
from services.turn_worker.requests import build_object_request

logger = logging.getLogger("ObjectExtractor")


class ObjectExtractor:
    """
    Second pass that forces the model to emit a schema-conforming object.

    Attempts are bounded by the turn's `max_retries`. Validation failures
    consume an attempt without recording an error; request failures record
    the error that is surfaced once attempts run out.
    """

    def __init__(self, *, llm: Any, lifecycle: TurnLifecycle, settings: ModelSettings):
        self.llm = llm
        self.lifecycle = lifecycle
        self.settings = settings

    async def extract(
        self,
        state: TurnState,
        final_message: Dict[str, Any],
        final_text: str,
        schema: Dict[str, Any],
        usage: TokenUsage,
    ) -> TurnFinalized:
        request = build_object_request(state, [*state.messages, final_message], schema, self.settings)
        max_attempts = max(1, int(state.params.max_retries))
        total = usage
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            status = "Generating object..." if attempt == 1 else f"Generating object... (retry {attempt})"
            await self.lifecycle.status(state, status)
            try:
                response = await self.llm.chat(request)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "Object request failed conversation=%s attempt=%s/%s: %s",
                    state.conversation_id,
                    attempt,
                    max_attempts,
                    exc,
                )
                continue

            total = total + response.usage
            call = next((c for c in response.tool_calls() if c.name == JSON_TOOL_NAME), None)
            if call is None:
                logger.info(
                    "Object attempt %s/%s returned no json tool call conversation=%s",
                    attempt,
                    max_attempts,
                    state.conversation_id,
                )
                continue
            try:
                validate_instance(call.input, schema)
            except ValueError as exc:
                logger.info(
                    "Object attempt %s/%s failed validation conversation=%s: %s",
                    attempt,
                    max_attempts,
                    state.conversation_id,
                    exc,
                )
                continue
            return await self.lifecycle.finalize(
                state, TurnResult(text=final_text, object=call.input, usage=total)
            )

        if last_error is not None:
            await self.lifecycle.fail(state, f"Object generation failed: {last_error}", last_error)
            raise last_error
        error = ObjectGenerationError(detail={"usage": total.model_dump()})
        await self.lifecycle.fail(state, error.message, error)
        raise error
