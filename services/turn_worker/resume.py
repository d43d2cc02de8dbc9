from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from core.turn_state import TurnState
from core.utils import stringify_payload
from services.turn_worker.models import TurnOutcome

logger = logging.getLogger("TurnResume")

RESUME_STATUS = "Received results from tool(s)..."


def build_tool_result_message(state: TurnState, results: Mapping[str, Any]) -> Dict[str, Any]:
    """One user message with a tool_result block per dispatched call, in dispatch order."""
    blocks = []
    for tool_call_id in state.tool_call_ids:
        if tool_call_id not in results:
            logger.warning(
                "Resuming without a result conversation=%s turn=%s tool_call_id=%s",
                state.conversation_id,
                state.turn,
                tool_call_id,
            )
            continue
        blocks.append(
            {
                "type": "tool_result",
                "tool_use_id": tool_call_id,
                "content": stringify_payload(results[tool_call_id]),
            }
        )
    return {"role": "user", "content": blocks}


async def resume_turn(executor: Any, state: TurnState, results: Mapping[str, Any]) -> TurnOutcome:
    """Turn a suspended state plus its tool results back into an ordinary turn."""
    message = build_tool_result_message(state, results)
    resumed = state.model_copy(update={"messages": [*state.messages, message], "tool_call_ids": []})
    await executor.lifecycle.status(resumed, RESUME_STATUS)
    logger.info(
        "Resuming turn conversation=%s turn=%s results=%s",
        state.conversation_id,
        state.turn,
        len(message["content"]),
    )
    return await executor.execute_turn(resumed)
