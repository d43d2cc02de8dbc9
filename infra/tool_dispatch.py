from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Sequence

from core.model_response import ToolCall
from core.protocol import ToolDispatchMessage
from core.subject import tool_call_subject
from core.turn_state import TurnState
from infra.llm.tool_specs import ToolCatalog

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """Fans tool calls out to their executor blocks, one message per call."""

    def __init__(self, nats: Any, *, reply_subject: str):
        self.nats = nats
        self.reply_subject = reply_subject

    def build_messages(
        self, state: TurnState, catalog: ToolCatalog, tool_calls: Sequence[ToolCall]
    ) -> List[tuple[str, ToolDispatchMessage]]:
        """Resolve every call before anything is sent; unknown tools raise UnknownToolError."""
        out: List[tuple[str, ToolDispatchMessage]] = []
        for call in tool_calls:
            block_id = catalog.block_id_for(call.name)
            out.append(
                (
                    tool_call_subject(block_id),
                    ToolDispatchMessage(
                        conversation_id=state.conversation_id,
                        tool_call_id=call.id,
                        turn=state.turn,
                        tool_name=catalog.display_name(call.name),
                        parameters=dict(call.input),
                        origin_id=state.origin_id,
                        reply_subject=self.reply_subject,
                    ),
                )
            )
        return out

    async def dispatch(self, messages: Sequence[tuple[str, ToolDispatchMessage]]) -> None:
        async def _send(subject: str, message: ToolDispatchMessage) -> None:
            await self.nats.publish_event(subject, message.model_dump(mode="json"))
            logger.info(
                "Dispatched tool call conversation=%s turn=%s tool_call_id=%s subject=%s",
                message.conversation_id,
                message.turn,
                message.tool_call_id,
                subject,
            )

        await asyncio.gather(*(_send(subject, message) for subject, message in messages))
