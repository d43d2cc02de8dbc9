"""
Tool Bridge (executor side)

Listens on: dt.{PROTOCOL_VERSION}.cmd.tool.{block_id}.call
Behavior: records an execution key for each dispatched call, runs the handler
registered for the tool name, and submits the result to the reply subject
carried by the dispatch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from core.config import PROTOCOL_VERSION
from core.protocol import ToolDispatchMessage, ToolResultMessage
from core.subject import tool_call_subject
from core.utils import stringify_payload
from infra.service_runtime import ServiceBase
from infra.stores.execution_store import ToolExecution, ToolExecutionStore, build_execution_key

logger = logging.getLogger("ToolBridge")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ToolBridge:
    """Maps dispatched tool calls to local handlers and reports their results."""

    def __init__(self, nats: Any, executions: ToolExecutionStore, handlers: Dict[str, ToolHandler]):
        self.nats = nats
        self.executions = executions
        self.handlers = dict(handlers)

    async def on_dispatch(self, data: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Returns the execution key, or None when the dispatch was dropped."""
        try:
            message = ToolDispatchMessage.model_validate(data or {})
        except ValidationError as exc:
            logger.error("Malformed tool dispatch: %s", exc)
            return None

        key = build_execution_key(message.conversation_id, message.turn, message.tool_call_id)
        recorded = await self.executions.record(
            ToolExecution(
                execution_key=key,
                conversation_id=message.conversation_id,
                tool_call_id=message.tool_call_id,
                turn=message.turn,
                tool_name=message.tool_name,
                origin_id=message.origin_id,
                reply_subject=message.reply_subject,
            )
        )
        if not recorded:
            logger.info("Dispatch already seen tool_call_id=%s key=%s", message.tool_call_id, key)
            return None

        handler = self.handlers.get(message.tool_name)
        if handler is None:
            logger.warning("No handler for tool=%s tool_call_id=%s", message.tool_name, message.tool_call_id)
            await self.submit_result(key, f"Error: tool {message.tool_name!r} is not available")
            return key

        try:
            result = await handler(dict(message.parameters))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool handler failed tool=%s: %s", message.tool_name, exc, exc_info=True)
            result = f"Error: {exc}"
        await self.submit_result(key, result, headers=headers)
        return key

    async def submit_result(self, execution_key: str, result: Any, *, headers: Optional[Dict[str, str]] = None) -> bool:
        execution = await self.executions.get(execution_key)
        if execution is None:
            logger.warning("Unknown or expired execution key=%s, result ignored", execution_key)
            return False

        reply = ToolResultMessage(
            conversation_id=execution.conversation_id,
            tool_call_id=execution.tool_call_id,
            turn=execution.turn,
            result=stringify_payload(result),
        )
        await self.nats.publish_event(execution.reply_subject, reply.model_dump(mode="json"), headers=headers)
        await self.executions.mark_done(execution)
        logger.info(
            "Submitted tool result conversation=%s tool_call_id=%s turn=%s",
            execution.conversation_id,
            execution.tool_call_id,
            execution.turn,
        )
        return True


class ToolBridgeService(ServiceBase):
    def __init__(self, config: Optional[Dict[str, Any]] = None, *, block_id: str, handlers: Dict[str, ToolHandler]):
        super().__init__(config, service_name=f"tool_bridge:{block_id}")
        self.block_id = block_id
        executions = self.register_store(self.ctx.stores.tool_execution_store())
        self.bridge = ToolBridge(self.nats, executions, handlers)

    async def start(self) -> None:
        await self.open()
        subject = tool_call_subject(self.block_id)
        queue = f"tool_{self.block_id}"
        logger.info("Started. Listening on %s (queue=%s)", subject, queue)
        await self.nats.subscribe_cmd(
            subject,
            queue,
            self._handle_dispatch,
            durable_name=f"{queue}_{PROTOCOL_VERSION}",
        )
        await asyncio.Event().wait()

    async def _handle_dispatch(self, subject: str, data: Dict[str, Any], headers: Dict[str, str]) -> None:
        await self.bridge.on_dispatch(data, headers)
