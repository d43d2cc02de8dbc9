from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from core.errors import DTError, MissingTextError, TurnSupersededError, UnexpectedStopReasonError
from core.llm import LLMRequest
from core.model_response import (
    EndTurnText,
    EndTurnWithSchema,
    ModelResponse,
    ToolCall,
    ToolUseRequested,
    UnexpectedStop,
    classify_response,
)
from core.protocol import GenerateRequest
from core.tool_names import describe_tool_calls
from core.turn_state import TurnParams, TurnResult, TurnState
from infra.event_emitter import PendingEmitter, PendingHandle
from infra.llm.tool_specs import ToolCatalog, build_tool_catalog
from infra.llm_gateway import is_transient_error
from infra.tool_dispatch import ToolDispatcher
from infra.stores.turn_store import TurnStateStore
from infra.worker_helpers.timeouts import TimeoutScheduler
from services.turn_worker.lifecycle import TurnLifecycle
from services.turn_worker.models import ModelSettings, RetrySettings, TurnOutcome, TurnSuspended
from services.turn_worker.object_extractor import ObjectExtractor
from services.turn_worker.requests import build_turn_request

logger = logging.getLogger("TurnExecutor")

INITIAL_STATUS = "Calling model..."


class TurnExecutor:
    """
    Runs one model round-trip for a turn and decides what happens next.

    End-of-turn text finalizes (or hands off to the ObjectExtractor when a
    schema is set), tool use suspends the turn after persisting it, anything
    else fails the turn.
    """

    def __init__(
        self,
        *,
        llm: Any,
        emitter: PendingEmitter,
        state_store: TurnStateStore,
        timeouts: TimeoutScheduler,
        dispatcher: ToolDispatcher,
        retry: RetrySettings,
        model: ModelSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.llm = llm
        self.emitter = emitter
        self.state_store = state_store
        self.timeouts = timeouts
        self.dispatcher = dispatcher
        self.retry = retry
        self.model = model
        self._sleep = sleep
        self.lifecycle = TurnLifecycle(emitter=emitter, state_store=state_store, timeouts=timeouts)
        self.extractor = ObjectExtractor(llm=llm, lifecycle=self.lifecycle, settings=model)

    async def start_turn(self, request: GenerateRequest, params: TurnParams) -> TurnOutcome:
        """Open the pending operation for a validated request and run its first turn."""
        origin_id = request.origin_id or request.conversation_id
        existing = await self.state_store.load(request.conversation_id)
        if existing is not None and existing.suspended:
            # The old caller gets a terminal event; its late results become stale.
            error = TurnSupersededError(detail={"turn": existing.turn, "pending_id": existing.pending_id})
            await self.lifecycle.fail(existing, error.message, error)

        handle = PendingHandle.new(request.conversation_id, origin_id)
        await self.emitter.create(handle, INITIAL_STATUS)
        state = TurnState(
            conversation_id=request.conversation_id,
            origin_id=origin_id,
            pending_id=handle.pending_id,
            messages=[{"role": "user", "content": request.prompt}],
            params=params,
            tool_definitions=request.tool_definitions,
            remote_servers=request.remote_servers,
        )
        return await self.execute_turn(state)

    async def execute_turn(self, state: TurnState) -> TurnOutcome:
        catalog = build_tool_catalog(state.tool_definitions)
        request = build_turn_request(state, catalog, self.model)

        try:
            response = await self._call_with_retry(state, catalog, request)
        except Exception as exc:
            await self.lifecycle.fail(state, f"API call failed: {exc}", exc)
            raise

        try:
            kind = classify_response(response, state.params.output_schema)
        except MissingTextError as exc:
            await self.lifecycle.fail(state, exc.message, exc)
            raise

        if isinstance(kind, EndTurnText):
            return await self.lifecycle.finalize(state, TurnResult(text=kind.text, object=None, usage=response.usage))
        if isinstance(kind, EndTurnWithSchema):
            return await self.extractor.extract(state, response.message, kind.text, kind.schema, response.usage)
        if isinstance(kind, ToolUseRequested):
            return await self._suspend(state, catalog, response, kind.tool_calls)
        if isinstance(kind, UnexpectedStop):
            error = UnexpectedStopReasonError(
                "Unexpected response from model", detail={"stop_reason": kind.stop_reason}
            )
            await self.lifecycle.fail(state, error.message, error)
            raise error
        raise TypeError(f"unhandled response kind: {kind!r}")

    async def _call_with_retry(self, state: TurnState, catalog: ToolCatalog, request: LLMRequest) -> ModelResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, int(self.retry.max_attempts))),
            wait=wait_exponential(
                multiplier=self.retry.backoff_base_seconds,
                max=self.retry.backoff_max_seconds,
            ),
            retry=retry_if_exception(is_transient_error),
            sleep=self._sleep,
            reraise=True,
        )
        on_progress = self._progress_callback(state, catalog)
        async for attempt in retrying:
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1:
                logger.warning(
                    "Retrying model call conversation=%s attempt=%s", state.conversation_id, attempt_number
                )
                await self.lifecycle.status(state, f"Retrying API call... (attempt {attempt_number})")
            with attempt:
                return await self.llm.chat(request, on_progress=on_progress)
        raise RuntimeError("retry loop exited without a result")

    def _progress_callback(self, state: TurnState, catalog: ToolCatalog):
        # remote tool results name no tool; they belong to the last remote call
        last_remote: Dict[str, str] = {}

        async def on_progress(kind: str, detail: Any = None) -> None:
            if kind == "thinking":
                description = "Thinking..."
            elif kind == "text":
                description = "Processing..."
            elif kind == "tool_use" and detail:
                description = f'Preparing "{catalog.display_name(detail)}"...'
            elif kind == "remote_tool_use" and isinstance(detail, dict):
                last_remote.update(name=str(detail.get("name") or ""), server=str(detail.get("server") or ""))
                description = f'Calling "{last_remote["name"]}" on "{last_remote["server"]}"'
            elif kind == "remote_tool_result" and last_remote:
                description = f'Received result of "{last_remote["name"]}" from "{last_remote["server"]}"'
            else:
                return
            await self.lifecycle.status(state, description)

        return on_progress

    async def _suspend(
        self,
        state: TurnState,
        catalog: ToolCatalog,
        response: ModelResponse,
        tool_calls: List[ToolCall],
    ) -> TurnSuspended:
        if not tool_calls:
            error = UnexpectedStopReasonError(
                "Unexpected response from model", detail={"stop_reason": response.stop_reason, "tool_calls": 0}
            )
            await self.lifecycle.fail(state, error.message, error)
            raise error

        next_state = state.model_copy(
            update={
                "messages": [*state.messages, response.message],
                "tool_call_ids": [call.id for call in tool_calls],
                "turn": state.turn + 1,
            }
        )
        try:
            messages = self.dispatcher.build_messages(next_state, catalog, tool_calls)
        except DTError as exc:
            await self.lifecycle.fail(state, exc.message, exc)
            raise

        await self.lifecycle.status(state, describe_tool_calls([catalog.display_name(c.name) for c in tool_calls]))
        # Persist before dispatching so an immediate result finds its turn.
        await self.state_store.save(next_state)
        await self.timeouts.set(next_state.conversation_id)
        try:
            await self.dispatcher.dispatch(messages)
        except Exception as exc:
            await self.lifecycle.fail(next_state, f"Tool dispatch failed: {exc}", exc)
            raise

        logger.info(
            "Turn suspended conversation=%s turn=%s tool_calls=%s",
            next_state.conversation_id,
            next_state.turn,
            len(tool_calls),
        )
        return TurnSuspended(
            conversation_id=next_state.conversation_id,
            turn=next_state.turn,
            tool_call_ids=list(next_state.tool_call_ids),
        )
