from __future__ import annotations

import logging
from typing import Any, Optional

from core.errors import DTError
from infra.stores.turn_store import ToolResultStore, TurnStateStore
from infra.worker_helpers.race_guard import RaceGuard
from infra.worker_helpers.timeouts import TimeoutScheduler
from services.turn_worker.aggregator import ResultAggregator
from services.turn_worker.models import ResultDisposition
from services.turn_worker.resume import resume_turn

logger = logging.getLogger("ToolResultHandler")


class ToolResultHandler:
    """Stores one tool result and resumes the turn once all of its results are in."""

    def __init__(
        self,
        *,
        executor: Any,
        state_store: TurnStateStore,
        results: ToolResultStore,
        guard: RaceGuard,
        timeouts: TimeoutScheduler,
    ):
        self.executor = executor
        self.state_store = state_store
        self.results = results
        self.guard = guard
        self.timeouts = timeouts
        self.aggregator = ResultAggregator(results)

    async def on_tool_result(
        self,
        conversation_id: str,
        tool_call_id: str,
        result: Any,
        turn: Optional[int] = None,
    ) -> ResultDisposition:
        if await self.guard.is_held(conversation_id):
            logger.info(
                "Timeout in progress, deferring result conversation=%s tool_call_id=%s",
                conversation_id,
                tool_call_id,
            )
            return ResultDisposition.DEFERRED

        state = await self.state_store.load(conversation_id)
        if state is None:
            logger.info(
                "No suspended turn for result conversation=%s tool_call_id=%s", conversation_id, tool_call_id
            )
            return ResultDisposition.STALE
        if tool_call_id not in state.tool_call_ids or (turn is not None and turn != state.turn):
            logger.info(
                "Stale tool result conversation=%s tool_call_id=%s turn=%s current_turn=%s",
                conversation_id,
                tool_call_id,
                turn,
                state.turn,
            )
            return ResultDisposition.STALE

        await self.timeouts.clear(conversation_id)
        await self.results.store(conversation_id, state.turn, tool_call_id, result)

        aggregation = await self.aggregator.aggregate(conversation_id, state.turn, state.tool_call_ids)
        if not aggregation.complete:
            await self.timeouts.set(conversation_id)
            logger.debug(
                "Waiting for tool results conversation=%s turn=%s missing=%s",
                conversation_id,
                state.turn,
                aggregation.missing,
            )
            return ResultDisposition.WAITING

        if not await self.results.claim_resumption(conversation_id, state.turn, pending_id=state.pending_id):
            logger.info("Turn already resumed conversation=%s turn=%s", conversation_id, state.turn)
            return ResultDisposition.DUPLICATE

        try:
            await resume_turn(self.executor, state, aggregation.results)
        except DTError as exc:
            logger.error("Resumed turn failed conversation=%s: %s", conversation_id, exc)
        return ResultDisposition.RESUMED
