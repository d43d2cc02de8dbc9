from __future__ import annotations

import logging
from typing import Any, Optional

from core.errors import DTError, ToolTimeoutError
from infra.event_emitter import PendingHandle
from infra.stores.turn_store import ToolResultStore, TurnStateStore
from infra.worker_helpers.race_guard import RaceGuard
from services.turn_worker.aggregator import ResultAggregator
from services.turn_worker.models import TimeoutDisposition
from services.turn_worker.resume import resume_turn

logger = logging.getLogger("TimeoutReconciler")

TIMEOUT_DESCRIPTION = "Timeout"


class TimeoutReconciler:
    """
    Fired when a suspended turn's wait window elapses.

    Runs entirely under the race guard so a result arriving meanwhile is
    deferred instead of racing the decision. If every result made it in after
    all, the turn resumes; otherwise the caller gets a timeout failure.
    """

    def __init__(
        self,
        *,
        executor: Any,
        state_store: TurnStateStore,
        results: ToolResultStore,
        guard: RaceGuard,
        preserve_state: bool = False,
    ):
        self.executor = executor
        self.state_store = state_store
        self.results = results
        self.guard = guard
        self.aggregator = ResultAggregator(results)
        self.preserve_state = preserve_state

    async def on_timeout(self, conversation_id: str) -> TimeoutDisposition:
        async with self.guard.hold(conversation_id) as acquired:
            if not acquired:
                return TimeoutDisposition.BUSY
            return await self._reconcile(conversation_id)

    async def _reconcile(self, conversation_id: str) -> TimeoutDisposition:
        state = await self.state_store.load(conversation_id)
        if state is None or not state.suspended:
            logger.info("Timeout for conversation without a suspended turn conversation=%s", conversation_id)
            return TimeoutDisposition.NO_STATE

        aggregation = await self.aggregator.aggregate(conversation_id, state.turn, state.tool_call_ids)
        if not aggregation.complete:
            logger.warning(
                "Tool results timed out conversation=%s turn=%s missing=%s",
                conversation_id,
                state.turn,
                aggregation.missing,
            )
            error = ToolTimeoutError(detail={"missing": list(aggregation.missing), "turn": state.turn})
            await self.executor.emitter.cancel(PendingHandle.for_state(state), TIMEOUT_DESCRIPTION, error)
            await self.executor.timeouts.clear(conversation_id)
            if self.preserve_state:
                # kept for inspection only; no outstanding ids means late results are stale
                await self.state_store.save(state.model_copy(update={"tool_call_ids": []}))
            else:
                await self.state_store.delete(conversation_id)
            return TimeoutDisposition.TIMED_OUT

        if not await self.results.claim_resumption(conversation_id, state.turn, pending_id=state.pending_id):
            return TimeoutDisposition.DUPLICATE

        try:
            await resume_turn(self.executor, state, aggregation.results)
        except DTError as exc:
            # terminal path already cancelled the pending operation
            logger.error("Resumed turn failed conversation=%s: %s", conversation_id, exc)
        return TimeoutDisposition.RESUMED

    async def fire(self, conversation_id: str) -> Optional[TimeoutDisposition]:
        try:
            return await self.on_timeout(conversation_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Timeout reconciliation failed conversation=%s: %s", conversation_id, exc)
            return None
