from __future__ import annotations

import logging
from typing import Any

from core.turn_state import TurnResult, TurnState
from infra.event_emitter import PendingEmitter, PendingHandle
from infra.stores.turn_store import TurnStateStore
from infra.worker_helpers.timeouts import TimeoutScheduler
from services.turn_worker.models import TurnFinalized

logger = logging.getLogger("TurnLifecycle")


class TurnLifecycle:
    """Terminal transitions shared by every path that can end a turn."""

    def __init__(self, *, emitter: PendingEmitter, state_store: TurnStateStore, timeouts: TimeoutScheduler):
        self.emitter = emitter
        self.state_store = state_store
        self.timeouts = timeouts

    async def status(self, state: TurnState, description: str) -> None:
        await self.emitter.update(PendingHandle.for_state(state), description)

    async def finalize(self, state: TurnState, result: TurnResult) -> TurnFinalized:
        await self.emitter.complete(PendingHandle.for_state(state), result)
        await self.discard(state.conversation_id)
        logger.info(
            "Turn finalized conversation=%s turn=%s usage=%s/%s",
            state.conversation_id,
            state.turn,
            result.usage.input_tokens,
            result.usage.output_tokens,
        )
        return TurnFinalized(conversation_id=state.conversation_id, result=result)

    async def fail(self, state: TurnState, description: str, error: Any = None) -> None:
        """Cancel the pending operation and drop durable state; the caller re-raises."""
        logger.warning(
            "Turn failed conversation=%s turn=%s: %s", state.conversation_id, state.turn, description
        )
        try:
            await self.emitter.cancel(PendingHandle.for_state(state), description, error)
        except Exception as exc:  # noqa: BLE001
            logger.error("Pending cancel failed conversation=%s: %s", state.conversation_id, exc)
        await self.discard(state.conversation_id)

    async def discard(self, conversation_id: str) -> None:
        await self.timeouts.clear(conversation_id)
        await self.state_store.delete(conversation_id)
