from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import uuid6

from core.errors import normalize_error
from core.protocol import PendingEvent
from core.subject import turn_event_subject
from core.turn_state import TurnResult, TurnState

logger = logging.getLogger(__name__)

PENDING_SUFFIX = "pending"
RESULT_SUFFIX = "result"
FAILED_SUFFIX = "failed"


@dataclass(frozen=True)
class PendingHandle:
    pending_id: str
    conversation_id: str
    origin_id: str

    @classmethod
    def new(cls, conversation_id: str, origin_id: str) -> "PendingHandle":
        return cls(pending_id=uuid6.uuid7().hex, conversation_id=conversation_id, origin_id=origin_id)

    @classmethod
    def for_state(cls, state: TurnState) -> "PendingHandle":
        return cls(pending_id=state.pending_id, conversation_id=state.conversation_id, origin_id=state.origin_id)


class PendingEmitter:
    """
    Publishes the caller-facing lifecycle of a pending turn.

    Status updates are advisory: a failed publish is logged and dropped.
    Completion and cancellation propagate publish errors.
    """

    def __init__(self, nats: Any, *, headers: Optional[Dict[str, str]] = None):
        self.nats = nats
        self.headers = dict(headers or {})

    async def _publish(self, handle: PendingHandle, suffix: str, event: PendingEvent) -> None:
        subject = turn_event_subject(handle.conversation_id, suffix)
        await self.nats.publish_event(subject, event.model_dump(mode="json"), headers=dict(self.headers))

    def _event(self, handle: PendingHandle, status: str, **fields: Any) -> PendingEvent:
        return PendingEvent(
            pending_id=handle.pending_id,
            conversation_id=handle.conversation_id,
            origin_id=handle.origin_id,
            status=status,
            **fields,
        )

    async def create(self, handle: PendingHandle, description: str) -> None:
        await self.update(handle, description)

    async def update(self, handle: PendingHandle, description: str) -> None:
        try:
            await self._publish(handle, PENDING_SUFFIX, self._event(handle, "pending", description=description))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Pending update dropped pending=%s: %s", handle.pending_id, exc)

    async def complete(self, handle: PendingHandle, result: TurnResult) -> None:
        await self._publish(handle, RESULT_SUFFIX, self._event(handle, "completed", result=result.to_payload()))

    async def cancel(self, handle: PendingHandle, description: str, error: Any = None) -> None:
        payload = normalize_error(error, source="turn_worker") if error is not None else None
        await self._publish(
            handle,
            FAILED_SUFFIX,
            self._event(handle, "cancelled", description=description, error=payload),
        )
