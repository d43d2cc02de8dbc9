from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import uuid6

from infra.stores.kv_base import BaseKvStore, key_segments, kv_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeoutHandle:
    conversation_id: str
    timer_id: str
    fire_at: float
    revision: Optional[int] = None

    def is_due(self, now: float) -> bool:
        return self.fire_at <= now


class TimeoutScheduler(BaseKvStore):
    """
    Durable wake-ups, at most one per conversation.

    Registering again overwrites the previous handle. Any worker may fire a due
    handle; `claim` makes sure only one of them does.
    """

    def __init__(self, nats_client, *, bucket_name: str, delay_s: float):
        super().__init__(nats_client, bucket_name=bucket_name)
        self.delay_s = float(delay_s)

    async def set(self, conversation_id: str, *, delay_s: Optional[float] = None, now: Optional[float] = None) -> TimeoutHandle:
        fire_at = (now if now is not None else time.time()) + (self.delay_s if delay_s is None else float(delay_s))
        handle = TimeoutHandle(conversation_id=conversation_id, timer_id=uuid6.uuid7().hex, fire_at=fire_at)
        revision = await self._put_json(
            kv_key(conversation_id),
            {"conversation_id": conversation_id, "timer_id": handle.timer_id, "fire_at": fire_at},
        )
        logger.debug("Timeout set conversation=%s fire_at=%.3f", conversation_id, fire_at)
        return TimeoutHandle(conversation_id, handle.timer_id, fire_at, revision)

    async def clear(self, conversation_id: str) -> None:
        await self._delete(kv_key(conversation_id))

    async def get(self, conversation_id: str) -> Optional[TimeoutHandle]:
        found = await self._get_entry(kv_key(conversation_id))
        if not found:
            return None
        raw, revision = found
        return TimeoutHandle(
            conversation_id=str(raw.get("conversation_id") or conversation_id),
            timer_id=str(raw.get("timer_id") or ""),
            fire_at=float(raw.get("fire_at") or 0.0),
            revision=revision,
        )

    async def due(self, now: Optional[float] = None) -> List[TimeoutHandle]:
        now = time.time() if now is None else now
        handles: List[TimeoutHandle] = []
        for key in await self._keys():
            found = await self._get_entry(key)
            if not found:
                continue
            raw, revision = found
            handle = TimeoutHandle(
                conversation_id=str(raw.get("conversation_id") or key_segments(key)[0]),
                timer_id=str(raw.get("timer_id") or ""),
                fire_at=float(raw.get("fire_at") or 0.0),
                revision=revision,
            )
            if handle.is_due(now):
                handles.append(handle)
        return sorted(handles, key=lambda h: h.fire_at)

    async def claim(self, handle: TimeoutHandle) -> bool:
        """Remove a due handle unless it was superseded or claimed elsewhere."""
        if handle.revision is None:
            return False
        return await self._delete(kv_key(handle.conversation_id), last=handle.revision)
