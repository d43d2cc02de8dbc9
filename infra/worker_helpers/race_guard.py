from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from infra.stores.kv_base import BaseKvStore, kv_key

logger = logging.getLogger(__name__)


class RaceGuard(BaseKvStore):
    """
    Conversation-scoped advisory lock taken by the timeout path.

    The lock bucket TTL bounds how long an abandoned lock can block the
    result path.
    """

    async def is_held(self, conversation_id: str) -> bool:
        return await self._get_entry(kv_key(conversation_id)) is not None

    async def acquire(self, conversation_id: str) -> bool:
        return await self._create_json(kv_key(conversation_id), {"acquired_at": time.time()})

    async def release(self, conversation_id: str) -> None:
        await self._delete(kv_key(conversation_id))

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[bool]:
        """Yield whether the lock was acquired; an acquired lock is released on every exit."""
        acquired = await self.acquire(conversation_id)
        if not acquired:
            logger.info("Race guard already held conversation=%s", conversation_id)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.release(conversation_id)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Race guard release failed conversation=%s: %s", conversation_id, exc)
