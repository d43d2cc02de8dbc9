from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Optional

from core.turn_state import ToolResultFragment, TurnState
from infra.stores.kv_base import BaseKvStore, key_segments, kv_key

logger = logging.getLogger(__name__)


class TurnStateStore(BaseKvStore):
    """Suspended turns, one document per conversation."""

    async def save(self, state: TurnState) -> None:
        await self._put_json(kv_key(state.conversation_id), state.model_dump(mode="json"))

    async def load(self, conversation_id: str) -> Optional[TurnState]:
        raw = await self._get_json(kv_key(conversation_id))
        if raw is None:
            return None
        return TurnState.model_validate(raw)

    async def delete(self, conversation_id: str) -> None:
        await self._delete(kv_key(conversation_id))

    async def list_conversations(self) -> list[str]:
        return [key_segments(key)[0] for key in await self._keys()]


class ToolResultStore(BaseKvStore):
    """
    Tool result fragments keyed by (conversation, turn, tool call).

    Fragments are write-once and expire with the bucket TTL. The same bucket
    holds the per-turn resumption claim.
    """

    @staticmethod
    def fragment_key(conversation_id: str, turn: int, tool_call_id: str) -> str:
        return kv_key("result", conversation_id, turn, tool_call_id)

    @staticmethod
    def claim_key(conversation_id: str, pending_id: str, turn: int) -> str:
        return kv_key("resume", conversation_id, pending_id, turn)

    async def store(self, conversation_id: str, turn: int, tool_call_id: str, result: Any) -> bool:
        """Returns False when a fragment for this triple was already stored."""
        fragment = ToolResultFragment(tool_call_id=tool_call_id, turn=turn, result=result)
        created = await self._create_json(
            self.fragment_key(conversation_id, turn, tool_call_id), fragment.model_dump(mode="json")
        )
        if not created:
            logger.info(
                "Duplicate tool result ignored conversation=%s turn=%s tool_call_id=%s",
                conversation_id,
                turn,
                tool_call_id,
            )
        return created

    async def get(self, conversation_id: str, turn: int, tool_call_id: str) -> Optional[ToolResultFragment]:
        raw = await self._get_json(self.fragment_key(conversation_id, turn, tool_call_id))
        if raw is None:
            return None
        fragment = ToolResultFragment.model_validate(raw)
        if fragment.turn != turn or fragment.tool_call_id != tool_call_id:
            return None
        return fragment

    async def load(
        self, conversation_id: str, turn: int, tool_call_ids: Iterable[str]
    ) -> Dict[str, ToolResultFragment]:
        found: Dict[str, ToolResultFragment] = {}
        for tool_call_id in tool_call_ids:
            fragment = await self.get(conversation_id, turn, tool_call_id)
            if fragment is not None:
                found[tool_call_id] = fragment
        return found

    async def claim_resumption(self, conversation_id: str, turn: int, *, pending_id: str) -> bool:
        """Exactly one caller per (conversation, pending operation, turn) gets True."""
        return await self._create_json(
            self.claim_key(conversation_id, pending_id, turn), {"claimed_at": time.time()}
        )
