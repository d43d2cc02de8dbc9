from __future__ import annotations

from typing import Sequence

from infra.stores.turn_store import ToolResultStore
from services.turn_worker.models import AggregationResult


class ResultAggregator:
    """Read-only view over the fragments stored for one (conversation, turn)."""

    def __init__(self, results: ToolResultStore):
        self.results = results

    async def aggregate(self, conversation_id: str, turn: int, expected_ids: Sequence[str]) -> AggregationResult:
        fragments = await self.results.load(conversation_id, turn, expected_ids)
        collected = {tool_call_id: fragment.result for tool_call_id, fragment in fragments.items()}
        missing = [tool_call_id for tool_call_id in expected_ids if tool_call_id not in collected]
        return AggregationResult(complete=not missing, results=collected, missing=missing)
