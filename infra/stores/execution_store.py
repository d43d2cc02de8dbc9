from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .kv_base import BaseKvStore, kv_key

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_DONE = "done"


def build_execution_key(conversation_id: str, turn: int, tool_call_id: str) -> str:
    """Opaque handle given to a tool executor for one dispatched call."""
    identity = json.dumps([conversation_id, int(turn), tool_call_id], ensure_ascii=False)
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


class ToolExecution(BaseModel):
    model_config = ConfigDict(extra="ignore")

    execution_key: str
    conversation_id: str
    tool_call_id: str
    turn: int
    tool_name: str
    origin_id: str
    reply_subject: str
    status: str = STATUS_RUNNING
    created_at: float = Field(default_factory=time.time)


class ToolExecutionStore(BaseKvStore):
    """
    Executor-side record of dispatched calls, keyed by execution key.

    Entries expire with the bucket TTL; a result submitted after expiry has
    nowhere to go and is dropped.
    """

    async def record(self, execution: ToolExecution) -> bool:
        """False when the same call was already recorded (redelivered dispatch)."""
        return await self._create_json(kv_key(execution.execution_key), execution.model_dump(mode="json"))

    async def get(self, execution_key: str) -> Optional[ToolExecution]:
        raw = await self._get_json(kv_key(execution_key))
        if raw is None:
            return None
        return ToolExecution.model_validate(raw)

    async def mark_done(self, execution: ToolExecution) -> None:
        done = execution.model_copy(update={"status": STATUS_DONE})
        await self._put_json(kv_key(execution.execution_key), done.model_dump(mode="json"))
