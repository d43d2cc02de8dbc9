"""Durable storage on JetStream KV."""

from .execution_store import ToolExecution, ToolExecutionStore, build_execution_key
from .kv_base import BaseKvStore, key_segments, kv_key
from .turn_store import ToolResultStore, TurnStateStore

__all__ = [
    "BaseKvStore",
    "build_execution_key",
    "key_segments",
    "kv_key",
    "ToolExecution",
    "ToolExecutionStore",
    "ToolResultStore",
    "TurnStateStore",
]
