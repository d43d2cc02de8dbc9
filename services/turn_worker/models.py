from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from core.turn_state import TurnResult


@dataclass(frozen=True)
class TurnFinalized:
    conversation_id: str
    result: TurnResult


@dataclass(frozen=True)
class TurnSuspended:
    conversation_id: str
    turn: int
    tool_call_ids: List[str]


TurnOutcome = Union[TurnFinalized, TurnSuspended]


@dataclass(frozen=True)
class AggregationResult:
    complete: bool
    results: Dict[str, Any] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)


class ResultDisposition(str, Enum):
    # race guard held; nothing was touched, redeliver later
    DEFERRED = "deferred"
    # no suspended turn matches this result
    STALE = "stale"
    WAITING = "waiting"
    RESUMED = "resumed"
    # another path already resumed this turn
    DUPLICATE = "duplicate"


class TimeoutDisposition(str, Enum):
    BUSY = "busy"
    NO_STATE = "no_state"
    TIMED_OUT = "timed_out"
    RESUMED = "resumed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 10.0


@dataclass(frozen=True)
class ModelSettings:
    api_key: Optional[str] = None
    stream: bool = True
    mcp_beta: str = "mcp-client-2025-04-04"
