"""In-memory stand-ins for JetStream KV, the NATS publisher and the model."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from nats.js.errors import BucketNotFoundError, KeyNotFoundError, KeyWrongLastSequenceError, NoKeysError

from core.model_response import ModelResponse
from core.subject import tool_result_subject
from core.turn_state import TokenUsage
from infra.event_emitter import PendingEmitter
from infra.stores import ToolExecutionStore, ToolResultStore, TurnStateStore
from infra.tool_dispatch import ToolDispatcher
from infra.worker_helpers import RaceGuard, TimeoutScheduler
from services.turn_worker.models import ModelSettings, RetrySettings
from services.turn_worker.result_handler import ToolResultHandler
from services.turn_worker.timeout_reconciler import TimeoutReconciler
from services.turn_worker.turn_executor import TurnExecutor


@dataclass
class FakeEntry:
    key: str
    value: bytes
    revision: int


class FakeKV:
    def __init__(self, bucket: str, ttl: Optional[int] = None) -> None:
        self.bucket = bucket
        self.ttl = ttl
        self.ops: List[Tuple[str, str]] = []
        self._data: Dict[str, FakeEntry] = {}
        self._revision = 0

    async def get(self, key: str) -> FakeEntry:
        entry = self._data.get(key)
        if entry is None:
            raise KeyNotFoundError()
        return entry

    async def put(self, key: str, value: bytes) -> int:
        self._revision += 1
        self._data[key] = FakeEntry(key, value, self._revision)
        self.ops.append(("put", key))
        return self._revision

    async def create(self, key: str, value: bytes) -> int:
        if key in self._data:
            raise KeyWrongLastSequenceError()
        self._revision += 1
        self._data[key] = FakeEntry(key, value, self._revision)
        self.ops.append(("create", key))
        return self._revision

    async def delete(self, key: str, last: Optional[int] = None) -> bool:
        if last is not None:
            entry = self._data.get(key)
            if entry is None or entry.revision != last:
                raise KeyWrongLastSequenceError()
        self._data.pop(key, None)
        self.ops.append(("delete", key))
        return True

    async def keys(self) -> List[str]:
        if not self._data:
            raise NoKeysError()
        return list(self._data)

    def mutations(self) -> int:
        return len(self.ops)


class FakeJetStream:
    def __init__(self) -> None:
        self.buckets: Dict[str, FakeKV] = {}

    async def key_value(self, bucket: str) -> FakeKV:
        if bucket not in self.buckets:
            raise BucketNotFoundError()
        return self.buckets[bucket]

    async def create_key_value(self, bucket: str, history: int = 1, ttl: Optional[int] = None) -> FakeKV:
        kv = FakeKV(bucket, ttl)
        self.buckets[bucket] = kv
        return kv


class FakeNATS:
    def __init__(self) -> None:
        self.js = FakeJetStream()
        self.calls: List[Dict[str, Any]] = []

    async def publish_event(self, subject, payload, headers=None, **kwargs):
        self.calls.append({"subject": subject, "payload": payload, "headers": headers or {}})

    def events(self, suffix: str) -> List[Dict[str, Any]]:
        return [c["payload"] for c in self.calls if c["subject"].startswith("dt.v1.evt.turn.") and c["subject"].endswith(f".{suffix}")]

    def dispatches(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if ".cmd.tool." in c["subject"]]

    def total_mutations(self) -> int:
        return sum(kv.mutations() for kv in self.js.buckets.values())


class ScriptedLLM:
    """Replays responses (or raises exceptions) in order and records every request."""

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.requests: List[Any] = []

    async def chat(self, request, on_progress=None):
        self.requests.append(request)
        if not self.script:
            raise AssertionError("model called more often than scripted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def text_response(text: str, input_tokens: int = 5, output_tokens: int = 3) -> ModelResponse:
    return ModelResponse(
        message={"role": "assistant", "content": [{"type": "text", "text": text}]},
        stop_reason="end_turn",
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def tool_use_response(calls: Sequence[Tuple[str, str, Dict[str, Any]]], text: Optional[str] = None) -> ModelResponse:
    blocks: List[Dict[str, Any]] = []
    if text:
        blocks.append({"type": "text", "text": text})
    for call_id, name, arguments in calls:
        blocks.append({"type": "tool_use", "id": call_id, "name": name, "input": arguments})
    return ModelResponse(
        message={"role": "assistant", "content": blocks},
        stop_reason="tool_use",
        usage=TokenUsage(input_tokens=7, output_tokens=2),
    )


def json_response(obj: Dict[str, Any], input_tokens: int, output_tokens: int) -> ModelResponse:
    return ModelResponse(
        message={
            "role": "assistant",
            "content": [{"type": "tool_use", "id": f"toolu_json_{input_tokens}", "name": "json", "input": obj}],
        },
        stop_reason="tool_use",
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


@dataclass
class Harness:
    nats: FakeNATS
    llm: ScriptedLLM
    state_store: TurnStateStore
    results: ToolResultStore
    guard: RaceGuard
    timeouts: TimeoutScheduler
    executions: ToolExecutionStore
    executor: TurnExecutor
    handler: ToolResultHandler
    reconciler: TimeoutReconciler
    sleeps: List[float] = field(default_factory=list)

    async def fire_due(self, after_seconds: float = 121.0) -> List[Any]:
        dispositions = []
        for handle in await self.timeouts.due(now=time.time() + after_seconds):
            if await self.timeouts.claim(handle):
                dispositions.append(await self.reconciler.on_timeout(handle.conversation_id))
        return dispositions


def build_harness(
    *script: Any,
    max_attempts: int = 3,
    preserve_state: bool = False,
) -> Harness:
    nats = FakeNATS()
    llm = ScriptedLLM(*script)
    state_store = TurnStateStore(nats, bucket_name="dt_turn_state", ttl_s=86400)
    results = ToolResultStore(nats, bucket_name="dt_turn_results", ttl_s=300)
    guard = RaceGuard(nats, bucket_name="dt_turn_locks", ttl_s=300)
    timeouts = TimeoutScheduler(nats, bucket_name="dt_turn_timers", delay_s=120.0)
    executions = ToolExecutionStore(nats, bucket_name="dt_tool_exec", ttl_s=3600)
    sleeps: List[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    executor = TurnExecutor(
        llm=llm,
        emitter=PendingEmitter(nats),
        state_store=state_store,
        timeouts=timeouts,
        dispatcher=ToolDispatcher(nats, reply_subject=tool_result_subject("turn_worker")),
        retry=RetrySettings(max_attempts=max_attempts, backoff_base_seconds=1.0, backoff_max_seconds=10.0),
        model=ModelSettings(api_key="sk-test", stream=False),
        sleep=fake_sleep,
    )
    handler = ToolResultHandler(
        executor=executor, state_store=state_store, results=results, guard=guard, timeouts=timeouts
    )
    reconciler = TimeoutReconciler(
        executor=executor, state_store=state_store, results=results, guard=guard, preserve_state=preserve_state
    )
    return Harness(
        nats=nats,
        llm=llm,
        state_store=state_store,
        results=results,
        guard=guard,
        timeouts=timeouts,
        executions=executions,
        executor=executor,
        handler=handler,
        reconciler=reconciler,
        sleeps=sleeps,
    )
