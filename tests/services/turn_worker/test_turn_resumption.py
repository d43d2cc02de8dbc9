import pytest

from core.errors import ObjectGenerationError, UpstreamError
from core.protocol import GenerateRequest
from core.turn_state import TokenUsage, ToolDefinition, TurnParams, TurnState
from services.turn_worker.aggregator import ResultAggregator
from services.turn_worker.models import ResultDisposition, TimeoutDisposition, TurnFinalized, TurnSuspended
from services.turn_worker.resume import build_tool_result_message

from tests.services.turn_worker._fakes import (
    build_harness,
    json_response,
    text_response,
    tool_use_response,
)

LOOKUP = ToolDefinition(
    block_id="blk_lookup",
    name="lookup",
    input_schema={"type": "object", "properties": {"q": {"type": "string"}}},
)


def _request(prompt: str = "What is x?") -> GenerateRequest:
    return GenerateRequest(conversation_id="conv_1", prompt=prompt, tool_definitions=[LOOKUP])


def _params(**kwargs) -> TurnParams:
    return TurnParams(model="claude-test", thinking=False, **kwargs)


@pytest.mark.asyncio
async def test_single_tool_round_trip_resumes_with_tool_result() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "x"})]),
        text_response("The answer is 42", 9, 5),
    )

    suspended = await h.executor.start_turn(_request(), _params())
    assert isinstance(suspended, TurnSuspended)
    assert suspended.turn == 1
    dispatch = h.nats.dispatches()[0]["payload"]
    assert dispatch["parameters"] == {"q": "x"}

    disposition = await h.handler.on_tool_result("conv_1", "toolu_1", "42", turn=dispatch["turn"])

    assert disposition is ResultDisposition.RESUMED
    resumed_request = h.llm.requests[1]
    assert resumed_request.messages[-1] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "42"}],
    }
    assert resumed_request.messages[-2]["role"] == "assistant"
    result = h.nats.events("result")[0]["result"]
    assert result["text"] == "The answer is 42"
    assert "Received results from tool(s)..." in [e["description"] for e in h.nats.events("pending")]
    assert await h.state_store.load("conv_1") is None
    assert await h.timeouts.get("conv_1") is None


@pytest.mark.asyncio
async def test_non_string_results_are_serialized() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "x"})]),
        text_response("done"),
    )
    await h.executor.start_turn(_request(), _params())

    await h.handler.on_tool_result("conv_1", "toolu_1", {"value": 42})

    block = h.llm.requests[1].messages[-1]["content"][0]
    assert block["content"] == '{"value": 42}'


@pytest.mark.asyncio
async def test_partial_results_wait_and_rearm_timeout() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"}), ("toolu_2", "lookup", {"q": "b"})]),
        text_response("both done"),
    )
    await h.executor.start_turn(_request(), _params())
    first_timer = await h.timeouts.get("conv_1")

    assert await h.handler.on_tool_result("conv_1", "toolu_2", "b") is ResultDisposition.WAITING
    rearmed = await h.timeouts.get("conv_1")
    assert rearmed is not None and rearmed.timer_id != first_timer.timer_id
    assert len(h.llm.requests) == 1

    assert await h.handler.on_tool_result("conv_1", "toolu_1", "a") is ResultDisposition.RESUMED
    blocks = h.llm.requests[1].messages[-1]["content"]
    assert [b["tool_use_id"] for b in blocks] == ["toolu_1", "toolu_2"]


@pytest.mark.asyncio
async def test_duplicate_result_is_idempotent() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"}), ("toolu_2", "lookup", {"q": "b"})]),
        text_response("done"),
    )
    await h.executor.start_turn(_request(), _params())

    assert await h.handler.on_tool_result("conv_1", "toolu_1", "first") is ResultDisposition.WAITING
    assert await h.handler.on_tool_result("conv_1", "toolu_1", "second") is ResultDisposition.WAITING
    fragment = await h.results.get("conv_1", 1, "toolu_1")
    assert fragment.result == "first"

    assert await h.handler.on_tool_result("conv_1", "toolu_2", "b") is ResultDisposition.RESUMED
    assert await h.handler.on_tool_result("conv_1", "toolu_2", "b") is ResultDisposition.STALE
    assert len(h.llm.requests) == 2
    assert len(h.nats.events("result")) == 1


@pytest.mark.asyncio
async def test_already_claimed_resumption_is_not_repeated() -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]))
    await h.executor.start_turn(_request(), _params())
    state = await h.state_store.load("conv_1")
    assert await h.results.claim_resumption("conv_1", state.turn, pending_id=state.pending_id)

    disposition = await h.handler.on_tool_result("conv_1", "toolu_1", "a")

    assert disposition is ResultDisposition.DUPLICATE
    assert len(h.llm.requests) == 1


@pytest.mark.asyncio
async def test_results_for_unknown_ids_or_other_turns_are_stale() -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]))
    await h.executor.start_turn(_request(), _params())

    assert await h.handler.on_tool_result("conv_1", "toolu_zzz", "a") is ResultDisposition.STALE
    assert await h.handler.on_tool_result("conv_1", "toolu_1", "a", turn=0) is ResultDisposition.STALE
    assert await h.handler.on_tool_result("conv_other", "toolu_1", "a") is ResultDisposition.STALE
    assert await h.results.get("conv_1", 1, "toolu_1") is None


@pytest.mark.asyncio
async def test_held_guard_defers_without_mutation() -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]))
    await h.executor.start_turn(_request(), _params())
    assert await h.guard.acquire("conv_1")
    before = h.nats.total_mutations()
    published = len(h.nats.calls)

    disposition = await h.handler.on_tool_result("conv_1", "toolu_1", "a")

    assert disposition is ResultDisposition.DEFERRED
    assert h.nats.total_mutations() == before
    assert len(h.nats.calls) == published
    assert len(h.llm.requests) == 1


@pytest.mark.asyncio
async def test_reconciler_releases_guard_when_aggregation_fails(monkeypatch) -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]))
    await h.executor.start_turn(_request(), _params())

    async def broken_load(*args, **kwargs):
        raise RuntimeError("kv unavailable")

    monkeypatch.setattr(h.results, "load", broken_load)

    with pytest.raises(RuntimeError):
        await h.reconciler.on_timeout("conv_1")

    assert not await h.guard.is_held("conv_1")


@pytest.mark.asyncio
async def test_reconciler_is_busy_while_guard_is_held() -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]))
    await h.executor.start_turn(_request(), _params())
    await h.guard.acquire("conv_1")

    assert await h.reconciler.on_timeout("conv_1") is TimeoutDisposition.BUSY
    assert await h.guard.is_held("conv_1")
    assert h.nats.events("failed") == []


@pytest.mark.asyncio
async def test_timeout_cancels_turn_and_late_result_is_ignored() -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]))
    await h.executor.start_turn(_request(), _params())

    assert await h.fire_due(after_seconds=60) == []
    assert await h.fire_due(after_seconds=121) == [TimeoutDisposition.TIMED_OUT]

    failed = h.nats.events("failed")
    assert len(failed) == 1
    assert failed[0]["description"] == "Timeout"
    assert failed[0]["error"]["code"] == "tool_timeout"
    assert failed[0]["error"]["detail"]["missing"] == ["toolu_1"]
    assert await h.state_store.load("conv_1") is None
    assert not await h.guard.is_held("conv_1")

    assert await h.handler.on_tool_result("conv_1", "toolu_1", "late") is ResultDisposition.STALE
    assert len(h.llm.requests) == 1
    assert h.nats.events("result") == []


@pytest.mark.asyncio
async def test_timeout_can_preserve_state_without_resuming_it() -> None:
    h = build_harness(tool_use_response([("toolu_1", "lookup", {"q": "a"})]), preserve_state=True)
    await h.executor.start_turn(_request(), _params())

    assert await h.reconciler.on_timeout("conv_1") is TimeoutDisposition.TIMED_OUT

    preserved = await h.state_store.load("conv_1")
    assert preserved is not None and preserved.tool_call_ids == []
    assert await h.handler.on_tool_result("conv_1", "toolu_1", "late") is ResultDisposition.STALE
    assert await h.reconciler.on_timeout("conv_1") is TimeoutDisposition.NO_STATE


@pytest.mark.asyncio
async def test_timeout_resumes_when_all_results_are_already_stored() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"})]),
        text_response("recovered"),
    )
    await h.executor.start_turn(_request(), _params())
    # stored by a handler that died before resuming
    await h.results.store("conv_1", 1, "toolu_1", "a")

    assert await h.reconciler.on_timeout("conv_1") is TimeoutDisposition.RESUMED
    assert h.nats.events("result")[0]["result"]["text"] == "recovered"
    assert not await h.guard.is_held("conv_1")


@pytest.mark.asyncio
async def test_resumed_turn_failure_is_reported_not_raised() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"})]),
        UpstreamError("bad request"),
    )
    await h.executor.start_turn(_request(), _params())

    assert await h.handler.on_tool_result("conv_1", "toolu_1", "a") is ResultDisposition.RESUMED
    assert h.nats.events("failed")[0]["description"] == "API call failed: bad request"
    assert await h.state_store.load("conv_1") is None


@pytest.mark.asyncio
async def test_turn_suspends_twice_before_answering() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"})]),
        tool_use_response([("toolu_2", "lookup", {"q": "b"})]),
        text_response("a and b"),
    )
    first = await h.executor.start_turn(_request(), _params())
    assert first.turn == 1

    assert await h.handler.on_tool_result("conv_1", "toolu_1", "A", turn=1) is ResultDisposition.RESUMED

    state = await h.state_store.load("conv_1")
    assert state.turn == 2
    assert state.tool_call_ids == ["toolu_2"]
    assert [m["role"] for m in state.messages] == ["user", "assistant", "user", "assistant"]
    assert [d["payload"]["turn"] for d in h.nats.dispatches()] == [1, 2]

    await h.results.store("conv_1", 1, "toolu_2", "from turn 1")
    assert not (await ResultAggregator(h.results).aggregate("conv_1", 2, ["toolu_2"])).complete
    assert await h.handler.on_tool_result("conv_1", "toolu_2", "B", turn=1) is ResultDisposition.STALE
    assert len(h.llm.requests) == 2

    assert await h.handler.on_tool_result("conv_1", "toolu_2", "B", turn=2) is ResultDisposition.RESUMED

    final_request = h.llm.requests[2]
    assert len(final_request.messages) == 5
    assert final_request.messages[:4] == state.messages
    assert final_request.messages[-1]["content"] == [{"type": "tool_result", "tool_use_id": "toolu_2", "content": "B"}]
    results = h.nats.events("result")
    assert len(results) == 1
    assert results[0]["result"]["text"] == "a and b"
    assert await h.state_store.load("conv_1") is None


@pytest.mark.asyncio
async def test_new_request_cancels_suspended_turn() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"})]),
        text_response("fresh answer"),
    )
    await h.executor.start_turn(_request("first"), _params())
    superseded = await h.state_store.load("conv_1")

    outcome = await h.executor.start_turn(_request("second"), _params())

    assert isinstance(outcome, TurnFinalized)
    failed = h.nats.events("failed")
    assert [e["pending_id"] for e in failed] == [superseded.pending_id]
    assert failed[0]["description"] == "Superseded by a new turn"
    assert failed[0]["error"]["code"] == "superseded"
    completed = h.nats.events("result")
    assert len(completed) == 1
    assert completed[0]["pending_id"] != superseded.pending_id

    assert await h.fire_due() == []
    assert await h.handler.on_tool_result("conv_1", "toolu_1", "late", turn=1) is ResultDisposition.STALE
    assert len(h.llm.requests) == 2


@pytest.mark.asyncio
async def test_new_request_after_timeout_does_not_cancel_twice() -> None:
    h = build_harness(
        tool_use_response([("toolu_1", "lookup", {"q": "a"})]),
        text_response("fresh answer"),
        preserve_state=True,
    )
    await h.executor.start_turn(_request("first"), _params())
    assert await h.reconciler.on_timeout("conv_1") is TimeoutDisposition.TIMED_OUT

    await h.executor.start_turn(_request("second"), _params())

    assert [e["description"] for e in h.nats.events("failed")] == ["Timeout"]
    assert h.nats.events("result")[0]["result"]["text"] == "fresh answer"


SCHEMA = {
    "type": "object",
    "properties": {"answer": {"type": "integer"}},
    "required": ["answer"],
}


@pytest.mark.asyncio
async def test_object_extraction_retries_until_schema_matches() -> None:
    h = build_harness(
        text_response("The answer is 42", 5, 3),
        json_response({"answer": "forty-two"}, 2, 1),
        json_response({"answer": 42}, 4, 2),
    )

    outcome = await h.executor.start_turn(_request(), _params(output_schema=SCHEMA, max_retries=2))

    assert isinstance(outcome, TurnFinalized)
    assert outcome.result.object == {"answer": 42}
    assert outcome.result.text == "The answer is 42"
    assert outcome.result.usage == TokenUsage(input_tokens=11, output_tokens=6)
    object_request = h.llm.requests[1]
    assert object_request.tool_choice == {"name": "json"}
    assert object_request.tools[0]["input_schema"] == SCHEMA
    assert object_request.messages[-1]["role"] == "assistant"
    descriptions = [e["description"] for e in h.nats.events("pending")]
    assert "Generating object..." in descriptions
    assert "Generating object... (retry 2)" in descriptions


@pytest.mark.asyncio
async def test_object_extraction_gives_up_after_max_retries() -> None:
    h = build_harness(
        text_response("The answer is 42"),
        json_response({"answer": "nope"}, 1, 1),
    )

    with pytest.raises(ObjectGenerationError):
        await h.executor.start_turn(_request(), _params(output_schema=SCHEMA, max_retries=1))

    failed = h.nats.events("failed")[0]
    assert failed["description"] == "Failed to generate object"
    assert h.nats.events("result") == []


@pytest.mark.asyncio
async def test_object_extraction_surfaces_last_request_error() -> None:
    h = build_harness(
        text_response("The answer is 42"),
        UpstreamError("object call rejected"),
        json_response({"answer": "nope"}, 1, 1),
    )

    with pytest.raises(UpstreamError):
        await h.executor.start_turn(_request(), _params(output_schema=SCHEMA, max_retries=2))

    assert h.nats.events("failed")[0]["description"] == "Object generation failed: object call rejected"


def test_tool_result_message_keeps_dispatch_order_and_skips_missing() -> None:
    state = TurnState(
        conversation_id="conv_1",
        origin_id="conv_1",
        pending_id="p1",
        tool_call_ids=["a", "b", "c"],
        turn=1,
        params=_params(),
    )

    message = build_tool_result_message(state, {"c": "3", "a": ["x"]})

    assert message == {
        "role": "user",
        "content": [
            {"type": "tool_result", "tool_use_id": "a", "content": '["x"]'},
            {"type": "tool_result", "tool_use_id": "c", "content": "3"},
        ],
    }
