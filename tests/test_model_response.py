import pytest

from core.errors import MissingTextError
from core.model_response import (
    EndTurnText,
    EndTurnWithSchema,
    ModelResponse,
    ToolUseRequested,
    UnexpectedStop,
    classify_response,
    strip_reasoning,
)


def _response(blocks, stop_reason="end_turn") -> ModelResponse:
    return ModelResponse(message={"role": "assistant", "content": blocks}, stop_reason=stop_reason)


def test_end_turn_uses_last_text_block() -> None:
    response = _response(
        [
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "first"},
            {"type": "text", "text": "second"},
        ]
    )

    assert classify_response(response) == EndTurnText(text="second")


def test_end_turn_with_schema() -> None:
    schema = {"type": "object"}

    kind = classify_response(_response([{"type": "text", "text": "draft"}]), schema)

    assert kind == EndTurnWithSchema(text="draft", schema=schema)


def test_end_turn_without_text_raises() -> None:
    with pytest.raises(MissingTextError):
        classify_response(_response([{"type": "text", "text": ""}]))


def test_tool_use_collects_calls_in_order() -> None:
    response = _response(
        [
            {"type": "text", "text": "checking"},
            {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": "a"}},
            {"type": "tool_use", "id": "t2", "name": "lookup", "input": None},
        ],
        stop_reason="tool_use",
    )

    kind = classify_response(response)

    assert isinstance(kind, ToolUseRequested)
    assert [(c.id, c.input) for c in kind.tool_calls] == [("t1", {"q": "a"}), ("t2", {})]


def test_other_stop_reasons_are_unexpected() -> None:
    assert classify_response(_response([], stop_reason="max_tokens")) == UnexpectedStop(stop_reason="max_tokens")


def test_string_content_counts_as_text() -> None:
    response = ModelResponse(message={"role": "assistant", "content": "plain"}, stop_reason="end_turn")

    assert classify_response(response) == EndTurnText(text="plain")


def test_strip_reasoning_drops_thinking_and_empty_messages() -> None:
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": [{"type": "thinking", "thinking": "..."}]},
        {
            "role": "assistant",
            "content": [
                {"type": "redacted_thinking", "data": "x"},
                {"type": "text", "text": "hello"},
            ],
        },
    ]

    stripped = strip_reasoning(messages)

    assert stripped == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": [{"type": "text", "text": "hello"}]},
    ]
    assert len(messages[2]["content"]) == 2
