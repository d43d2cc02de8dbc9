from __future__ import annotations

from types import SimpleNamespace

import pytest

from core.errors import UpstreamError, UpstreamTransientError
from core.llm import LLMConfig, LLMRequest
from core.model_response import ModelResponse
from infra.llm_gateway import LLMService, LLMWrapper, is_transient_error


class _ToolCall:
    def __init__(self, call_id: str, name: str, arguments: str):
        self._data = {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}

    def model_dump(self):
        return dict(self._data)


class _FakeStream:
    def __init__(self, chunks):
        self._chunks = iter(chunks)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._chunks)
        except StopIteration as exc:
            raise StopAsyncIteration from exc

    async def aclose(self):
        self.closed = True


def _chunk(*, content=None, reasoning_content=None, tool_name=None, finish_reason=None, usage=None):
    tool_calls = [SimpleNamespace(function=SimpleNamespace(name=tool_name))] if tool_name else None
    delta = SimpleNamespace(content=content, tool_calls=tool_calls, reasoning_content=reasoning_content)
    choices = [SimpleNamespace(delta=delta, finish_reason=finish_reason)] if usage is None else []
    return SimpleNamespace(choices=choices, usage=usage)


def _request(stream: bool) -> LLMRequest:
    return LLMRequest(
        messages=[{"role": "user", "content": "hi"}],
        config=LLMConfig(model="anthropic/claude-test", stream=stream),
    )


@pytest.mark.asyncio
async def test_non_stream_tool_call_becomes_tool_use_response(monkeypatch):
    async def fake_acompletion(**params):
        msg = SimpleNamespace(
            content="Checking.",
            tool_calls=[_ToolCall("call_1", "lookup", '{"q": "x"}')],
            role="assistant",
            reasoning_content=None,
        )
        return SimpleNamespace(
            choices=[SimpleNamespace(message=msg, finish_reason="tool_calls")],
            usage={"prompt_tokens": 10, "completion_tokens": 2},
        )

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    resp = await LLMService().completion(_request(stream=False))

    assert resp.stop_reason == "tool_use"
    assert resp.usage.input_tokens == 10
    assert resp.usage.output_tokens == 2
    assert resp.blocks == [
        {"type": "text", "text": "Checking."},
        {"type": "tool_use", "id": "call_1", "name": "lookup", "input": {"q": "x"}},
    ]


@pytest.mark.asyncio
async def test_stream_reports_progress_phases_and_usage(monkeypatch):
    stream = _FakeStream(
        [
            _chunk(reasoning_content="think"),
            _chunk(content="Let me look."),
            _chunk(tool_name="lookup", finish_reason="tool_calls"),
            _chunk(usage={"prompt_tokens": 12, "completion_tokens": 5}),
        ]
    )

    async def fake_acompletion(**params):
        assert params["stream_options"] == {"include_usage": True}
        return stream

    def fake_stream_chunk_builder(_raw_chunks):
        msg = SimpleNamespace(
            content="Let me look.",
            tool_calls=[_ToolCall("call_1", "lookup", "{}")],
            role="assistant",
            reasoning_content="think",
        )
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)], usage=None)

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    monkeypatch.setattr(litellm, "stream_chunk_builder", fake_stream_chunk_builder)

    progress = []

    async def on_progress(kind, detail):
        progress.append((kind, detail))

    resp = await LLMService().completion(_request(stream=True), on_progress=on_progress)

    assert progress == [("thinking", None), ("text", None), ("tool_use", "lookup")]
    assert resp.stop_reason == "tool_use"
    assert resp.usage.input_tokens == 12
    assert resp.usage.output_tokens == 5
    assert resp.blocks[0] == {"type": "thinking", "thinking": "think"}
    assert stream.closed


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_the_call(monkeypatch):
    async def fake_acompletion(**params):
        return _FakeStream([_chunk(content="ok", finish_reason="stop")])

    def fake_stream_chunk_builder(_raw_chunks):
        msg = SimpleNamespace(content="ok", tool_calls=None, role="assistant", reasoning_content=None)
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)], usage=None)

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    monkeypatch.setattr(litellm, "stream_chunk_builder", fake_stream_chunk_builder)

    def on_progress(kind, detail):
        raise RuntimeError("listener gone")

    resp = await LLMService().completion(_request(stream=True), on_progress=on_progress)

    assert resp.stop_reason == "end_turn"
    assert resp.last_text() == "ok"


@pytest.mark.asyncio
async def test_stream_reports_remote_tool_server_blocks(monkeypatch):
    def _remote_chunk(block):
        delta = SimpleNamespace(
            content=None,
            tool_calls=None,
            reasoning_content=None,
            provider_specific_fields={"content_block": block},
        )
        return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=None)], usage=None)

    async def fake_acompletion(**params):
        return _FakeStream(
            [
                _remote_chunk({"type": "mcp_tool_use", "id": "mcptoolu_1", "name": "search", "server_name": "docs"}),
                _remote_chunk({"type": "mcp_tool_result", "tool_use_id": "mcptoolu_1"}),
                _remote_chunk({"type": "text"}),
                _chunk(content="Found it.", finish_reason="stop"),
            ]
        )

    def fake_stream_chunk_builder(_raw_chunks):
        msg = SimpleNamespace(content="Found it.", tool_calls=None, role="assistant", reasoning_content=None)
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)], usage=None)

    import litellm

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    monkeypatch.setattr(litellm, "stream_chunk_builder", fake_stream_chunk_builder)

    progress = []

    async def on_progress(kind, detail):
        progress.append((kind, detail))

    await LLMService().completion(_request(stream=True), on_progress=on_progress)

    assert progress == [
        ("remote_tool_use", {"name": "search", "server": "docs"}),
        ("remote_tool_result", None),
        ("text", None),
    ]


def test_transient_error_classification():
    class _StatusError(Exception):
        def __init__(self, status_code):
            super().__init__("upstream said no")
            self.status_code = status_code

    assert is_transient_error(UpstreamTransientError("overloaded"))
    assert is_transient_error(_StatusError(529))
    assert is_transient_error(RuntimeError("Overloaded, try later"))
    assert not is_transient_error(_StatusError(400))
    assert not is_transient_error(UpstreamError("invalid request"))
    assert not is_transient_error(ValueError("bad input"))


@pytest.mark.asyncio
async def test_wrapper_routes_mock_models_offline():
    seen = []

    async def mock_chat(request):
        seen.append(request.config.model)
        return ModelResponse(message={"role": "assistant", "content": "mocked"}, stop_reason="end_turn")

    class _NoNetwork(LLMService):
        async def completion(self, request, on_progress=None):
            raise AssertionError("network call for mock model")

    wrapper = LLMWrapper(_NoNetwork(), mock_chat)
    request = LLMRequest(messages=[{"role": "user", "content": "hi"}], config=LLMConfig(model="mock-echo"))

    resp = await wrapper.chat(request)

    assert seen == ["mock-echo"]
    assert resp.last_text() == "mocked"
