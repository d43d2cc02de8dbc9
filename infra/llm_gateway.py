import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import litellm

from core.errors import DTError, UpstreamTransientError
from core.llm import LLMRequest
from core.model_response import ModelResponse
from core.turn_state import TokenUsage
from infra.llm.message_codec import from_litellm_message, map_finish_reason, to_litellm_messages
from infra.llm.tool_specs import build_tool_choice, build_tool_specs

logger = logging.getLogger(__name__)

# (kind, detail): kind is "thinking", "text", "tool_use", "remote_tool_use" or "remote_tool_result".
# detail is the tool name for tool_use and {"name", "server"} for remote_tool_use.
ProgressCallback = Callable[[str, Any], Any]
MockChatHandler = Callable[[LLMRequest], Awaitable[ModelResponse]]

_TRANSIENT_TYPES = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.Timeout,
    litellm.APIConnectionError,
    UpstreamTransientError,
)
_REMOTE_BLOCK_KINDS = {"mcp_tool_use": "remote_tool_use", "mcp_tool_result": "remote_tool_result"}
_TRANSIENT_STATUS = {429, 502, 503, 504, 529}
_TRANSIENT_MARKERS = ("overloaded", "rate limit", "rate_limit", "timeout", "timed out", "502", "503", "504")


def is_transient_error(exc: BaseException) -> bool:
    """Rate limiting, overload and gateway failures are worth another attempt."""
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    if isinstance(exc, DTError):
        return exc.retryable
    if getattr(exc, "status_code", None) in _TRANSIENT_STATUS:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class LLMService:
    """Single model round-trip through litellm; retries belong to the caller."""

    @staticmethod
    def _normalize_reasoning_text(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            parts: List[str] = []
            for item in value:
                if isinstance(item, str):
                    parts.append(item)
                elif isinstance(item, dict):
                    text = item.get("text") if item.get("text") is not None else item.get("thinking")
                    if text is not None:
                        parts.append(str(text))
            return "".join(parts) if parts else None
        return str(value)

    @classmethod
    def _extract_reasoning_content(cls, obj: Any) -> Optional[str]:
        if obj is None:
            return None
        value = getattr(obj, "reasoning_content", None)
        if value is None and isinstance(obj, dict):
            value = obj.get("reasoning_content")
        return cls._normalize_reasoning_text(value)

    @staticmethod
    def _extract_thinking_blocks(obj: Any) -> List[Dict[str, Any]]:
        blocks = getattr(obj, "thinking_blocks", None)
        if blocks is None and isinstance(obj, dict):
            blocks = obj.get("thinking_blocks")
        out: List[Dict[str, Any]] = []
        for block in blocks or []:
            if hasattr(block, "model_dump"):
                block = block.model_dump()
            if isinstance(block, dict):
                out.append(dict(block))
        return out

    @staticmethod
    def _extract_remote_block(delta: Any) -> Optional[Dict[str, Any]]:
        """Remote tool server blocks arrive as provider-specific fields on the delta."""
        fields = getattr(delta, "provider_specific_fields", None)
        if not isinstance(fields, dict):
            return None
        block = fields.get("content_block")
        if hasattr(block, "model_dump"):
            block = block.model_dump()
        if isinstance(block, dict) and block.get("type") in _REMOTE_BLOCK_KINDS:
            return block
        return None

    @staticmethod
    def _extract_usage(obj: Any) -> Optional[TokenUsage]:
        if obj is None:
            return None
        usage = getattr(obj, "usage", None)
        if usage is None and isinstance(obj, dict):
            usage = obj.get("usage")
        if usage is None:
            return None
        if hasattr(usage, "model_dump"):
            usage = usage.model_dump()
        if not isinstance(usage, dict):
            return None
        return TokenUsage(
            input_tokens=int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
        )

    @staticmethod
    async def _notify(on_progress: Optional[ProgressCallback], kind: str, detail: Any = None) -> None:
        if on_progress is None:
            return
        try:
            outcome = on_progress(kind, detail)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as exc:  # noqa: BLE001
            logger.error("Error in progress callback: %s", exc)

    def _build_params(self, request: LLMRequest) -> Dict[str, Any]:
        kwargs = request.config.model_dump(exclude_none=True)
        model = kwargs.pop("model")
        stream = kwargs.pop("stream", False)
        provider_options = kwargs.pop("provider_options", None)

        params: Dict[str, Any] = {
            "model": model,
            "messages": to_litellm_messages(request.messages, system_prompt=request.system_prompt),
            "stream": stream,
            **kwargs,
        }
        if request.tools:
            params["tools"] = build_tool_specs(request.tools)
            tool_choice = build_tool_choice(request.tool_choice)
            if tool_choice:
                params["tool_choice"] = tool_choice
            if request.parallel_tool_calls is not None:
                params["parallel_tool_calls"] = request.parallel_tool_calls
        # Pass provider-specific settings (e.g. extra_body, extra_headers) straight through
        if provider_options:
            params.update(provider_options)
        if stream and "stream_options" not in params:
            params["stream_options"] = {"include_usage": True}
        return params

    async def completion(
        self, request: LLMRequest, on_progress: Optional[ProgressCallback] = None
    ) -> ModelResponse:
        """
        Execute one model request and return it as a content-block ModelResponse.
        Streaming deltas drive `on_progress`; the final message is rebuilt from all chunks.
        """
        params = self._build_params(request)
        logger.info("Calling LLM: %s (Stream: %s)", params["model"], params["stream"])
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("LLM Request Messages:\n%s", json.dumps(params["messages"], indent=2, ensure_ascii=False))

        if params["stream"]:
            return await self._stream_handler(params, on_progress)
        response = await litellm.acompletion(**params)
        return self._format_response(response)

    async def _stream_handler(
        self, params: Dict[str, Any], on_progress: Optional[ProgressCallback]
    ) -> ModelResponse:
        response_stream = await litellm.acompletion(**params)

        raw_chunks: List[Any] = []  # keep original chunks for stream_chunk_builder
        stream_usage: Optional[TokenUsage] = None
        finish_reason: Optional[str] = None
        phase: Optional[str] = None

        try:
            async for chunk in response_stream:
                raw_chunks.append(chunk)
                usage_candidate = self._extract_usage(chunk)
                if usage_candidate:
                    stream_usage = usage_candidate
                choices = getattr(chunk, "choices", None)
                if not choices:
                    # e.g. usage-only chunk (choices=[]) when include_usage is enabled
                    continue
                choice = choices[0]
                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason
                delta = choice.delta
                if self._extract_reasoning_content(delta) and phase != "thinking":
                    phase = "thinking"
                    await self._notify(on_progress, "thinking")
                if getattr(delta, "content", None) and phase != "text":
                    phase = "text"
                    await self._notify(on_progress, "text")
                remote = self._extract_remote_block(delta)
                if remote is not None:
                    phase = _REMOTE_BLOCK_KINDS[remote["type"]]
                    detail = None
                    if phase == "remote_tool_use":
                        detail = {"name": remote.get("name"), "server": remote.get("server_name")}
                    await self._notify(on_progress, phase, detail)
                for tc_chunk in getattr(delta, "tool_calls", None) or []:
                    fn = getattr(tc_chunk, "function", None)
                    name = getattr(fn, "name", None) if fn is not None else None
                    if name:
                        phase = "tool_use"
                        await self._notify(on_progress, "tool_use", name)
        finally:
            closer = getattr(response_stream, "aclose", None)
            if closer is not None:
                try:
                    await closer()
                except Exception as exc:  # noqa: BLE001
                    logger.debug("Stream close failed: %s", exc)

        built = litellm.stream_chunk_builder(raw_chunks)
        response = self._format_response(built, finish_reason=finish_reason)
        if stream_usage is not None:
            response = ModelResponse(message=response.message, stop_reason=response.stop_reason, usage=stream_usage)
        return response

    def _format_response(self, response: Any, *, finish_reason: Optional[str] = None) -> ModelResponse:
        choice = response.choices[0]
        message = choice.message
        formatted: Dict[str, Any] = {
            "content": message.content,
            "tool_calls": [tc.model_dump() for tc in message.tool_calls] if getattr(message, "tool_calls", None) else None,
            "thinking_blocks": self._extract_thinking_blocks(message),
            "reasoning_content": self._extract_reasoning_content(message),
        }
        stop_reason = map_finish_reason(getattr(choice, "finish_reason", None) or finish_reason)
        usage = self._extract_usage(response) or TokenUsage()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("LLM Response (%s):\n%s", stop_reason, json.dumps(formatted, indent=2, ensure_ascii=False, default=str))
        return ModelResponse(message=from_litellm_message(formatted), stop_reason=stop_reason, usage=usage)


class LLMWrapper:
    def __init__(self, service: LLMService, mock_chat: Optional[MockChatHandler] = None):
        self.service = service
        self._mock_chat = mock_chat

    async def chat(
        self, request: LLMRequest, on_progress: Optional[ProgressCallback] = None
    ) -> ModelResponse:
        """Call LLM."""
        if self._mock_chat and request.config.model and request.config.model.startswith("mock"):
            return await self._mock_chat(request)

        return await self.service.completion(request, on_progress=on_progress)
