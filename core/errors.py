from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass
class DTError(Exception):
    """Base turn-orchestration error with a stable error code."""

    message: str
    code: str = "internal_error"
    retryable: bool = False
    detail: Any = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message

    def as_error_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error_code": self.code, "error_message": self.message}
        if self.detail is not None:
            data["detail"] = self.detail
        return data


class ConfigurationError(DTError):
    """Rejected before a turn starts: missing credential, model or a bad thinking budget."""

    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="config_invalid", detail=detail)


class ProtocolViolationError(DTError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="bad_request", detail=detail)


class UpstreamTransientError(DTError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="upstream_unavailable", retryable=True, detail=detail)


class UpstreamError(DTError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="upstream_failed", detail=detail)


class UnexpectedStopReasonError(DTError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="unexpected_stop", detail=detail)


class MissingTextError(DTError):
    def __init__(self, message: str = "Model did not respond with text", *, detail: Any = None):
        super().__init__(message=message, code="missing_text", detail=detail)


class ObjectGenerationError(DTError):
    def __init__(self, message: str = "Failed to generate object", *, detail: Any = None):
        super().__init__(message=message, code="object_generation_failed", detail=detail)


class ToolTimeoutError(DTError):
    def __init__(self, message: str = "Timeout", *, detail: Any = None):
        super().__init__(message=message, code="tool_timeout", detail=detail)


class UnknownToolError(DTError):
    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message=message, code="unknown_tool", detail=detail)


class TurnSupersededError(DTError):
    """A suspended turn replaced by a new request on the same conversation."""

    def __init__(self, message: str = "Superseded by a new turn", *, detail: Any = None):
        super().__init__(message=message, code="superseded", detail=detail)


def classify_exception(exc: Exception, *, default_code: str = "internal_error") -> Tuple[str, str, Any]:
    if isinstance(exc, DTError):
        return exc.code, exc.message, exc.detail
    if isinstance(exc, KeyError):
        return "not_found", str(exc), None
    if isinstance(exc, ValueError):
        return "bad_request", str(exc), None
    return default_code, str(exc), None


def build_error_payload(
    code: str,
    message: str,
    detail: Any = None,
    *,
    source: str = "unknown",
    retryable: Optional[bool] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"code": code, "message": message, "source": source}
    if detail is not None:
        payload["detail"] = detail
    if retryable is not None:
        payload["retryable"] = retryable
    return payload


def normalize_error(
    error: Any,
    *,
    default_code: str = "internal_error",
    source: str = "unknown",
) -> Dict[str, Any]:
    if error is None:
        return build_error_payload(default_code, "unknown error", source=source)

    if isinstance(error, dict):
        if "code" in error and "message" in error:
            payload = dict(error)
        else:
            payload = {"code": default_code, "message": str(error)}
        payload.setdefault("source", source)
        return payload

    if isinstance(error, DTError):
        return build_error_payload(
            error.code,
            error.message,
            error.detail,
            source=source,
            retryable=error.retryable,
        )

    if isinstance(error, Exception):
        code, message, detail = classify_exception(error, default_code=default_code)
        return build_error_payload(code, message, detail, source=source)

    return build_error_payload(default_code, str(error), source=source)
