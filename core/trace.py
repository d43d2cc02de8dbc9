from __future__ import annotations

import re
from typing import Dict, Mapping, Optional, Tuple

import uuid6

from core.errors import ProtocolViolationError


TRACEPARENT_HEADER = "traceparent"

_TRACEPARENT_RE = re.compile(r"^[0-9a-f]{2}-([0-9a-f]{32})-[0-9a-f]{16}-[0-9a-f]{2}$")


def _new_span_id() -> str:
    while True:
        span_id = uuid6.uuid7().hex[-16:]
        if span_id != "0" * 16:
            return span_id


def parse_traceparent(traceparent: str) -> Tuple[str, str]:
    """Return (traceparent, trace_id); raises on a malformed header."""
    value = str(traceparent or "").lower()
    match = _TRACEPARENT_RE.fullmatch(value)
    if not match or match.group(1) == "0" * 32:
        raise ProtocolViolationError("invalid traceparent")
    return value, match.group(1)


def build_traceparent(trace_id: Optional[str] = None) -> Tuple[str, str]:
    trace_id = (trace_id or uuid6.uuid7().hex).replace("-", "").lower()
    return f"00-{trace_id}-{_new_span_id()}-01", trace_id


def trace_id_from_headers(headers: Mapping[str, str] | None) -> Optional[str]:
    traceparent = (headers or {}).get(TRACEPARENT_HEADER)
    if not traceparent:
        return None
    return parse_traceparent(traceparent)[1]


def ensure_trace_headers(headers: Mapping[str, str] | None) -> Tuple[Dict[str, str], str]:
    """Guarantee a W3C traceparent on outgoing headers, minting one when absent."""
    merged: Dict[str, str] = dict(headers or {})
    candidate = merged.get(TRACEPARENT_HEADER)
    if candidate:
        traceparent, trace_id = parse_traceparent(candidate)
    else:
        traceparent, trace_id = build_traceparent()
    merged[TRACEPARENT_HEADER] = traceparent
    return merged, trace_id
