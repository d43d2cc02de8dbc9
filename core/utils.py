from pathlib import Path
import sys, asyncio
import json
import re
from typing import Any

REPO_ROOT = Path(__file__).resolve().parents[1]
_TARGET_SAFE_RE = re.compile(r"[^A-Za-z0-9_-]+")

def set_loop_policy():
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

def safe_target_label(value: Any) -> str:
    """
    Normalize a label for NATS subjects, durable names and KV keys.
    Non [A-Za-z0-9_-] chars are replaced with "_".
    """
    text = "" if value is None else str(value)
    safe = _TARGET_SAFE_RE.sub("_", text)
    return safe or "_"

_ESCAPED_RUN_RE = re.compile(r"(?:=[0-9A-F]{2})+")
EMPTY_SEGMENT = "="

def _escape_bytes(match: "re.Match[str]") -> str:
    return "".join(f"={b:02X}" for b in match.group(0).encode("utf-8"))

def escape_key_segment(value: Any) -> str:
    """
    Reversible encoding of one KV key segment or subject token.

    [A-Za-z0-9_-] passes through; every other UTF-8 byte becomes "=XX", so
    distinct ids never share a key. The empty string encodes as "=".
    """
    text = "" if value is None else str(value)
    if not text:
        return EMPTY_SEGMENT
    return _TARGET_SAFE_RE.sub(_escape_bytes, text)

def unescape_key_segment(segment: str) -> str:
    if segment == EMPTY_SEGMENT:
        return ""
    return _ESCAPED_RUN_RE.sub(
        lambda m: bytes.fromhex(m.group(0).replace("=", "")).decode("utf-8"), segment
    )

def stringify_payload(payload: Any) -> str:
    """Tool results travel to the model as text; anything else is JSON-encoded."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, default=str)
