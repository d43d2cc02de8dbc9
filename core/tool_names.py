from __future__ import annotations

import re
from typing import Sequence

MAX_TOOL_NAME_LENGTH = 64

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_RE = re.compile(r"[^a-z0-9_-]")
_RUNS_RE = re.compile(r"[_-]{2,}")


def clean_tool_name(name: str) -> str:
    """
    Normalize a display name to the provider's tool-name alphabet.

    Result matches ^[a-z0-9_-]{0,64}$; an empty string means nothing usable remained.
    """
    cleaned = _WHITESPACE_RE.sub("_", (name or "").strip().lower())
    cleaned = _INVALID_RE.sub("_", cleaned)
    cleaned = _RUNS_RE.sub("_", cleaned)
    cleaned = cleaned.strip("_-")
    return cleaned[:MAX_TOOL_NAME_LENGTH]


def join_tool_names(names: Sequence[str]) -> str:
    quoted = [f'"{n}"' for n in names]
    if len(quoted) <= 1:
        return "".join(quoted)
    return f"{', '.join(quoted[:-1])} and {quoted[-1]}"


def describe_tool_calls(names: Sequence[str]) -> str:
    label = "Calling tools" if len(names) > 1 else "Calling tool"
    return f"{label}: {join_tool_names(names)}"
