"""Helpers for constructing and parsing NATS subjects with protocol version.

Layout: ``dt.{protocol}.{category}.{component}.{target}.{suffix}``.
"""

from dataclasses import dataclass
from typing import Optional

from .config import PROTOCOL_VERSION
from .utils import escape_key_segment, safe_target_label

SUBJECT_ROOT = "dt"


@dataclass
class SubjectParts:
    protocol_version: str
    category: str
    component: str
    target: str
    suffix: str


def format_subject(
    category: str,
    component: str,
    target: str,
    suffix: str,
    protocol_version: str = PROTOCOL_VERSION,
    ) -> str:
    return ".".join([SUBJECT_ROOT, protocol_version, category, component, target, suffix])


def subject_prefix(protocol_version: str = PROTOCOL_VERSION) -> str:
    return ".".join([SUBJECT_ROOT, protocol_version])


def turn_generate_subject(worker_target: str, protocol_version: str = PROTOCOL_VERSION) -> str:
    return format_subject("cmd", "turn", safe_target_label(worker_target), "generate", protocol_version)


def tool_call_subject(block_id: str, protocol_version: str = PROTOCOL_VERSION) -> str:
    return format_subject("cmd", "tool", safe_target_label(block_id), "call", protocol_version)


def tool_result_subject(worker_target: str, protocol_version: str = PROTOCOL_VERSION) -> str:
    return format_subject("evt", "tool", safe_target_label(worker_target), "result", protocol_version)


def turn_event_subject(conversation_id: str, suffix: str, protocol_version: str = PROTOCOL_VERSION) -> str:
    return format_subject("evt", "turn", escape_key_segment(conversation_id), suffix, protocol_version)


def parse_subject(subject: str) -> Optional[SubjectParts]:
    parts = subject.split(".")
    if len(parts) < 6 or parts[0] != SUBJECT_ROOT:
        return None

    return SubjectParts(
        protocol_version=parts[1],
        category=parts[2],
        component=parts[3],
        target=parts[4],
        suffix=".".join(parts[5:]),
    )
