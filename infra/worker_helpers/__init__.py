"""Coordination helpers shared by the turn worker paths."""

from .race_guard import RaceGuard
from .timeouts import TimeoutHandle, TimeoutScheduler

__all__ = [
    "RaceGuard",
    "TimeoutHandle",
    "TimeoutScheduler",
]
