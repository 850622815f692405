"""Duplicate tool-call detection.

When the last N finished tool calls were the same tool with byte-identical
serialized arguments, the next identical call has to pass the approval gate
even if the ruleset allows it.
"""

from __future__ import annotations

import json
from collections import deque
from typing import Any

DEFAULT_THRESHOLD = 3


def call_signature(tool: str, args: dict[str, Any] | None) -> tuple[str, str]:
    """Hashable key for one call; argument order does not matter."""
    try:
        serialized = json.dumps(args or {}, sort_keys=True, default=str)
    except (TypeError, ValueError):
        serialized = repr(sorted((args or {}).items()))
    return (tool, serialized)


class DoomLoopDetector:
    """Tracks the most recent finished calls of one session."""

    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        self.threshold = threshold
        self._recent: deque[tuple[str, str]] = deque(maxlen=max(threshold, 1))

    def is_looping(self, tool: str, args: dict[str, Any] | None) -> bool:
        """Would this call be the (threshold + 1)th identical one in a row?"""
        if self.threshold <= 0 or len(self._recent) < self.threshold:
            return False
        signature = call_signature(tool, args)
        return all(s == signature for s in self._recent)

    def record(self, tool: str, args: dict[str, Any] | None) -> None:
        """Record a call that reached a terminal state."""
        self._recent.append(call_signature(tool, args))

    def reset(self) -> None:
        self._recent.clear()
