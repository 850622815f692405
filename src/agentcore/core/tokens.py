"""Token counting with tiktoken.

Used to estimate context occupancy when a provider reports no usage and to
size compaction summaries.
"""

from __future__ import annotations

import json
from typing import Any

import tiktoken

# Rough fallback ratio when encoding is not worth the cost
CHARS_PER_TOKEN = 4.0

_encoder: tiktoken.Encoding | None = None

# hash(text) -> token count
_token_cache: dict[int, int] = {}


def _get_encoder() -> tiktoken.Encoding:
    """Get cached tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("o200k_base")
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens in text (cached)."""
    if not text:
        return 0
    key = hash(text)
    if key not in _token_cache:
        _token_cache[key] = len(_get_encoder().encode(text, disallowed_special=()))
    return _token_cache[key]


def count_tokens_heuristic(text: str) -> int:
    """Estimate tokens from character count without encoding."""
    return int(len(text) / CHARS_PER_TOKEN)


def count_message_tokens(messages: list[dict[str, Any]], system_prompt: str = "") -> int:
    """Estimate the prompt size of provider-format chat messages.

    Each message carries a small framing overhead on top of its content.
    """
    total = count_tokens(system_prompt)
    for message in messages:
        total += 4
        content = message.get("content")
        if isinstance(content, str):
            total += count_tokens(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "text":
                    total += count_tokens(block.get("text", ""))
                else:
                    # images and other blocks: flat estimate
                    total += 85
        for call in message.get("tool_calls") or []:
            total += count_tokens(json.dumps(call.get("function", {})))
    return total


def invalidate_cache() -> None:
    """Clear the token count cache."""
    _token_cache.clear()
