"""History sanitisation and conversion to provider chat messages."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from agentcore.session.message import Message, Role, TextPart
from agentcore.session.tool_call import CompletedState, ErrorState, ToolCall, ToolCallStatus

INTERRUPTED = "tool execution was interrupted"
CONTINUATION = "(continuing the previous conversation)"


def _is_empty(message: Message) -> bool:
    if message.tool_calls():
        return False
    return not any(isinstance(p, TextPart) and p.text.strip() for p in message.parts)


def sanitize(messages: Sequence[Message]) -> list[Message]:
    """Return the history a provider may be shown.

    Empty assistant messages are dropped. Tool calls left open in a closed
    message (a crash or an abort between steps) are closed as interrupted.
    """
    result = []
    for message in messages:
        if message.role is Role.ASSISTANT and _is_empty(message):
            continue
        if message.closed:
            for call in message.tool_calls():
                if call.status is ToolCallStatus.PENDING:
                    call.start({})
                if call.status is ToolCallStatus.RUNNING:
                    call.fail(INTERRUPTED, cancelled=True)
        result.append(message)
    return result


def _tool_result_content(call: ToolCall) -> str:
    state = call.state
    if isinstance(state, CompletedState):
        return state.output
    if isinstance(state, ErrorState):
        return f"Error: {state.error}"
    return INTERRUPTED


def _user_content(text: str, images: Sequence[str]) -> str | list[dict[str, Any]]:
    if not images:
        return text
    blocks: list[dict[str, Any]] = [{"type": "text", "text": text}] if text else []
    blocks.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
    return blocks


def _merge_content(
    first: str | list[dict[str, Any]], second: str | list[dict[str, Any]]
) -> str | list[dict[str, Any]]:
    if isinstance(first, str) and isinstance(second, str):
        return f"{first}\n\n{second}"

    def blocks(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [{"type": "text", "text": content}] if isinstance(content, str) else list(content)

    return blocks(first) + blocks(second)


def to_provider_messages(
    messages: Sequence[Message],
    *,
    images: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """Convert history to OpenAI-style chat messages.

    The first message is always a user message and consecutive user messages
    are merged, since several providers require strict alternation.
    ``images`` are attached to the final user turn.
    """
    out: list[dict[str, Any]] = []
    for message in messages:
        if message.role is Role.USER:
            out.append({"role": "user", "content": _user_content(message.text, message.images)})
            continue

        calls = message.tool_calls()
        if message.role is Role.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {"name": call.tool_name, "arguments": json.dumps(call.input)},
                    }
                    for call in calls
                ]
            out.append(entry)
        out.extend(
            {"role": "tool", "tool_call_id": call.call_id, "content": _tool_result_content(call)}
            for call in calls
        )

    if images:
        if out and out[-1]["role"] == "user":
            out[-1]["content"] = _merge_content(out[-1]["content"], _user_content("", images))
        else:
            out.append({"role": "user", "content": _user_content("Images returned by tools:", images)})

    merged: list[dict[str, Any]] = []
    for entry in out:
        if merged and entry["role"] == "user" and merged[-1]["role"] == "user":
            merged[-1] = {
                "role": "user",
                "content": _merge_content(merged[-1]["content"], entry["content"]),
            }
        else:
            merged.append(entry)

    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": CONTINUATION})
    return merged
