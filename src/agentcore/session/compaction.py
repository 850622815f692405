"""History compaction: summarise older messages, keep recent ones verbatim."""

from __future__ import annotations

from collections.abc import Sequence

from agentcore.core.llm.provider import Credential, LLMProvider, ModelRequest, SamplingConfig
from agentcore.errors import CompactionError, ProviderError
from agentcore.logging import get_logger
from agentcore.session.history import sanitize
from agentcore.session.message import Message
from agentcore.session.tool_call import CompletedState, ErrorState

_log = get_logger("session.compaction")

SUMMARY_SYSTEM_PROMPT = """\
You summarise coding-agent conversations so the work can continue in a fresh
context. Keep: the user's goals and constraints, decisions made, files and
commands involved, results of tool calls that still matter, and what remains
to be done. Be concise and factual.
"""


def render_transcript(messages: Sequence[Message]) -> str:
    lines = []
    for message in messages:
        label = "Summary" if message.summary else message.role.value.capitalize()
        if message.text:
            lines.append(f"{label}: {message.text}")
        for call in message.tool_calls():
            state = call.state
            if isinstance(state, CompletedState):
                outcome = state.output[:2000]
            elif isinstance(state, ErrorState):
                outcome = f"error: {state.error}"
            else:
                outcome = call.status.value
            lines.append(f"Tool {call.tool_name}({call.input}) -> {outcome}")
    return "\n\n".join(lines)


class Compactor:
    def __init__(
        self,
        provider: LLMProvider,
        *,
        keep_recent: int = 4,
        summary_max_tokens: int = 1024,
    ) -> None:
        self._provider = provider
        self.keep_recent = keep_recent
        self.summary_max_tokens = summary_max_tokens

    async def compact(
        self,
        messages: Sequence[Message],
        *,
        credential: Credential | None = None,
    ) -> list[Message]:
        """Return a new history: one summary message plus the recent tail.

        When the history is no longer than ``keep_recent``, the tail shrinks so
        that at least the oldest message is summarised.

        Raises:
            CompactionError: the history is empty, or the provider failed
        """
        history = sanitize(messages)
        if not history:
            raise CompactionError("history is empty")
        keep = min(max(self.keep_recent, 0), len(history) - 1)
        older = history[:-keep] if keep else list(history)
        recent = history[-keep:] if keep else []

        request = ModelRequest(
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            messages=[
                {
                    "role": "user",
                    "content": "Summarise this conversation:\n\n" + render_transcript(older),
                }
            ],
            sampling=SamplingConfig(max_tokens=self.summary_max_tokens),
            credential=credential,
        )
        try:
            result = await self._provider.complete(request)
        except ProviderError as e:
            raise CompactionError(f"summarisation failed: {e}") from e

        content = result.content.strip()
        if not content:
            raise CompactionError("summarisation returned no text")

        summary = Message.user(
            f"<conversation-summary>\n{content}\n</conversation-summary>", synthetic=True
        )
        summary.summary = True
        _log.info("Compacted %d messages into a summary, kept %d", len(older), len(recent))
        return [summary, *recent]
