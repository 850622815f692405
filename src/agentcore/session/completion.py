"""Completion Enforcer: decide whether a finished step ends the turn.

- ``tool-calls`` always continues.
- ``stop`` continues while the task list has unfinished items; a reminder
  listing them is appended to the last finalized text part.
- ``length`` compacts when context usage is at or over the threshold.
- ``content-filter`` and ``error`` stop and surface an error.
- A rejected approval or question stops regardless of finish reason unless
  ``continue_on_deny`` is set.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agentcore.errors import ErrorCategory
from agentcore.session.protocols import FinishReason, Outcome

if TYPE_CHECKING:
    from agentcore.config.schema import Config
    from agentcore.session.stream_processor import StepResult
    from agentcore.session.todo import TaskItem, TaskListStore


@dataclass(frozen=True, slots=True)
class CompletionDecision:
    outcome: Outcome
    reason: str
    reminder: str | None = None
    error_category: ErrorCategory | None = None

    @property
    def error(self) -> bool:
        return self.error_category is not None


def format_reminder(items: Sequence[TaskItem]) -> str:
    lines = [
        "<system-reminder>",
        "You stopped, but the task list still has unfinished items. Continue working "
        "until each one is completed or cancelled, and update the list with todowrite:",
    ]
    lines.extend(f"- [{item.status.value}] {item.content} (id: {item.id})" for item in items)
    lines.append("</system-reminder>")
    return "\n".join(lines)


class CompletionEnforcer:
    def __init__(
        self,
        *,
        context_limit: int = 200_000,
        threshold: float = 0.9,
        continue_on_deny: bool = False,
    ) -> None:
        self.context_limit = context_limit
        self.threshold = threshold
        self.continue_on_deny = continue_on_deny

    @classmethod
    def from_config(cls, config: Config) -> CompletionEnforcer:
        return cls(
            context_limit=config.llm.context_limit,
            threshold=config.compaction.threshold,
            continue_on_deny=config.approval.continue_on_deny,
        )

    def usage_ratio(self, context_tokens: int) -> float:
        if self.context_limit <= 0:
            return 0.0
        return context_tokens / self.context_limit

    def decide(
        self,
        step: StepResult,
        tasks: TaskListStore | None = None,
        *,
        context_tokens: int = 0,
    ) -> CompletionDecision:
        """Decide the outcome of a processed step.

        May append a reminder to ``step.message``, which must still be open.
        """
        if step.blocked and not self.continue_on_deny:
            return CompletionDecision(Outcome.STOP, "a permission request or question was rejected")

        match step.finish:
            case FinishReason.TOOL_CALLS:
                return CompletionDecision(Outcome.CONTINUE, "tool calls pending")
            case FinishReason.STOP:
                incomplete = tasks.incomplete() if tasks is not None else []
                if not incomplete:
                    return CompletionDecision(Outcome.STOP, "finished")
                reminder = format_reminder(incomplete)
                step.message.append_reminder(reminder)
                return CompletionDecision(
                    Outcome.CONTINUE,
                    f"{len(incomplete)} task(s) incomplete",
                    reminder=reminder,
                )
            case FinishReason.LENGTH:
                ratio = self.usage_ratio(context_tokens)
                if ratio >= self.threshold:
                    return CompletionDecision(Outcome.COMPACT, f"context at {ratio:.0%}")
                return CompletionDecision(Outcome.STOP, "output token limit reached")
            case FinishReason.CONTENT_FILTER:
                return CompletionDecision(
                    Outcome.STOP,
                    "response blocked by content filter",
                    error_category=ErrorCategory.CONTENT_FILTER,
                )
            case FinishReason.ERROR:
                return CompletionDecision(
                    Outcome.STOP, "stream ended with an error", error_category=ErrorCategory.FATAL
                )
            case _:
                if step.message.tool_calls():
                    return CompletionDecision(Outcome.CONTINUE, "tool calls without finish reason")
                return CompletionDecision(Outcome.STOP, "no finish reason")
