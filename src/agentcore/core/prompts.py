"""System prompt assembly."""

from __future__ import annotations

import platform
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentcore.config.schema import AgentConfig

DEFAULT_PROMPT = """\
You are a coding agent working inside the user's project.

Work step by step and use the available tools to inspect and change things
rather than guessing. For any task that needs more than a couple of steps,
keep a task list with the todowrite tool: mark exactly one item in_progress
at a time and mark items completed as soon as they are done. You are not
finished until every item on the task list is completed or cancelled.
"""

SUBAGENT_SUFFIX = """\
You were delegated this task by another agent. When you are done, reply with
a concise report of what you found or changed; that report is the only thing
the other agent will see.
"""


def build_system_prompt(agent: AgentConfig, cwd: str, *, subagent: bool = False) -> str:
    """Build the system prompt for an agent context.

    Args:
        agent: Agent definition; its ``prompt`` replaces the default body
        cwd: Working directory shown to the model
        subagent: Append delegation instructions
    """
    sections = [agent.prompt.strip() or DEFAULT_PROMPT.strip()]
    if subagent:
        sections.append(SUBAGENT_SUFFIX.strip())
    sections.append(
        "<env>\n"
        f"Working directory: {cwd}\n"
        f"Platform: {platform.system().lower()}\n"
        f"Today's date: {datetime.now().strftime('%Y-%m-%d')}\n"
        "</env>"
    )
    return "\n\n".join(sections)
