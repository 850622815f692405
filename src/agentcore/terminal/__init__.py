"""Local shell execution used by the bash tool."""

from agentcore.terminal.result import ShellResult
from agentcore.terminal.subprocess_executor import SubprocessTerminalExecutor

__all__ = [
    "ShellResult",
    "SubprocessTerminalExecutor",
]
