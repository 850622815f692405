"""Tool contracts, registry, output truncation and built-in tools."""

from agentcore.tools.builtin import builtin_tools
from agentcore.tools.registry import ToolContext, ToolContract, ToolRegistry, ToolResult
from agentcore.tools.truncation import OutputStore, TruncatedOutput, truncate_output

__all__ = [
    "OutputStore",
    "ToolContext",
    "ToolContract",
    "ToolRegistry",
    "ToolResult",
    "TruncatedOutput",
    "builtin_tools",
    "truncate_output",
]
