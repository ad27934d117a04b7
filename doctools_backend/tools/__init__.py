"""Tool Executor: named document transforms backed by external programs."""

from .executor import Tool, ToolContext, ToolExecutor, default_tools
from .runner import CommandResult, CommandRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "Tool",
    "ToolContext",
    "ToolExecutor",
    "default_tools",
]
