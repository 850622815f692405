"""Built-in tools: read, bash, todowrite, todoread, task."""

from __future__ import annotations

import base64
import json
import mimetypes
import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from agentcore.errors import AgentCoreError
from agentcore.session.todo import TaskItem
from agentcore.terminal import SubprocessTerminalExecutor
from agentcore.tools.registry import ToolContext, ToolContract, ToolResult

_IMAGE_SUFFIXES = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp"})


def _resolve_path(file_path: str, cwd: str) -> str:
    path = file_path if os.path.isabs(file_path) else os.path.join(cwd, file_path)
    return os.path.normpath(path)


# -----------------------------------------------------------------------------
# read
# -----------------------------------------------------------------------------


class ReadParams(BaseModel):
    file_path: str = Field(description="File to read, absolute or relative to the working directory")
    offset: int = Field(default=0, ge=0, description="Zero-based line to start from")
    limit: int = Field(default=2000, gt=0, description="Maximum number of lines to return")


async def _read(params: ReadParams, ctx: ToolContext) -> ToolResult:
    path = Path(_resolve_path(params.file_path, ctx.cwd))
    if not path.exists():
        raise AgentCoreError(f"File not found: {path}")
    if path.is_dir():
        raise AgentCoreError(f"Path is a directory: {path}")

    title = os.path.relpath(path, ctx.cwd) if str(path).startswith(ctx.cwd) else str(path)

    if path.suffix.lower() in _IMAGE_SUFFIXES:
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        data = base64.b64encode(path.read_bytes()).decode("ascii")
        return ToolResult(
            output=f"Image read: {path.name}",
            title=title,
            attachments=[{"type": "image", "mime": mime, "url": f"data:{mime};base64,{data}"}],
        )

    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    chunk = lines[params.offset : params.offset + params.limit]
    output = "\n".join(f"{i + params.offset + 1:>6}\t{line}" for i, line in enumerate(chunk))
    end = params.offset + len(chunk)
    if end < len(lines):
        output += f"\n\n(File has {len(lines)} lines. Use offset={end} to read more.)"
    return ToolResult(
        output=output,
        title=title,
        metadata={"lines": len(chunk), "total_lines": len(lines)},
    )


READ = ToolContract(
    name="read",
    description="Read a text file (with line numbers) or an image from the filesystem.",
    parameters=ReadParams,
    execute=_read,
    patterns=lambda p, ctx: [_resolve_path(p.file_path, ctx.cwd)],
)


# -----------------------------------------------------------------------------
# bash
# -----------------------------------------------------------------------------


class BashParams(BaseModel):
    command: str = Field(min_length=1, description="Shell command line to run")
    timeout: float | None = Field(default=None, gt=0, description="Timeout in seconds")
    description: str = Field(default="", description="Five to ten word summary of the command")


async def _bash(params: BashParams, ctx: ToolContext) -> ToolResult:
    executor = SubprocessTerminalExecutor(ctx.cwd)
    result = await executor.execute(params.command, timeout=params.timeout or ctx.bash_timeout)
    output = result.output
    if result.status == "error" and result.exit_code is not None:
        output = f"{output.rstrip()}\n\n(exit code {result.exit_code})".lstrip()
    return ToolResult(
        output=output,
        title=params.description or params.command,
        metadata={
            "exit_code": result.exit_code,
            "status": result.status,
            "duration_ms": round(result.duration_ms, 1),
        },
    )


BASH = ToolContract(
    name="bash",
    description="Run a shell command in the working directory and return its combined output.",
    parameters=BashParams,
    execute=_bash,
    patterns=lambda p, ctx: [p.command],
)


# -----------------------------------------------------------------------------
# todowrite / todoread
# -----------------------------------------------------------------------------


class TodoItemParams(BaseModel):
    id: str
    content: str = Field(min_length=1)
    status: Literal["pending", "in_progress", "completed", "cancelled"] = "pending"
    priority: Literal["high", "medium", "low"] = "medium"


class TodoWriteParams(BaseModel):
    todos: list[TodoItemParams] = Field(description="The complete updated task list")


class TodoReadParams(BaseModel):
    pass


def _render_tasks(items: list[TaskItem]) -> ToolResult:
    remaining = sum(1 for i in items if not i.status.done)
    data = [i.to_dict() for i in items]
    return ToolResult(
        output=json.dumps(data, indent=2),
        title=f"{remaining} todos",
        metadata={"todos": data},
    )


async def _todowrite(params: TodoWriteParams, ctx: ToolContext) -> ToolResult:
    items = await ctx.tasks.write(TaskItem.from_dict(t.model_dump()) for t in params.todos)
    return _render_tasks(items)


async def _todoread(params: TodoReadParams, ctx: ToolContext) -> ToolResult:
    return _render_tasks(ctx.tasks.read())


TODOWRITE = ToolContract(
    name="todowrite",
    description=(
        "Replace the session task list. Send every item each time; keep at most "
        "one item in_progress."
    ),
    parameters=TodoWriteParams,
    execute=_todowrite,
)

TODOREAD = ToolContract(
    name="todoread",
    description="Read the current session task list.",
    parameters=TodoReadParams,
    execute=_todoread,
)


# -----------------------------------------------------------------------------
# task
# -----------------------------------------------------------------------------


class TaskParams(BaseModel):
    description: str = Field(description="Short (3-5 word) description of the task")
    prompt: str = Field(min_length=1, description="Full instructions for the sub-agent")
    agent: str = Field(default="general", description="Sub-agent to delegate to")


async def _task(params: TaskParams, ctx: ToolContext) -> ToolResult:
    result = await ctx.spawn(params.prompt, params.agent, params.description)
    if result.failure is not None:
        raise AgentCoreError(
            f"Sub-agent failed ({result.failure.category.value}): {result.failure.message}"
        )
    return ToolResult(
        output=result.text or "(sub-agent returned no text)",
        title=params.description,
        metadata={"session_id": result.session_id, "steps": result.steps},
    )


TASK = ToolContract(
    name="task",
    description="Delegate a self-contained task to a sub-agent and wait for its report.",
    parameters=TaskParams,
    execute=_task,
    patterns=lambda p, ctx: [p.agent],
)


def builtin_tools() -> list[ToolContract]:
    return [READ, BASH, TODOWRITE, TODOREAD, TASK]
