"""Task List Store.

A session owns one ordered task list. It is created empty and only changes
through ``write``, which validates the new list and replaces the old one
wholesale. At most one item may be ``in_progress``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from agentcore.errors import InvalidTaskList


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def done(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class TaskPriority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True, slots=True)
class TaskItem:
    id: str
    content: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskItem:
        try:
            return cls(
                id=str(data["id"]),
                content=str(data["content"]),
                status=TaskStatus(data.get("status", "pending")),
                priority=TaskPriority(data.get("priority", "medium")),
            )
        except KeyError as e:
            raise InvalidTaskList(f"task item missing field {e}") from e
        except ValueError as e:
            raise InvalidTaskList(str(e)) from e

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "content": self.content,
            "status": self.status.value,
            "priority": self.priority.value,
        }


def validate_tasks(items: Iterable[TaskItem]) -> tuple[TaskItem, ...]:
    """Check list invariants; return the items as a tuple."""
    result = tuple(items)
    seen: set[str] = set()
    for item in result:
        if not item.content.strip():
            raise InvalidTaskList(f"task {item.id!r} has empty content")
        if item.id in seen:
            raise InvalidTaskList(f"duplicate task id {item.id!r}")
        seen.add(item.id)

    in_progress = [i.id for i in result if i.status is TaskStatus.IN_PROGRESS]
    if len(in_progress) > 1:
        raise InvalidTaskList(
            f"only one task may be in_progress, got {len(in_progress)}: {', '.join(in_progress)}"
        )
    return result


class TaskListStore:
    """Session-scoped task list; reads are lock-free, writes serialized."""

    def __init__(self) -> None:
        self._items: tuple[TaskItem, ...] = ()
        self._lock = asyncio.Lock()

    def read(self) -> list[TaskItem]:
        return list(self._items)

    async def write(self, items: Iterable[TaskItem | Mapping[str, Any]]) -> list[TaskItem]:
        parsed = [i if isinstance(i, TaskItem) else TaskItem.from_dict(i) for i in items]
        validated = validate_tasks(parsed)
        async with self._lock:
            self._items = validated
        return list(validated)

    def incomplete(self) -> list[TaskItem]:
        return [i for i in self._items if not i.status.done]

    def __len__(self) -> int:
        return len(self._items)
