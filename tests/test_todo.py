"""Tests for the session task list store."""

from __future__ import annotations

import asyncio

import pytest

from agentcore.errors import InvalidTaskList
from agentcore.session.todo import (
    TaskItem,
    TaskListStore,
    TaskPriority,
    TaskStatus,
    validate_tasks,
)


class TestTaskItem:
    """Test task item parsing."""

    def test_from_dict_defaults(self) -> None:
        item = TaskItem.from_dict({"id": "1", "content": "Write tests"})
        assert item.status is TaskStatus.PENDING
        assert item.priority is TaskPriority.MEDIUM
        assert item.to_dict() == {
            "id": "1",
            "content": "Write tests",
            "status": "pending",
            "priority": "medium",
        }

    def test_missing_field(self) -> None:
        with pytest.raises(InvalidTaskList, match="content"):
            TaskItem.from_dict({"id": "1"})

    def test_invalid_status(self) -> None:
        with pytest.raises(InvalidTaskList):
            TaskItem.from_dict({"id": "1", "content": "x", "status": "blocked"})

    def test_done(self) -> None:
        assert TaskStatus.COMPLETED.done
        assert TaskStatus.CANCELLED.done
        assert not TaskStatus.IN_PROGRESS.done


class TestValidateTasks:
    """Test list invariants."""

    def test_single_in_progress(self) -> None:
        items = [
            TaskItem("1", "a", TaskStatus.IN_PROGRESS),
            TaskItem("2", "b", TaskStatus.IN_PROGRESS),
        ]
        with pytest.raises(InvalidTaskList, match="in_progress"):
            validate_tasks(items)

    def test_duplicate_ids(self) -> None:
        with pytest.raises(InvalidTaskList, match="duplicate"):
            validate_tasks([TaskItem("1", "a"), TaskItem("1", "b")])

    def test_empty_content(self) -> None:
        with pytest.raises(InvalidTaskList, match="empty"):
            validate_tasks([TaskItem("1", "   ")])

    def test_valid(self) -> None:
        items = [TaskItem("1", "a", TaskStatus.IN_PROGRESS), TaskItem("2", "b")]
        assert validate_tasks(items) == tuple(items)


class TestTaskListStore:
    """Test atomic replacement."""

    async def test_starts_empty(self) -> None:
        store = TaskListStore()
        assert store.read() == []
        assert len(store) == 0

    async def test_write_replaces_whole_list(self) -> None:
        store = TaskListStore()
        await store.write([{"id": "1", "content": "a"}, {"id": "2", "content": "b"}])
        await store.write([{"id": "3", "content": "c", "status": "in_progress"}])
        assert [i.id for i in store.read()] == ["3"]

    async def test_invalid_write_leaves_list_untouched(self) -> None:
        store = TaskListStore()
        await store.write([{"id": "1", "content": "a"}])
        with pytest.raises(InvalidTaskList):
            await store.write(
                [
                    {"id": "1", "content": "a", "status": "in_progress"},
                    {"id": "2", "content": "b", "status": "in_progress"},
                ]
            )
        assert [i.id for i in store.read()] == ["1"]

    async def test_incomplete(self) -> None:
        store = TaskListStore()
        await store.write(
            [
                TaskItem("1", "done", TaskStatus.COMPLETED),
                TaskItem("2", "skip", TaskStatus.CANCELLED),
                TaskItem("3", "todo"),
            ]
        )
        assert [i.id for i in store.incomplete()] == ["3"]

    async def test_concurrent_writes_never_interleave(self) -> None:
        store = TaskListStore()
        lists = [[{"id": f"{n}-{k}", "content": f"item {k}"} for k in range(3)] for n in range(5)]
        await asyncio.gather(*(store.write(items) for items in lists))
        ids = [i.id for i in store.read()]
        prefix = ids[0].split("-")[0]
        assert ids == [f"{prefix}-{k}" for k in range(3)]

    async def test_read_returns_copy(self) -> None:
        store = TaskListStore()
        await store.write([{"id": "1", "content": "a"}])
        snapshot = store.read()
        snapshot.clear()
        assert len(store) == 1
