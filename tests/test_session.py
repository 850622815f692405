"""Tests for sessions, the session lane and sub-session delegation."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentcore.config import reload_config
from agentcore.errors import AgentCoreError, ErrorCategory, ProviderError
from agentcore.session.permissions import Action, PermissionContext
from agentcore.session.protocols import SessionStatus, UpdateKind
from agentcore.session.tool_call import CompletedState
from tests.utils import ScriptedProvider, make_manager, text_step, tool_step, wait_for_async

ALLOW_ALL = {"default": "allow"}


class TestSession:
    """Test turns on a single session."""

    async def test_prompts_queue_in_order(self, tmp_path: Path) -> None:
        provider = ScriptedProvider([text_step("one"), text_step("two")])
        manager = make_manager(provider, tmp_path=tmp_path, permission=ALLOW_ALL)
        session = await manager.create_session(str(tmp_path))

        first, second = await wait_for_async(
            asyncio.gather(session.prompt("first"), session.prompt("second"))
        )
        assert (first.text, second.text) == ("one", "two")
        # The second turn saw the whole first exchange
        history = str(provider.requests[1].messages)
        assert "first" in history
        assert "one" in history
        assert [m.text for m in session.messages] == ["first", "one", "second", "two"]
        assert not session.busy

    async def test_subscribe_streams_updates(self, tmp_path: Path) -> None:
        provider = ScriptedProvider(
            [ProviderError(ErrorCategory.TRANSIENT, "503"), text_step("hi there")]
        )
        manager = make_manager(provider, tmp_path=tmp_path, permission=ALLOW_ALL)
        session = await manager.create_session(str(tmp_path))
        updates = session.subscribe()

        await session.prompt("hello")
        await manager.close_session(session.id)
        received = [u async for u in updates]

        kinds = [u.kind for u in received]
        assert kinds[0] is UpdateKind.STATUS_CHANGED
        assert received[0].payload == {"status": "busy"}
        assert UpdateKind.RETRY in kinds
        assert UpdateKind.PART_CREATED in kinds
        assert kinds[-1] is UpdateKind.TURN_FINISHED
        finished = received[-1].payload
        assert finished["finish"] == "stop"
        assert finished["steps"] == 1
        assert finished["failure"] is None
        assert all(u.session_id == session.id for u in received)
        statuses = [u.payload["status"] for u in received if u.kind is UpdateKind.STATUS_CHANGED]
        assert statuses == ["busy", "retrying", "busy", "idle"]

    async def test_failure_reported_in_turn_finished(self, tmp_path: Path) -> None:
        provider = ScriptedProvider([ProviderError(ErrorCategory.INVALID_REQUEST, "bad")])
        manager = make_manager(provider, tmp_path=tmp_path, permission=ALLOW_ALL)
        session = await manager.create_session(str(tmp_path))
        updates = session.subscribe()

        result = await session.prompt("hello")
        session.close()
        received = [u async for u in updates]

        assert result.failure.category is ErrorCategory.INVALID_REQUEST
        error = next(u for u in received if u.kind is UpdateKind.ERROR)
        assert error.payload == {"category": "invalid_request", "message": "bad"}
        assert received[-1].payload["failure"] == error.payload
        assert session.status is SessionStatus.IDLE

    async def test_closed_session_rejects_prompts(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path)
        session = await manager.create_session(str(tmp_path))
        await manager.close_session(session.id)
        with pytest.raises(AgentCoreError, match="closed"):
            await session.prompt("hello")


class TestSessionManager:
    """Test session creation, delegation and teardown."""

    async def test_create_and_lookup(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path)
        session = await manager.create_session(str(tmp_path), session_id="ses_fixed")
        assert await manager.get_session("ses_fixed") is session
        assert await manager.list_sessions() == ["ses_fixed"]
        assert session.agent.name == "build"
        assert session.parent_id is None
        assert str(tmp_path) in session.system_prompt

    async def test_duplicate_session_id(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path)
        await manager.create_session(str(tmp_path), session_id="ses_fixed")
        with pytest.raises(AgentCoreError, match="already exists"):
            await manager.create_session(str(tmp_path), session_id="ses_fixed")

    async def test_unknown_agent(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path)
        with pytest.raises(AgentCoreError, match="Unknown agent 'nope'"):
            await manager.create_session(str(tmp_path), agent="nope")

    async def test_task_tool_runs_sub_session(self, tmp_path: Path) -> None:
        provider = ScriptedProvider(
            [
                tool_step(
                    ("call_1", "task", {"description": "Find foo", "prompt": "Where is foo?"})
                ),
                text_step("foo is defined in bar.py"),
                text_step("It lives in bar.py."),
            ]
        )
        manager = make_manager(provider, tmp_path=tmp_path, permission=ALLOW_ALL)
        parent = await manager.create_session(str(tmp_path))

        result = await parent.prompt("find foo")
        assert result.ok
        assert result.text == "It lives in bar.py."

        # The child ran with its own prompt and without the task tool
        child_request = provider.requests[1]
        assert "Where is foo?" in str(child_request.messages)
        assert "find foo" not in str(child_request.messages)
        assert "delegated" in child_request.system_prompt
        assert "task" not in [t.name for t in child_request.tools]
        assert "task" in [t.name for t in provider.requests[0].tools]

        call = parent.messages[1].tool_calls()[0]
        assert isinstance(call.state, CompletedState)
        assert call.state.output == "foo is defined in bar.py"
        child_id = call.state.metadata["session_id"]
        assert child_id != parent.id
        # The finished child is released; only the parent stays registered
        assert await manager.list_sessions() == [parent.id]
        assert await manager.get_session(child_id) is None

    async def test_spawn_unknown_parent(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path)
        with pytest.raises(AgentCoreError, match="Unknown parent"):
            manager.spawn_subsession("ses_missing", "do things")

    async def test_subsession_handle(self, tmp_path: Path) -> None:
        provider = ScriptedProvider([text_step("child report")])
        manager = make_manager(provider, tmp_path=tmp_path, permission=ALLOW_ALL)
        parent = await manager.create_session(str(tmp_path))

        handle = manager.spawn_subsession(parent.id, "look around", "general", "Explore")
        assert handle.parent_id == parent.id
        result = await wait_for_async(handle.result())
        assert handle.done()
        assert result.text == "child report"
        assert result.session_id == handle.session_id
        await asyncio.sleep(0)
        assert await manager.list_sessions() == [parent.id]
        # The result stays available after the child is released
        assert (await handle.result()).text == "child report"

    async def test_close_session_closes_children(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path)
        parent = await manager.create_session(str(tmp_path))
        child = manager._new_session(
            str(tmp_path), manager.config.get_agent("general"), parent_id=parent.id
        )
        grandchild = manager._new_session(
            str(tmp_path), manager.config.get_agent("general"), parent_id=child.id
        )

        await manager.close_session(parent.id)
        assert await manager.list_sessions() == []
        assert grandchild.abort.is_set()
        with pytest.raises(AgentCoreError):
            await child.prompt("hello")

    async def test_config_reload_swaps_permission_rules(self, tmp_path: Path) -> None:
        manager = make_manager(ScriptedProvider(), tmp_path=tmp_path, permission=ALLOW_ALL)
        before = manager.controller.resolver
        context = PermissionContext(agent="build")
        assert before.snapshot(context).resolve("bash", "ls").action is Action.ALLOW

        config_dir = tmp_path / ".agentcore"
        config_dir.mkdir()
        (config_dir / "config.yaml").write_text(
            "permission:\n  default: allow\n  global:\n    - {tool: bash, action: deny}\n",
            encoding="utf-8",
        )
        reload_config(cwd=str(tmp_path))

        after = manager.controller.resolver
        assert after is not before
        assert after.snapshot(context).resolve("bash", "ls").action is Action.DENY

        await manager.close()
        reload_config(cwd=str(tmp_path))
        assert manager.controller.resolver is after
