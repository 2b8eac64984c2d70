"""
Tests for the session store.

Tests the SessionStore layer over a temporary SQLite database:
session CRUD, message and trace-step ordering, cascade delete, ID
validation and the database retry decorator.
"""
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from cowork.core.schemas import (
    ImageBlock,
    Message,
    MessageRole,
    Session,
    SessionStatus,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
    TraceStep,
    TraceStepStatus,
    TraceStepType,
    generate_session_id,
)
from cowork.services.session_store import (
    InvalidSessionIdError,
    SessionNotFoundError,
    SessionStore,
    validate_session_id,
    with_db_retry,
)


async def new_session(store: SessionStore, **fields) -> Session:
    return await store.create(Session(id=generate_session_id(), provider="claude", **fields))


class TestSessionCrud:
    """Tests for session rows."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_get(self, store: SessionStore) -> None:
        created = await new_session(
            store, title="Parser work", working_directory="/srv", allowed_tool_names=["Read"]
        )

        fetched = await store.get(created.id)
        assert fetched is not None
        assert fetched.title == "Parser work"
        assert fetched.status == SessionStatus.IDLE
        assert fetched.allowed_tool_names == ["Read"]
        assert fetched.resume_token is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store: SessionStore) -> None:
        assert await store.get(generate_session_id()) is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_fields(self, store: SessionStore) -> None:
        session = await new_session(store)

        updated = await store.update(
            session.id,
            status=SessionStatus.RUNNING,
            resume_token="thread-1",
            resume_backend="codex-cli",
        )

        assert updated.status == SessionStatus.RUNNING
        assert updated.resume_token == "thread-1"
        assert updated.resume_backend == "codex-cli"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_unknown_field_rejected(self, store: SessionStore) -> None:
        session = await new_session(store)
        with pytest.raises(ValueError):
            await store.update(session.id, id="other")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_missing_session(self, store: SessionStore) -> None:
        with pytest.raises(SessionNotFoundError):
            await store.update(generate_session_id(), title="x")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_all_with_total(self, store: SessionStore) -> None:
        for _ in range(3):
            await new_session(store)

        sessions, total = await store.list_all(limit=2)

        assert total == 3
        assert len(sessions) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reset_running_sessions(self, store: SessionStore) -> None:
        running = await new_session(store, status=SessionStatus.RUNNING)
        idle = await new_session(store)

        assert await store.reset_running_sessions() == 1
        assert (await store.get(running.id)).status == SessionStatus.IDLE
        assert (await store.get(idle.id)).status == SessionStatus.IDLE


class TestMessagesAndSteps:
    """Tests for messages and trace steps."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_messages_keep_insertion_order_and_blocks(self, store: SessionStore) -> None:
        session = await new_session(store)
        first = Message(
            session_id=session.id,
            role=MessageRole.USER,
            content=[TextBlock(text="look"), ImageBlock(data="aGk=", mime_type="image/png")],
        )
        second = Message(
            session_id=session.id,
            role=MessageRole.ASSISTANT,
            content=[
                ToolUseBlock(id="tu-1", name="Read", input={"path": "a.py"}),
                TextBlock(text="done"),
            ],
            token_usage=TokenUsage(input_tokens=10, output_tokens=5),
        )
        await store.create_message(first)
        await store.create_message(second)

        messages = await store.get_messages_by_session(session.id)

        assert [m.id for m in messages] == [first.id, second.id]
        assert isinstance(messages[0].content[1], ImageBlock)
        assert messages[1].tool_use_ids() == ["tu-1"]
        assert messages[1].token_usage.output_tokens == 5

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_trace_step_updated_in_place(self, store: SessionStore) -> None:
        session = await new_session(store)
        step = TraceStep(type=TraceStepType.TOOL_CALL, title="Bash", tool_name="Bash")
        await store.create_trace_step(session.id, step)

        updated = await store.update_trace_step(
            session.id, step.id, {"status": TraceStepStatus.COMPLETED, "tool_output": "ok"}
        )

        assert updated.status == TraceStepStatus.COMPLETED
        steps = await store.get_trace_steps_by_session(session.id)
        assert len(steps) == 1
        assert steps[0].tool_output == "ok"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeated_step_id_updates_latest(self, store: SessionStore) -> None:
        """Backends that reuse item ids per turn get one row per step."""
        session = await new_session(store)
        await store.create_trace_step(
            session.id, TraceStep(id="item_0", type=TraceStepType.TOOL_CALL, title="first turn")
        )
        await store.create_trace_step(
            session.id, TraceStep(id="item_0", type=TraceStepType.TOOL_CALL, title="second turn")
        )

        await store.update_trace_step(session.id, "item_0", {"status": TraceStepStatus.ERROR})

        steps = await store.get_trace_steps_by_session(session.id)
        assert [(s.title, s.status) for s in steps] == [
            ("first turn", TraceStepStatus.RUNNING),
            ("second turn", TraceStepStatus.ERROR),
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_update_unknown_step_returns_none(self, store: SessionStore) -> None:
        session = await new_session(store)
        assert await store.update_trace_step(session.id, "nope", {"title": "x"}) is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delete_cascades(self, store: SessionStore) -> None:
        session = await new_session(store)
        await store.create_message(
            Message(session_id=session.id, role=MessageRole.USER, content=[TextBlock(text="x")])
        )
        await store.create_trace_step(session.id, TraceStep(type=TraceStepType.THINKING))

        assert await store.delete(session.id) is True
        assert await store.get(session.id) is None
        assert await store.get_messages_by_session(session.id) == []
        assert await store.get_trace_steps_by_session(session.id) == []
        assert await store.delete(session.id) is False


class TestSessionIdValidation:

    @pytest.mark.unit
    def test_valid_id(self) -> None:
        validate_session_id(generate_session_id())

    @pytest.mark.unit
    @pytest.mark.parametrize("bad", ["", "abc", "../../etc", "20260101_120000_XYZ"])
    def test_invalid_ids(self, bad: str) -> None:
        with pytest.raises(InvalidSessionIdError):
            validate_session_id(bad)


class TestDbRetry:
    """Tests for the with_db_retry decorator."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_operational_error(self) -> None:
        func = AsyncMock(side_effect=[OperationalError("stmt", {}, Exception("locked")), "ok"])
        wrapped = with_db_retry(max_retries=2, retry_delay=0)(func)

        assert await wrapped() == "ok"
        assert func.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_integrity_error_not_retried(self) -> None:
        func = AsyncMock(side_effect=IntegrityError("stmt", {}, Exception("unique")))
        wrapped = with_db_retry(max_retries=2, retry_delay=0)(func)

        with pytest.raises(IntegrityError):
            await wrapped()
        assert func.await_count == 1
