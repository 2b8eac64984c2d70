"""
Tests for the permission broker.

Approvals and clarifications resolve from out-of-band answers; a
cancelled run resolves them with deny / an empty answer. A request whose
event cannot be delivered is dropped from the registry.
"""
import asyncio

import pytest

from cowork.core.schemas import ApprovalResult, QuestionItem, QuestionOption
from cowork.services.permission_broker import PermissionBroker

from fakes import RecordingSink

SESSION_ID = "20260101_120000_abcdef12"


@pytest.fixture
def recording_broker(recording_sink: RecordingSink) -> PermissionBroker:
    return PermissionBroker(recording_sink)


async def wait_for_pending(broker: PermissionBroker, count: int = 1) -> None:
    for _ in range(100):
        if broker.pending_count() >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("request never became pending")


class TestApprovals:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_answer_resolves_request(self, recording_broker, recording_sink) -> None:
        task = asyncio.create_task(recording_broker.request_approval(
            SESSION_ID, "tu-1", "Bash", {"command": "ls"}, asyncio.Event()
        ))
        await wait_for_pending(recording_broker)

        assert recording_broker.answer_approval("tu-1", ApprovalResult.ALLOW) is True
        assert await task == ApprovalResult.ALLOW
        assert recording_sink.of_type("approval_request") == [("tu-1", "Bash", {"command": "ls"})]
        assert recording_broker.pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_answer_is_ignored(self, recording_broker) -> None:
        task = asyncio.create_task(recording_broker.request_approval(
            SESSION_ID, "tu-1", "Bash", {}, asyncio.Event()
        ))
        await wait_for_pending(recording_broker)

        assert recording_broker.answer_approval("tu-1", "allow_always") is True
        assert recording_broker.answer_approval("tu-1", ApprovalResult.DENY) is False
        assert await task == ApprovalResult.ALLOW_ALWAYS

    @pytest.mark.unit
    def test_unknown_id_is_ignored(self, recording_broker) -> None:
        assert recording_broker.answer_approval("missing", ApprovalResult.ALLOW) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_resolves_deny(self, recording_broker) -> None:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(recording_broker.request_approval(
            SESSION_ID, "tu-2", "Write", {}, cancel_event
        ))
        await wait_for_pending(recording_broker)

        cancel_event.set()

        assert await asyncio.wait_for(task, timeout=1) == ApprovalResult.DENY
        assert recording_broker.pending_count(SESSION_ID) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_already_cancelled_run_denies_immediately(self, recording_broker) -> None:
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await asyncio.wait_for(
            recording_broker.request_approval(SESSION_ID, "tu-3", "Bash", {}, cancel_event),
            timeout=1,
        )

        assert result == ApprovalResult.DENY


class TestClarifications:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_answer_resolves_with_labels(self, recording_broker, recording_sink) -> None:
        questions = [QuestionItem(
            question="Which database?",
            options=[QuestionOption(label="sqlite"), QuestionOption(label="postgres")],
        )]
        task = asyncio.create_task(
            recording_broker.request_clarification(SESSION_ID, questions, asyncio.Event())
        )
        await wait_for_pending(recording_broker)
        question_id, sent = recording_sink.of_type("clarification_request")[0]

        assert sent == questions
        assert recording_broker.answer_clarification(question_id, {"0": ["sqlite"]}) is True
        assert await task == {"0": ["sqlite"]}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_session_resolves_everything(self, recording_broker) -> None:
        approval = asyncio.create_task(recording_broker.request_approval(
            SESSION_ID, "tu-4", "Bash", {}, asyncio.Event()
        ))
        question = asyncio.create_task(recording_broker.request_clarification(
            SESSION_ID, [QuestionItem(question="Continue?")], asyncio.Event()
        ))
        await wait_for_pending(recording_broker, count=2)

        assert recording_broker.cancel_session(SESSION_ID) == 2
        assert await approval == ApprovalResult.DENY
        assert await question == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_resolves_empty_answer(self, recording_broker) -> None:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(recording_broker.request_clarification(
            SESSION_ID, [QuestionItem(question="Which branch?")], cancel_event
        ))
        await wait_for_pending(recording_broker)

        cancel_event.set()

        assert await asyncio.wait_for(task, timeout=1) == {}
        assert recording_broker.pending_count(SESSION_ID) == 0


class UnreachableSink(RecordingSink):
    """Sink whose request events cannot be delivered."""

    async def emit_approval_request(self, session_id, tool_use_id, tool_name, tool_input) -> None:
        raise ConnectionError("event stream closed")

    async def emit_clarification_request(self, session_id, question_id, questions) -> None:
        raise ConnectionError("event stream closed")


class TestUndeliveredRequests:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_approval_request_is_not_left_pending(self) -> None:
        broker = PermissionBroker(UnreachableSink())

        with pytest.raises(ConnectionError, match="event stream closed"):
            await broker.request_approval(SESSION_ID, "tu-5", "Bash", {}, asyncio.Event())

        assert broker.pending_count() == 0
        assert broker.answer_approval("tu-5", ApprovalResult.ALLOW) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_clarification_request_is_not_left_pending(self) -> None:
        broker = PermissionBroker(UnreachableSink())

        with pytest.raises(ConnectionError):
            await broker.request_clarification(
                SESSION_ID, [QuestionItem(question="Continue?")], asyncio.Event()
            )

        assert broker.pending_count() == 0
