"""
Tests for the RunContext event plumbing and the prompt helpers shared by
the adapters.
"""
import asyncio

import pytest

from cowork.core.adapter import (
    RunContext,
    append_file_attachments,
    format_history_prompt,
)
from cowork.core.constants import PARTIAL_CHUNK_SIZE
from cowork.core.exceptions import CancellationError, StructuredToolError
from cowork.core.schemas import (
    FileAttachmentBlock,
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    TraceStepStatus,
    TraceStepType,
)

from recorders import SESSION_ID, EventRecorder


def user(text: str) -> Message:
    return Message(session_id=SESSION_ID, role=MessageRole.USER, content=[TextBlock(text=text)])


def assistant(text: str) -> Message:
    return Message(
        session_id=SESSION_ID, role=MessageRole.ASSISTANT, content=[TextBlock(text=text)]
    )


class TestPromptHelpers:

    def test_history_inlined_as_transcript(self) -> None:
        prompt = format_history_prompt([user("hi"), assistant("hello")], "next")

        assert prompt == "Human: hi\nAssistant: hello\nHuman: next\nAssistant:"

    def test_empty_history_keeps_prompt(self) -> None:
        assert format_history_prompt([], "just this") == "just this"

    def test_history_skips_tool_only_messages(self) -> None:
        tool_only = Message(
            session_id=SESSION_ID,
            role=MessageRole.ASSISTANT,
            content=[ToolUseBlock(id="t1", name="Read")],
        )
        assert format_history_prompt([tool_only], "go") == "go"

    def test_file_attachments_listed(self) -> None:
        prompt = append_file_attachments(
            "review these",
            [
                FileAttachmentBlock(path="/srv/a.py", size=10),
                ImageBlock(data="aGk="),
                FileAttachmentBlock(path="/srv/b.py"),
            ],
        )

        assert prompt == "review these\n\nAttached files:\n- /srv/a.py\n- /srv/b.py"

    def test_no_attachments(self) -> None:
        assert append_file_attachments("plain", []) == "plain"


class TestResumeToken:

    @pytest.mark.asyncio
    async def test_new_token_reported_once(self, recorder: EventRecorder) -> None:
        issued: list[str] = []

        async def on_token(token: str) -> None:
            issued.append(token)

        context = RunContext(
            SESSION_ID, recorder, broker=None, cancel_event=asyncio.Event(),
            on_resume_token=on_token,
        )
        await context.set_resume_token("t1")
        await context.set_resume_token("t1")
        await context.set_resume_token("")

        assert issued == ["t1"]
        assert context.resume_token == "t1"


class TestThinkingSteps:

    @pytest.mark.asyncio
    async def test_begin_closes_previous(self, run_context, recorder) -> None:
        first = await run_context.begin_thinking()
        second = await run_context.begin_thinking("Planning")

        assert recorder.steps[first].status == TraceStepStatus.COMPLETED
        assert recorder.steps[first].duration is not None
        assert recorder.steps[second].title == "Planning"
        assert run_context.current_thinking_step_id == second

    @pytest.mark.asyncio
    async def test_close_completes_thinking(self, run_context, recorder) -> None:
        step_id = await run_context.begin_thinking()

        await run_context.close()

        assert recorder.steps[step_id].status == TraceStepStatus.COMPLETED
        assert run_context.current_thinking_step_id is None

    @pytest.mark.asyncio
    async def test_close_with_error_marks_step(self, run_context, recorder) -> None:
        step_id = await run_context.begin_thinking()

        await run_context.close(error="upstream exploded")

        step = recorder.steps[step_id]
        assert step.status == TraceStepStatus.ERROR
        assert step.title == "Error occurred"
        assert step.tool_output == "upstream exploded"
        assert step.is_error is True

    @pytest.mark.asyncio
    async def test_close_with_error_and_no_thinking(self, run_context, recorder) -> None:
        await run_context.close(error="failed before start")

        [step] = recorder.steps.values()
        assert step.type == TraceStepType.THINKING
        assert step.status == TraceStepStatus.ERROR

    @pytest.mark.asyncio
    async def test_close_after_cancel_says_stopped(self, run_context, recorder) -> None:
        step_id = await run_context.begin_thinking()
        run_context.cancel_event.set()

        await run_context.close()

        assert recorder.steps[step_id].title == "Stopped"
        with pytest.raises(CancellationError):
            run_context.raise_if_cancelled()


class TestToolOrdering:

    @pytest.mark.asyncio
    async def test_tool_call_step_precedes_result(self, run_context, recorder) -> None:
        await run_context.emit_tool_use(ToolUseBlock(id="t1", name="Bash", input={"cmd": "ls"}))
        await run_context.emit_tool_result(ToolResultBlock(tool_use_id="t1", content="a.py"))

        assert recorder.kinds() == ["trace_step", "trace_update"]
        step = recorder.steps["t1"]
        assert step.type == TraceStepType.TOOL_CALL
        assert step.status == TraceStepStatus.COMPLETED
        assert step.tool_output == "a.py"
        assert run_context.failure.has_turn_output is True
        assert run_context.failure.has_turn_side_effects is True

    @pytest.mark.asyncio
    async def test_result_without_call_creates_step_first(self, run_context, recorder) -> None:
        await run_context.emit_tool_result(
            ToolResultBlock(tool_use_id="orphan", content="boom", is_error=True)
        )

        assert recorder.kinds() == ["trace_step", "trace_update"]
        assert recorder.steps["orphan"].status == TraceStepStatus.ERROR

    @pytest.mark.asyncio
    async def test_repeated_tool_use_creates_one_step(self, run_context, recorder) -> None:
        block = ToolUseBlock(id="t1", name="Read")
        await run_context.emit_tool_use(block)
        await run_context.emit_tool_use(block)

        assert len(recorder.of_type("trace_step")) == 1

    @pytest.mark.asyncio
    async def test_structured_tool_error_becomes_error_result(
        self, run_context, recorder
    ) -> None:
        await run_context.emit_tool_use(ToolUseBlock(id="t9", name="Bash"))

        await run_context.record_tool_error(StructuredToolError("t9", "exit status 2"))
        await run_context.flush()

        assert recorder.steps["t9"].is_error is True
        [message] = recorder.messages
        result = message.content[1]
        assert isinstance(result, ToolResultBlock) and result.is_error


class TestAssistantText:

    @pytest.mark.asyncio
    async def test_unstreamed_text_replayed_in_chunks(self, run_context, recorder) -> None:
        text = "x" * (PARTIAL_CHUNK_SIZE * 2 + 5)

        await run_context.emit_assistant_text(text)

        partials = recorder.of_type("partial_text")
        assert partials[:-1] == [
            text[:PARTIAL_CHUNK_SIZE],
            text[PARTIAL_CHUNK_SIZE:PARTIAL_CHUNK_SIZE * 2],
            text[PARTIAL_CHUNK_SIZE * 2:],
        ]
        assert partials[-1] == ""
        assert [m.text for m in recorder.messages] == [text]

    @pytest.mark.asyncio
    async def test_streamed_text_not_replayed(self, run_context, recorder) -> None:
        await run_context.emit_partial_text("Hel")
        await run_context.emit_partial_text("lo")

        await run_context.emit_assistant_text("Hello")

        assert recorder.of_type("partial_text") == ["Hel", "lo", ""]
        assert recorder.kinds()[-1] == "message"

    @pytest.mark.asyncio
    async def test_tool_blocks_travel_with_text(self, run_context, recorder) -> None:
        await run_context.emit_tool_use(ToolUseBlock(id="t1", name="Read"))
        await run_context.emit_tool_result(ToolResultBlock(tool_use_id="t1", content="ok"))

        await run_context.emit_assistant_text("Read it.")

        [message] = recorder.messages
        assert [block.type for block in message.content] == ["tool_use", "tool_result", "text"]

    @pytest.mark.asyncio
    async def test_artifacts_become_steps(self, run_context, recorder) -> None:
        text = 'Done.\n```artifact\n{"path": "/tmp/report.md", "name": "Report"}\n```'

        await run_context.emit_assistant_text(text)

        [step] = recorder.of_type("trace_step")
        assert step.title == "artifact"
        assert recorder.messages[0].text == "Done."


class TestHumanInTheLoop:

    @pytest.mark.asyncio
    async def test_approval_denied_when_cancelled(self, run_context, recorder) -> None:
        run_context.cancel_event.set()

        result = await run_context.request_approval("t1", "Bash", {"cmd": "rm"})

        assert result == "deny"
        assert recorder.of_type("approval_request") == [("t1", "Bash", {"cmd": "rm"})]
