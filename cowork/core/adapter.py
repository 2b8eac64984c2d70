"""
Backend adapter contract and per-invocation run context.

A BackendAdapter drives one external agent runtime (an SDK client, a CLI
subprocess, a REST stream). The orchestrator only talks to this
interface. Every invocation receives a RunContext, which owns the event
sink, the permission broker, the cancellation signal and the resume
token, and tracks what the invocation has observably done so far.

Adapters report events through the RunContext rather than the sink
directly, so the ordering rules hold for every backend:

- a tool_call trace step is created before the tool result that
  references it;
- partial text deltas precede exactly one assistant Message per
  assistant turn;
- the current thinking step is closed before the run counts as finished.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .artifacts import build_artifact_trace_steps, extract_artifacts
from .constants import PARTIAL_CHUNK_SIZE, TRACE_OUTPUT_PREVIEW_LENGTH
from .event_sink import EventSink
from .exceptions import CancellationError, StructuredToolError
from .schemas import (
    Answer,
    ApprovalResult,
    ContentBlock,
    FailureContext,
    FileAttachmentBlock,
    Message,
    MessageRole,
    QuestionItem,
    Session,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    TraceStep,
    TraceStepStatus,
    TraceStepType,
    new_id,
)

if TYPE_CHECKING:
    from ..services.permission_broker import PermissionBroker

logger = logging.getLogger(__name__)

ResumeTokenCallback = Callable[[str], Awaitable[None]]


class RunContext:
    """
    State and event plumbing for one adapter invocation.

    Args:
        session_id: The session being run.
        sink: Event sink to publish through.
        broker: Permission broker for approvals and clarifications.
        cancel_event: Per-session cancellation signal.
        resume_token: Token to continue the backend conversation, if any.
        on_resume_token: Awaited with every new token the backend issues.
        attachments: Content attached to the prompt (images, files).
    """

    def __init__(
        self,
        session_id: str,
        sink: EventSink,
        broker: "PermissionBroker",
        cancel_event: asyncio.Event,
        resume_token: Optional[str] = None,
        on_resume_token: Optional[ResumeTokenCallback] = None,
        attachments: Optional[list[ContentBlock]] = None,
    ) -> None:
        self.session_id = session_id
        self.sink = sink
        self.broker = broker
        self.cancel_event = cancel_event
        self.resume_token = resume_token
        self.attachments: list[ContentBlock] = list(attachments or [])
        self.failure = FailureContext()

        self._on_resume_token = on_resume_token
        self._current_thinking_step_id: Optional[str] = None
        self._step_started_at: dict[str, float] = {}
        self._tool_steps: set[str] = set()
        self._pending_content: list[ContentBlock] = []
        self._streamed_partial = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def current_thinking_step_id(self) -> Optional[str]:
        return self._current_thinking_step_id

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise CancellationError("Run cancelled")

    def begin_attempt(self) -> None:
        """
        Reset per-attempt tracking before a retried invocation.

        A resumed backend may number its items from the start again, so
        tool ids seen by the failed attempt must not suppress new steps.
        The resume token and failure context carry over.
        """
        self._tool_steps.clear()
        self._streamed_partial = False

    # ------------------------------------------------------------------
    # Resume token
    # ------------------------------------------------------------------

    async def set_resume_token(self, token: str) -> None:
        """Capture the latest token issued by the backend's session-start event."""
        if not token or token == self.resume_token:
            return
        self.resume_token = token
        logger.debug(f"Resume token issued for session {self.session_id}")
        if self._on_resume_token is not None:
            await self._on_resume_token(token)

    # ------------------------------------------------------------------
    # Trace steps
    # ------------------------------------------------------------------

    async def emit_step(self, step: TraceStep) -> None:
        if step.status == TraceStepStatus.RUNNING:
            self._step_started_at[step.id] = time.monotonic()
        await self.sink.emit_trace_step(self.session_id, step)

    async def update_step(self, step_id: str, updates: dict[str, Any]) -> None:
        """Update a step in place; a final status also records its duration."""
        updates = dict(updates)
        status = updates.get("status")
        if status is not None and status != TraceStepStatus.RUNNING:
            started = self._step_started_at.pop(step_id, None)
            if started is not None and "duration" not in updates:
                updates["duration"] = round(time.monotonic() - started, 3)
            if step_id == self._current_thinking_step_id:
                self._current_thinking_step_id = None
        await self.sink.update_trace_step(self.session_id, step_id, updates)

    async def begin_thinking(
        self,
        title: str = "Thinking",
        step_id: Optional[str] = None,
    ) -> str:
        """
        Open a thinking step, closing any still-running one first.

        Returns:
            The new step id.
        """
        if self._current_thinking_step_id is not None:
            await self.update_step(
                self._current_thinking_step_id,
                {"status": TraceStepStatus.COMPLETED},
            )
        step = TraceStep(
            id=step_id or new_id(), type=TraceStepType.THINKING, title=title
        )
        self._current_thinking_step_id = step.id
        await self.emit_step(step)
        return step.id

    async def finish_thinking(
        self,
        status: TraceStepStatus = TraceStepStatus.COMPLETED,
        title: Optional[str] = None,
        output: Optional[str] = None,
    ) -> None:
        """Close the current thinking step, if one is running."""
        step_id = self._current_thinking_step_id
        if step_id is None:
            return
        updates: dict[str, Any] = {"status": status}
        if title is not None:
            updates["title"] = title
        if output is not None:
            updates["tool_output"] = output[:TRACE_OUTPUT_PREVIEW_LENGTH]
        if status == TraceStepStatus.ERROR:
            updates["is_error"] = True
        await self.update_step(step_id, updates)

    # ------------------------------------------------------------------
    # Tool use / results
    # ------------------------------------------------------------------

    def has_tool_step(self, tool_use_id: str) -> bool:
        return tool_use_id in self._tool_steps

    async def emit_tool_use(self, block: ToolUseBlock) -> None:
        """Create the running tool_call step and buffer the ToolUse block."""
        self.failure.has_turn_output = True
        if block.id not in self._tool_steps:
            self._tool_steps.add(block.id)
            await self.emit_step(
                TraceStep(
                    id=block.id,
                    type=TraceStepType.TOOL_CALL,
                    title=block.name,
                    tool_name=block.name,
                    tool_input=block.input,
                )
            )
        self._pending_content.append(block)

    async def emit_tool_result(self, block: ToolResultBlock) -> None:
        """Complete the matching tool_call step and buffer the ToolResult block."""
        self.failure.has_turn_side_effects = True
        if block.tool_use_id not in self._tool_steps:
            # Result without an announced call: create the step first
            await self.emit_tool_use(
                ToolUseBlock(id=block.tool_use_id, name="tool", input={})
            )
        await self.update_step(
            block.tool_use_id,
            {
                "status": (
                    TraceStepStatus.ERROR if block.is_error
                    else TraceStepStatus.COMPLETED
                ),
                "tool_output": block.content[:TRACE_OUTPUT_PREVIEW_LENGTH],
                "is_error": block.is_error,
            },
        )
        self._pending_content.append(block)

    async def record_tool_error(self, error: StructuredToolError) -> None:
        """Surface a structured tool failure as an is_error ToolResult."""
        await self.emit_tool_result(
            ToolResultBlock(
                tool_use_id=error.tool_use_id,
                content=str(error),
                is_error=True,
            )
        )

    # ------------------------------------------------------------------
    # Assistant text
    # ------------------------------------------------------------------

    async def emit_partial_text(self, delta: str) -> None:
        if not delta:
            return
        self.failure.has_turn_output = True
        self._streamed_partial = True
        await self.sink.emit_partial_text(self.session_id, delta)

    async def emit_assistant_text(
        self,
        text: str,
        usage: Optional[TokenUsage] = None,
    ) -> None:
        """
        Finish one assistant turn.

        Artifacts are parsed out of the text into trace steps. If the
        backend did not stream the text as deltas, it is replayed in
        chunks. Then the partial is cleared and one assistant Message
        carrying the buffered tool blocks plus the text is appended.
        """
        clean_text, artifacts = extract_artifacts(text)
        for step in build_artifact_trace_steps(artifacts):
            await self.emit_step(step)

        if clean_text:
            self.failure.has_turn_output = True
            if not self._streamed_partial:
                for start in range(0, len(clean_text), PARTIAL_CHUNK_SIZE):
                    if self.cancelled:
                        break
                    await self.sink.emit_partial_text(
                        self.session_id,
                        clean_text[start:start + PARTIAL_CHUNK_SIZE],
                    )
            self._pending_content.append(TextBlock(text=clean_text))

        await self.sink.emit_partial_text(self.session_id, "")
        self._streamed_partial = False
        await self.flush(token_usage=usage)

    async def flush(self, token_usage: Optional[TokenUsage] = None) -> None:
        """Append buffered content as one assistant Message."""
        if not self._pending_content:
            return
        message = Message(
            session_id=self.session_id,
            role=MessageRole.ASSISTANT,
            content=list(self._pending_content),
            token_usage=token_usage,
        )
        self._pending_content.clear()
        await self.sink.append_message(self.session_id, message)

    # ------------------------------------------------------------------
    # Human in the loop
    # ------------------------------------------------------------------

    async def request_approval(
        self,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> ApprovalResult:
        return await self.broker.request_approval(
            self.session_id, tool_use_id, tool_name, tool_input, self.cancel_event
        )

    async def request_clarification(self, questions: list[QuestionItem]) -> Answer:
        return await self.broker.request_clarification(
            self.session_id, questions, self.cancel_event
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def close(self, error: Optional[str] = None) -> None:
        """
        Flush buffered content and close the thinking step.

        Called by the orchestrator after every invocation, on success and
        on the error path alike.
        """
        if self._streamed_partial:
            await self.sink.emit_partial_text(self.session_id, "")
            self._streamed_partial = False
        await self.flush()
        if error is not None:
            if self._current_thinking_step_id is not None:
                await self.finish_thinking(
                    TraceStepStatus.ERROR, title="Error occurred", output=error
                )
            else:
                await self.emit_step(
                    TraceStep(
                        type=TraceStepType.THINKING,
                        status=TraceStepStatus.ERROR,
                        title="Error occurred",
                        tool_output=error[:TRACE_OUTPUT_PREVIEW_LENGTH],
                        is_error=True,
                    )
                )
        elif self.cancelled:
            await self.finish_thinking(TraceStepStatus.COMPLETED, title="Stopped")
        else:
            await self.finish_thinking(TraceStepStatus.COMPLETED)


def format_history_prompt(history: list[Message], prompt: str) -> str:
    """
    Inline prior text turns into the prompt.

    Used when the backend has no resume token to continue from, so the
    conversation context is replayed as a Human/Assistant transcript.
    """
    lines = []
    for message in history:
        text = "\n".join(b.text for b in message.content if isinstance(b, TextBlock))
        if not text:
            continue
        speaker = "Human" if message.role == MessageRole.USER else "Assistant"
        lines.append(f"{speaker}: {text}")
    if not lines:
        return prompt
    return "\n".join(lines) + f"\nHuman: {prompt}\nAssistant:"


def append_file_attachments(prompt: str, attachments: list[ContentBlock]) -> str:
    """List attached file paths after the prompt for text-only backends."""
    paths = [b.path for b in attachments if isinstance(b, FileAttachmentBlock)]
    if not paths:
        return prompt
    listing = "\n".join(f"- {path}" for path in paths)
    return f"{prompt}\n\nAttached files:\n{listing}"


class BackendAdapter(ABC):
    """
    Contract for a pluggable agent backend.

    run() may raise AdapterError (optionally with retryable_hint and
    failure_context), AuthorizationError, CancellationError or
    StructuredToolError. Tool execution stays inside the backend runtime.
    """

    name: str = "adapter"

    @abstractmethod
    async def run(
        self,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> None:
        """Execute one turn, reporting everything through ``context``."""
        pass

    @abstractmethod
    def cancel(self, session_id: str) -> None:
        """Best-effort, idempotent stop of the session's active run."""
        pass

    def handle_clarification_answer(self, question_id: str, answer: Answer) -> bool:
        """Resolve a backend-local clarification. False if the id is unknown."""
        _ = question_id, answer
        return False

    def clear_resume_token(self, session_id: str) -> None:
        """Forget backend-side conversation state (working directory changed)."""
        _ = session_id

    def is_available(self) -> bool:
        """Whether this adapter can run at all (credentials present, ...)."""
        return True
