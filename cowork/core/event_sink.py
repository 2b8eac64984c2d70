"""
Event sink interface.

The narrow publish surface adapters and the orchestrator write to. The
persistent implementation (cowork.services.event_sink.PersistentEventSink)
stores trace steps and messages before publishing them to live
subscribers. Partial text, status, requests and errors are publish-only.
"""
from abc import ABC, abstractmethod
from typing import Any

from .schemas import Message, QuestionItem, SessionStatus, TraceStep


class EventSink(ABC):
    """
    Abstract base class for orchestrator event output.

    All methods are coroutines; callers await them so that persistence
    completes before the next event is produced.
    """

    @abstractmethod
    async def emit_trace_step(self, session_id: str, step: TraceStep) -> None:
        """Record a new trace step."""
        pass

    @abstractmethod
    async def update_trace_step(
        self,
        session_id: str,
        step_id: str,
        partial_update: dict[str, Any],
    ) -> None:
        """Mutate an existing trace step in place by id."""
        pass

    @abstractmethod
    async def append_message(self, session_id: str, message: Message) -> None:
        """Append a complete message to the conversation."""
        pass

    @abstractmethod
    async def emit_partial_text(self, session_id: str, delta: str) -> None:
        """Stream a text delta. An empty delta clears any shown partial."""
        pass

    @abstractmethod
    async def emit_status(self, session_id: str, status: SessionStatus) -> None:
        pass

    @abstractmethod
    async def emit_approval_request(
        self,
        session_id: str,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    async def emit_clarification_request(
        self,
        session_id: str,
        question_id: str,
        questions: list[QuestionItem],
    ) -> None:
        pass

    @abstractmethod
    async def emit_error(
        self,
        session_id: str,
        message: str,
        error_type: str = "error",
    ) -> None:
        """Report a user-visible terminal failure."""
        pass
