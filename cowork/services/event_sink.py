"""
Persistent event sink.

Fans orchestrator events out to durable storage and the live UI channel.
Trace steps and messages are persisted first and then published, so a
subscriber never sees an event the store does not have. Partial text,
status, requests and errors are publish-only.
"""
import logging
from typing import Any

from pydantic_core import to_jsonable_python

from ..core.event_sink import EventSink
from ..core.schemas import Message, QuestionItem, SessionStatus, TraceStep
from .event_stream import EventHub
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class PersistentEventSink(EventSink):
    """
    EventSink backed by a SessionStore and an EventHub.

    Args:
        store: Durable store for trace steps and messages.
        hub: Live fanout to SSE subscribers.
    """

    def __init__(self, store: SessionStore, hub: EventHub) -> None:
        self._store = store
        self._hub = hub

    def _publish(self, session_id: str, event_type: str, data: dict[str, Any]) -> None:
        self._hub.publish(
            session_id,
            self._hub.build_event(session_id, event_type, to_jsonable_python(data)),
        )

    async def emit_trace_step(self, session_id: str, step: TraceStep) -> None:
        await self._store.create_trace_step(session_id, step)
        self._publish(session_id, "trace_step", step.model_dump(mode="json"))

    async def update_trace_step(
        self,
        session_id: str,
        step_id: str,
        partial_update: dict[str, Any],
    ) -> None:
        updated = await self._store.update_trace_step(session_id, step_id, partial_update)
        if updated is None:
            return
        self._publish(
            session_id,
            "trace_update",
            {"step_id": step_id, "updates": partial_update},
        )

    async def append_message(self, session_id: str, message: Message) -> None:
        await self._store.create_message(message)
        self._publish(session_id, "message", message.model_dump(mode="json"))

    async def emit_partial_text(self, session_id: str, delta: str) -> None:
        self._publish(session_id, "partial_text", {"delta": delta})

    async def emit_status(self, session_id: str, status: SessionStatus) -> None:
        logger.debug(f"Session {session_id} status: {status}")
        self._publish(session_id, "status", {"status": status})

    async def emit_approval_request(
        self,
        session_id: str,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> None:
        self._publish(
            session_id,
            "approval_request",
            {"tool_use_id": tool_use_id, "tool_name": tool_name, "input": tool_input},
        )

    async def emit_clarification_request(
        self,
        session_id: str,
        question_id: str,
        questions: list[QuestionItem],
    ) -> None:
        self._publish(
            session_id,
            "clarification_request",
            {
                "question_id": question_id,
                "questions": [q.model_dump(mode="json", by_alias=True) for q in questions],
            },
        )

    async def emit_error(
        self,
        session_id: str,
        message: str,
        error_type: str = "error",
    ) -> None:
        logger.error(f"Session {session_id} error ({error_type}): {message}")
        self._publish(session_id, "error", {"message": message, "error_type": error_type})
