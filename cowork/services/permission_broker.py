"""
Permission broker.

Turns tool-approval and clarifying-question requests into awaitables
that an out-of-band human response resolves. Each pending request is an
asyncio.Future raced against the run's cancellation event; when the run
is cancelled first the request resolves with a neutral default (deny, or
an empty answer), so the awaiting invocation never hangs.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Optional, Union

from ..core.event_sink import EventSink
from ..core.schemas import Answer, ApprovalResult, QuestionItem, new_id

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A request waiting for a human response."""
    request_id: str
    session_id: str
    kind: str
    future: asyncio.Future
    default: Union[ApprovalResult, Answer] = field(default_factory=dict)


class PermissionBroker:
    """
    Registry of pending approvals (keyed by tool-use id) and
    clarifications (keyed by a fresh question id).

    Args:
        sink: Event sink that publishes the request events.
    """

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._approvals: dict[str, PendingRequest] = {}
        self._questions: dict[str, PendingRequest] = {}

    async def request_approval(
        self,
        session_id: str,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> ApprovalResult:
        """
        Ask the user whether a tool call may run.

        Returns:
            The user's decision, or DENY if the run is cancelled first.
        """
        pending = PendingRequest(
            request_id=tool_use_id,
            session_id=session_id,
            kind="approval",
            future=asyncio.get_running_loop().create_future(),
            default=ApprovalResult.DENY,
        )
        logger.info(f"Approval requested for {tool_name} ({tool_use_id}) in {session_id}")
        return await self._wait(
            pending,
            self._approvals,
            self._sink.emit_approval_request(session_id, tool_use_id, tool_name, tool_input),
            cancel_event,
        )

    async def request_clarification(
        self,
        session_id: str,
        questions: list[QuestionItem],
        cancel_event: asyncio.Event,
    ) -> Answer:
        """
        Ask the user clarifying questions.

        Returns:
            Selected labels keyed by question index, or {} if the run is
            cancelled first.
        """
        question_id = new_id()
        pending = PendingRequest(
            request_id=question_id,
            session_id=session_id,
            kind="clarification",
            future=asyncio.get_running_loop().create_future(),
            default={},
        )
        logger.info(f"Sending {len(questions)} questions for session {session_id}")
        return await self._wait(
            pending,
            self._questions,
            self._sink.emit_clarification_request(session_id, question_id, questions),
            cancel_event,
        )

    async def _wait(
        self,
        pending: PendingRequest,
        registry: dict[str, PendingRequest],
        announce: Awaitable[None],
        cancel_event: asyncio.Event,
    ) -> Any:
        """
        Register ``pending``, publish it with ``announce`` and wait for a
        response or cancellation.

        The request is registered before it is announced so an immediate
        response finds it.
        """
        registry[pending.request_id] = pending
        cancel_waiter: Optional[asyncio.Future] = None
        try:
            await announce
            if cancel_event.is_set():
                self._resolve(registry, pending.request_id, pending.default)

            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            await asyncio.wait(
                {pending.future, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            # Removed whatever happened, including a failed announce
            registry.pop(pending.request_id, None)

        if pending.future.done():
            return pending.future.result()

        logger.info(
            f"Run cancelled with pending {pending.kind} {pending.request_id}; "
            f"resolving with default"
        )
        pending.future.set_result(pending.default)
        return pending.default

    @staticmethod
    def _resolve(
        registry: dict[str, PendingRequest],
        request_id: str,
        value: Any,
    ) -> bool:
        pending = registry.pop(request_id, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(value)
        return True

    def answer_approval(self, tool_use_id: str, result: ApprovalResult) -> bool:
        """
        Resolve a pending approval.

        Returns:
            False for an unknown or already resolved id.
        """
        resolved = self._resolve(self._approvals, tool_use_id, ApprovalResult(result))
        if not resolved:
            logger.debug(f"Ignoring approval response for unknown id {tool_use_id}")
        return resolved

    def answer_clarification(self, question_id: str, answer: Answer) -> bool:
        """
        Resolve a pending clarification.

        Returns:
            False for an unknown or already resolved id.
        """
        resolved = self._resolve(self._questions, question_id, dict(answer))
        if not resolved:
            logger.debug(f"Ignoring answer for unknown question {question_id}")
        return resolved

    def cancel_session(self, session_id: str) -> int:
        """
        Resolve every pending request of a session with its default.

        Returns:
            Number of requests resolved.
        """
        count = 0
        for registry in (self._approvals, self._questions):
            for request_id, pending in list(registry.items()):
                if pending.session_id == session_id:
                    if self._resolve(registry, request_id, pending.default):
                        count += 1
        if count:
            logger.info(f"Resolved {count} pending requests for session {session_id}")
        return count

    def pending_count(self, session_id: Optional[str] = None) -> int:
        pending = list(self._approvals.values()) + list(self._questions.values())
        if session_id is None:
            return len(pending)
        return sum(1 for p in pending if p.session_id == session_id)
