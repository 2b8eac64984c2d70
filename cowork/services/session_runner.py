"""
Session runner for Cowork.

The concurrency gate of the orchestrator. Each session has a FIFO prompt
queue and at most one active backend invocation. ``enqueue`` is a plain
method: the presence check on the active map and the insert happen
without yielding to the event loop, so two back-to-back enqueues can
never start two drains.

Every write to a session row goes through this class.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import RetrySettings
from ..core.adapter import BackendAdapter, RunContext
from ..core.constants import CANCEL_GRACE_SECONDS, DEFAULT_SESSION_TITLE
from ..core.error_classifier import ErrorCategory, ErrorClassifier, error_message
from ..core.event_sink import EventSink
from ..core.exceptions import TerminalRunError
from ..core.schemas import (
    Answer,
    ApprovalResult,
    ContentBlock,
    Message,
    MessageRole,
    PromptQueueEntry,
    Session,
    SessionStatus,
    TextBlock,
    TraceStep,
    derive_session_title,
    generate_session_id,
)
from .adapter_registry import AdapterRegistry, UnknownProviderError
from .failover import FailoverController
from .permission_broker import PermissionBroker
from .retry import RetryController, SleepFunc, cancellable_sleep
from .session_store import (
    SessionBusyError,
    SessionNotFoundError,
    SessionStore,
    validate_session_id,
)

logger = logging.getLogger(__name__)


@dataclass
class RunControl:
    """The active drain of one session."""
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    adapters: list[BackendAdapter] = field(default_factory=list)
    stopped: bool = False


class SessionRunner:
    """
    Per-session FIFO queues with a single active invocation each.

    Args:
        store: Durable session store.
        sink: Event sink for messages, trace steps and status.
        broker: Permission broker shared by all sessions.
        registry: Provider to adapter mapping.
        retry_settings: Retry cap and backoff base.
        classifier: Error classifier for retry and failover.
        sleep: Backoff wait, injectable for tests.
        default_provider: Provider for sessions created without one.
        default_allowed_tools: Allowed tool names for new sessions.
    """

    def __init__(
        self,
        store: SessionStore,
        sink: EventSink,
        broker: PermissionBroker,
        registry: AdapterRegistry,
        retry_settings: Optional[RetrySettings] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: SleepFunc = cancellable_sleep,
        default_provider: str = "claude",
        default_allowed_tools: Optional[list[str]] = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._broker = broker
        self._registry = registry
        self._classifier = classifier or ErrorClassifier()
        self._retry = RetryController(
            retry_settings or RetrySettings(), self._classifier, sleep=sleep
        )
        self._failover = FailoverController(self._retry, self._classifier)
        self._default_provider = default_provider
        self._default_allowed_tools = list(default_allowed_tools or [])

        self._queues: dict[str, deque[PromptQueueEntry]] = {}
        self._active: dict[str, RunControl] = {}

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        session_id: str,
        prompt: str,
        content: Optional[list[ContentBlock]] = None,
    ) -> int:
        """
        Queue a prompt, starting a drain if the session is idle.

        Returns:
            Number of prompts waiting for this session, this one included.

        Raises:
            InvalidSessionIdError: If the session ID format is invalid.
        """
        validate_session_id(session_id)
        queue = self._queues.setdefault(session_id, deque())
        queue.append(PromptQueueEntry(prompt=prompt, attached_content=list(content or [])))
        if session_id not in self._active:
            self._start_drain(session_id)
        else:
            logger.info(f"Queued prompt for busy session {session_id} ({len(queue)} waiting)")
        return len(queue)

    def _start_drain(self, session_id: str) -> RunControl:
        control = RunControl()
        self._active[session_id] = control
        control.task = asyncio.get_running_loop().create_task(
            self._drain(session_id, control),
            name=f"cowork-drain-{session_id}",
        )
        return control

    async def stop(self, session_id: str) -> bool:
        """
        Cancel the active run and drop queued prompts.

        Returns:
            False if the session was idle (nothing to stop).
        """
        control = self._active.get(session_id)
        if control is None or control.stopped:
            return False

        logger.info(f"Stopping session {session_id}")
        control.stopped = True
        control.cancel_event.set()
        for adapter in control.adapters:
            adapter.cancel(session_id)
        self._broker.cancel_session(session_id)
        queue = self._queues.get(session_id)
        if queue:
            logger.info(f"Dropping {len(queue)} queued prompts for session {session_id}")
            queue.clear()
        await self._set_status(session_id, SessionStatus.IDLE)
        return True

    async def _drain(self, session_id: str, control: RunControl) -> None:
        try:
            while True:
                queue = self._queues.get(session_id)
                if control.cancel_event.is_set() or not queue:
                    if control.stopped:
                        break
                    await self._set_status(session_id, SessionStatus.IDLE)
                    # A prompt may have arrived while the status was written
                    queue = self._queues.get(session_id)
                    if queue and not control.cancel_event.is_set():
                        continue
                    break

                entry = queue.popleft()
                await self._set_status(session_id, SessionStatus.RUNNING)
                try:
                    await self._process_entry(session_id, entry, control)
                except Exception:
                    logger.exception(f"Unexpected failure processing prompt for {session_id}")
        finally:
            if self._active.get(session_id) is control:
                del self._active[session_id]
            queue = self._queues.get(session_id)
            if queue:
                logger.info(f"Restarting drain for session {session_id} after stop")
                self._start_drain(session_id)
            else:
                self._queues.pop(session_id, None)

    async def _process_entry(
        self,
        session_id: str,
        entry: PromptQueueEntry,
        control: RunControl,
    ) -> None:
        session = await self._store.get(session_id)
        if session is None:
            logger.warning(f"Session {session_id} disappeared; dropping prompt")
            return

        user_message = Message(
            session_id=session_id,
            role=MessageRole.USER,
            content=[TextBlock(text=entry.prompt), *entry.attached_content],
        )
        await self._sink.append_message(session_id, user_message)
        history = [
            m for m in await self._store.get_messages_by_session(session_id)
            if m.id != user_message.id
        ]

        if session.title == DEFAULT_SESSION_TITLE and not history:
            title = derive_session_title(entry.prompt)
            if title != DEFAULT_SESSION_TITLE:
                session = await self._store.update(session_id, title=title)

        try:
            backends = self._registry.resolve(session.provider)
        except UnknownProviderError as e:
            await self._report_failure(session_id, e, control)
            return

        control.adapters = backends.adapters()

        def make_context(adapter: BackendAdapter, resume_token: Optional[str]) -> RunContext:
            async def on_resume_token(token: str) -> None:
                await self._store_resume_token(session_id, adapter.name, token)

            return RunContext(
                session_id=session_id,
                sink=self._sink,
                broker=self._broker,
                cancel_event=control.cancel_event,
                resume_token=resume_token,
                on_resume_token=on_resume_token,
                attachments=entry.attached_content,
            )

        try:
            await self._failover.run(
                backends.primary,
                backends.fallback,
                session,
                entry.prompt,
                history,
                make_context,
            )
        except Exception as error:
            await self._report_failure(session_id, error, control)
        finally:
            control.adapters = []

    async def _report_failure(
        self,
        session_id: str,
        error: BaseException,
        control: RunControl,
    ) -> None:
        category = self._classifier.classify(error)
        if category == ErrorCategory.CANCELLED or control.cancel_event.is_set():
            logger.info(f"Run for session {session_id} stopped")
            return
        message = error_message(error)
        if category == ErrorCategory.AUTHORIZATION:
            await self._sink.emit_error(session_id, message, error_type="authorization")
            return
        if not isinstance(error, TerminalRunError):
            error = TerminalRunError(message, cause_category=str(category))
        await self._sink.emit_error(session_id, str(error), error_type="terminal")

    async def _store_resume_token(self, session_id: str, backend: str, token: str) -> None:
        try:
            await self._store.update(session_id, resume_token=token, resume_backend=backend)
        except SessionNotFoundError:
            logger.debug(f"Session {session_id} deleted before resume token was stored")

    async def _set_status(self, session_id: str, status: SessionStatus) -> None:
        try:
            await self._store.update(session_id, status=status)
        except SessionNotFoundError:
            logger.debug(f"Session {session_id} deleted before status {status} was stored")
            return
        await self._sink.emit_status(session_id, status)

    # ------------------------------------------------------------------
    # Single-writer session operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        title: Optional[str] = None,
        working_directory: Optional[str] = None,
        allowed_tool_names: Optional[list[str]] = None,
        provider: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Session:
        """
        Create a session, optionally queueing its first prompt.

        Raises:
            UnknownProviderError: If the provider is not registered.
        """
        provider = provider or self._default_provider
        if not self._registry.has_provider(provider):
            raise UnknownProviderError(f"Unknown provider: {provider}")

        session = await self._store.create(
            Session(
                id=generate_session_id(),
                title=title or derive_session_title(prompt),
                working_directory=working_directory,
                allowed_tool_names=(
                    list(allowed_tool_names) if allowed_tool_names is not None
                    else list(self._default_allowed_tools)
                ),
                provider=provider,
            )
        )
        if prompt:
            self.enqueue(session.id, prompt)
        return session

    async def update_working_directory(self, session_id: str, path: str) -> Session:
        """
        Change the working directory, invalidating any resume token.

        Raises:
            SessionBusyError: If a run is active.
            SessionNotFoundError: If the session does not exist.
        """
        if self.is_running(session_id):
            raise SessionBusyError(
                f"Cannot change working directory while session {session_id} is running"
            )
        session = await self._store.update(
            session_id,
            working_directory=path,
            resume_token=None,
            resume_backend=None,
        )
        for adapter in self._registry.adapters_for(session.provider):
            adapter.clear_resume_token(session_id)
        logger.info(f"Session {session_id} working directory set to {path}")
        return session

    async def update_allowed_tools(self, session_id: str, names: list[str]) -> Session:
        return await self._store.update(session_id, allowed_tool_names=list(names))

    async def delete_session(self, session_id: str) -> bool:
        """
        Stop the session and delete it with its messages and trace steps.

        Returns:
            True if the session existed.
        """
        validate_session_id(session_id)
        control = self._active.get(session_id)
        await self.stop(session_id)
        if control is not None and control.task is not None:
            await asyncio.wait({control.task}, timeout=CANCEL_GRACE_SECONDS)
        self._queues.pop(session_id, None)
        return await self._store.delete(session_id)

    async def recover_stale_sessions(self) -> int:
        """Reset sessions left running by a previous process."""
        return await self._store.reset_running_sessions()

    def answer_approval(self, tool_use_id: str, result: ApprovalResult) -> bool:
        return self._broker.answer_approval(tool_use_id, result)

    def answer_clarification(self, question_id: str, answer: Answer) -> bool:
        """Resolve through the broker, then through backend-local resolvers."""
        if self._broker.answer_clarification(question_id, answer):
            return True
        return any(
            adapter.handle_clarification_answer(question_id, answer)
            for adapter in self._registry.all_adapters()
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    async def list_sessions(self, limit: int = 50, offset: int = 0) -> tuple[list[Session], int]:
        return await self._store.list_all(limit=limit, offset=offset)

    async def get_messages(self, session_id: str) -> list[Message]:
        await self.get_session(session_id)
        return await self._store.get_messages_by_session(session_id)

    async def get_trace_steps(self, session_id: str) -> list[TraceStep]:
        await self.get_session(session_id)
        return await self._store.get_trace_steps_by_session(session_id)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._active

    def queued_count(self, session_id: str) -> int:
        return len(self._queues.get(session_id, ()))

    def active_task(self, session_id: str) -> Optional[asyncio.Task]:
        control = self._active.get(session_id)
        return control.task if control else None

    async def wait_idle(self, session_id: str) -> None:
        """Wait until no drain is active for the session (including restarts)."""
        while True:
            task = self.active_task(session_id)
            if task is None:
                return
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        """Stop every active session and wait for the drains to exit."""
        session_ids = list(self._active)
        tasks = [c.task for c in self._active.values() if c.task is not None]
        for session_id in session_ids:
            await self.stop(session_id)
        if tasks:
            await asyncio.wait(tasks, timeout=CANCEL_GRACE_SECONDS)
        logger.info(f"Session runner shut down ({len(session_ids)} active sessions stopped)")

    def stats(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._active),
            "queued_prompts": sum(len(q) for q in self._queues.values()),
        }
