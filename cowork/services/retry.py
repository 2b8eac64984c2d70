"""
Retry & resume controller.

Wraps one adapter invocation in a bounded retry loop. A transient failure
waits base * 2^(attempt-1) seconds and re-invokes the adapter with the
latest resume token the backend issued, so the work continues instead of
restarting. Without a token there is nothing to resume and the failure
is terminal.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from ..config import RetrySettings
from ..core.adapter import BackendAdapter, RunContext
from ..core.constants import CANCEL_GRACE_SECONDS, RETRY_NOTICE_TEMPLATE
from ..core.error_classifier import ErrorClassifier, error_message
from ..core.exceptions import CancellationError, StructuredToolError, TerminalRunError
from ..core.schemas import Message, RetryState, Session, TraceStepStatus

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float, asyncio.Event], Awaitable[None]]


async def cancellable_sleep(delay: float, cancel_event: asyncio.Event) -> None:
    """
    Sleep for ``delay`` seconds unless the run is cancelled first.

    Raises:
        CancellationError: If the cancellation event fires during the wait.
    """
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise CancellationError("Run cancelled during retry backoff")


class RetryController:
    """
    Bounded retry with backoff and resume.

    Args:
        settings: Cap and backoff base.
        classifier: Decides which failures are retryable.
        sleep: Backoff wait; injectable so tests can record delays.
    """

    def __init__(
        self,
        settings: RetrySettings,
        classifier: ErrorClassifier,
        sleep: SleepFunc = cancellable_sleep,
    ) -> None:
        self._settings = settings
        self._classifier = classifier
        self._sleep = sleep

    @property
    def settings(self) -> RetrySettings:
        return self._settings

    async def run(
        self,
        adapter: BackendAdapter,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> RetryState:
        """
        Invoke the adapter until it succeeds or fails for good.

        Returns:
            The final RetryState (attempts made, delays waited).

        Raises:
            CancellationError: The run was stopped.
            TerminalRunError: Retries were exhausted or impossible.
            Exception: Any non-retryable adapter error, unchanged.
        """
        state = RetryState(last_resume_token=context.resume_token)

        while True:
            if state.attempt:
                context.begin_attempt()
            try:
                await self._invoke(adapter, session, prompt, history, context)
                return state
            except StructuredToolError as e:
                logger.warning(f"Tool {e.tool_use_id} failed in session {session.id}: {e}")
                await context.record_tool_error(e)
                return state
            except Exception as error:
                context.failure = context.failure.merge(
                    getattr(error, "failure_context", None)
                )
                if context.cancelled or self._classifier.is_cancellation(error):
                    raise CancellationError(error_message(error)) from error
                if not self._classifier.is_retryable(error):
                    raise

                message = error_message(error)
                state.last_resume_token = context.resume_token
                if state.attempt >= self._settings.max_retries:
                    logger.error(
                        f"Max retries ({self._settings.max_retries}) exceeded "
                        f"for session {session.id}: {message}"
                    )
                    raise TerminalRunError(
                        f"Backend failed after {self._settings.max_retries} retries: {message}",
                        cause_category="transient",
                    ) from error
                if not state.last_resume_token:
                    logger.error(
                        f"Retryable error for session {session.id} but the backend "
                        f"never issued a resume token: {message}"
                    )
                    raise TerminalRunError(message, cause_category="transient") from error

                state.attempt += 1
                delay = self._settings.backoff_delay(state.attempt)
                state.delays.append(delay)
                logger.warning(
                    f"Retryable error (attempt {state.attempt}/{self._settings.max_retries}) "
                    f"for session {session.id}: {message}. Retrying in {delay:.0f}s"
                )
                await context.finish_thinking(
                    TraceStepStatus.ERROR, title="Backend error, retrying", output=message
                )
                await context.sink.emit_partial_text(
                    session.id,
                    RETRY_NOTICE_TEMPLATE.format(
                        attempt=state.attempt, max_retries=self._settings.max_retries
                    ),
                )
                try:
                    await self._sleep(delay, context.cancel_event)
                finally:
                    await context.sink.emit_partial_text(session.id, "")

    async def _invoke(
        self,
        adapter: BackendAdapter,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> None:
        """Run the adapter, raced against the cancellation signal."""
        run_task = asyncio.ensure_future(adapter.run(session, prompt, history, context))
        cancel_waiter = asyncio.ensure_future(context.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {run_task, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            run_task.cancel()
            raise
        finally:
            cancel_waiter.cancel()

        if run_task in done:
            try:
                run_task.result()
            except asyncio.CancelledError as e:
                raise CancellationError("Adapter run was cancelled") from e
            return

        # Cancellation fired first
        adapter.cancel(session.id)
        finished, _ = await asyncio.wait({run_task}, timeout=CANCEL_GRACE_SECONDS)
        if not finished:
            logger.warning(
                f"Adapter {adapter.name} ignored cancel for session {session.id}; "
                f"cancelling its task"
            )
            run_task.cancel()
        elif not run_task.cancelled() and run_task.exception() is not None:
            logger.debug(
                f"Adapter {adapter.name} exited after cancel: {run_task.exception()}"
            )
        raise CancellationError("Run cancelled")
