"""
Backend failover.

When the primary adapter fails before the turn produced anything, the
same prompt is replayed once on a secondary adapter of the same provider
family. Once output or side effects exist, replaying would duplicate
them, so the failure is reported instead.
"""
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Optional

from ..core.adapter import BackendAdapter, RunContext
from ..core.error_classifier import ErrorCategory, ErrorClassifier, error_message
from ..core.schemas import (
    FailureContext,
    Message,
    Session,
    TraceStep,
    TraceStepStatus,
    TraceStepType,
)
from .retry import RetryController

logger = logging.getLogger(__name__)

# Builds a fresh RunContext for an adapter, optionally resuming with a token
ContextFactory = Callable[[BackendAdapter, Optional[str]], RunContext]


class FailoverCategory(StrEnum):
    CANCELLED = "cancelled"
    AUTHORIZATION = "authorization"
    TURN_ALREADY_EXECUTED = "turn-already-executed"
    NO_FALLBACK = "no-fallback"
    ELIGIBLE = "eligible"


@dataclass(frozen=True)
class FailoverDecision:
    """Whether to replay a failed turn on the secondary adapter, and why."""
    should_failover: bool
    category: FailoverCategory
    reason: str


def decide_failover(
    error: BaseException,
    failure: FailureContext,
    fallback: Optional[BackendAdapter],
    classifier: ErrorClassifier,
) -> FailoverDecision:
    """
    Decide whether a failed primary invocation may fail over.

    Only an invocation that emitted nothing and executed nothing is
    replayed. Cancellation and authorization failures never fail over.
    """
    category = classifier.classify(error)
    message = error_message(error)

    if category == ErrorCategory.CANCELLED:
        return FailoverDecision(False, FailoverCategory.CANCELLED, "Run was cancelled")
    if category == ErrorCategory.AUTHORIZATION:
        return FailoverDecision(False, FailoverCategory.AUTHORIZATION, message)
    if failure.has_turn_output or failure.has_turn_side_effects:
        return FailoverDecision(
            False,
            FailoverCategory.TURN_ALREADY_EXECUTED,
            "Primary backend already produced output or ran tools",
        )
    if fallback is None or not fallback.is_available():
        return FailoverDecision(
            False, FailoverCategory.NO_FALLBACK, "No fallback backend available"
        )
    return FailoverDecision(True, FailoverCategory.ELIGIBLE, message)


class FailoverController:
    """
    Runs a turn on the primary adapter, falling back once when eligible.

    Each adapter gets its own RunContext and is retried by the
    RetryController. Every context is closed whatever the outcome.

    Args:
        retry: Retry controller wrapping each adapter invocation.
        classifier: Error classifier shared with the retry controller.
    """

    def __init__(self, retry: RetryController, classifier: ErrorClassifier) -> None:
        self._retry = retry
        self._classifier = classifier

    async def run(
        self,
        primary: BackendAdapter,
        fallback: Optional[BackendAdapter],
        session: Session,
        prompt: str,
        history: list[Message],
        make_context: ContextFactory,
    ) -> BackendAdapter:
        """
        Execute the turn.

        Returns:
            The adapter that completed the turn.

        Raises:
            The primary's error when failover is not allowed, or the
            secondary's error when the replay fails too.
        """
        resume_token = (
            session.resume_token if session.resume_backend == primary.name else None
        )
        context = make_context(primary, resume_token)
        try:
            await self._run_adapter(primary, session, prompt, history, context)
            return primary
        except Exception as error:
            decision = decide_failover(error, context.failure, fallback, self._classifier)
            if not decision.should_failover:
                logger.info(
                    f"No failover for session {session.id} "
                    f"({decision.category}): {decision.reason}"
                )
                raise
            assert fallback is not None
            logger.warning(
                f"Failing over session {session.id} from {primary.name} "
                f"to {fallback.name}: {decision.reason}"
            )
            fallback_context = make_context(fallback, None)
            await fallback_context.emit_step(
                TraceStep(
                    type=TraceStepType.THINKING,
                    status=TraceStepStatus.COMPLETED,
                    title="failover",
                    tool_name=fallback.name,
                    tool_output=f"{primary.name} -> {fallback.name}: {decision.reason}",
                )
            )

        await self._run_adapter(fallback, session, prompt, history, fallback_context)
        return fallback

    async def _run_adapter(
        self,
        adapter: BackendAdapter,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> None:
        try:
            await self._retry.run(adapter, session, prompt, history, context)
        except Exception as error:
            cancelled = context.cancelled or self._classifier.is_cancellation(error)
            await context.close(error=None if cancelled else error_message(error))
            raise
        await context.close()
