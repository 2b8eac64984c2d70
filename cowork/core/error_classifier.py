"""
Error classification for retry and failover decisions.

Typed exceptions decide first. Substring signatures, matched
case-insensitively against the error text, are the fallback for errors
that arrive as plain text from a backend (CLI stderr, SDK result
messages, SSE error payloads). Cancellation is never inferred from text:
only CancellationError, asyncio.CancelledError or a set cancel event
mean the run was stopped.

Usage:
    classifier = ErrorClassifier(extra_transient_signatures=("overloaded",))
    if classifier.is_retryable(error):
        ...
"""
import asyncio
import logging
from enum import StrEnum
from typing import Iterable

from .constants import (
    AUTHORIZATION_SIGNATURES,
    DEFAULT_TRANSIENT_SIGNATURES,
)
from .exceptions import (
    AdapterError,
    AuthorizationError,
    CancellationError,
    StructuredToolError,
    TerminalRunError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


class ErrorCategory(StrEnum):
    """How the orchestrator reacts to a failed invocation."""
    CANCELLED = "cancelled"
    AUTHORIZATION = "authorization"
    TRANSIENT = "transient"
    TOOL = "tool"
    TERMINAL = "terminal"


def error_message(error: BaseException) -> str:
    """Error text, falling back to the exception class name."""
    return str(error) or type(error).__name__


class ErrorClassifier:
    """
    Pluggable predicate for retry and failover.

    Args:
        transient_signatures: Base list of transient substrings.
        extra_transient_signatures: Additional substrings (from config).
    """

    def __init__(
        self,
        transient_signatures: Iterable[str] = DEFAULT_TRANSIENT_SIGNATURES,
        extra_transient_signatures: Iterable[str] = (),
    ) -> None:
        signatures = [s.lower() for s in transient_signatures]
        for sig in extra_transient_signatures:
            if sig.lower() not in signatures:
                signatures.append(sig.lower())
        self._transient_signatures = tuple(signatures)

    @property
    def transient_signatures(self) -> tuple[str, ...]:
        return self._transient_signatures

    def classify(self, error: BaseException) -> ErrorCategory:
        """
        Classify an error raised out of an adapter invocation.

        Args:
            error: The raised exception.

        Returns:
            The ErrorCategory driving retry and failover.
        """
        if isinstance(error, (CancellationError, asyncio.CancelledError)):
            return ErrorCategory.CANCELLED
        if isinstance(error, AuthorizationError):
            return ErrorCategory.AUTHORIZATION
        if isinstance(error, StructuredToolError):
            return ErrorCategory.TOOL
        if isinstance(error, TransientProviderError):
            return ErrorCategory.TRANSIENT
        if isinstance(error, TerminalRunError):
            return ErrorCategory.TERMINAL

        text = error_message(error).lower()
        if self._matches(text, AUTHORIZATION_SIGNATURES):
            return ErrorCategory.AUTHORIZATION

        if isinstance(error, AdapterError) and error.retryable_hint is not None:
            return (
                ErrorCategory.TRANSIENT if error.retryable_hint
                else ErrorCategory.TERMINAL
            )

        if self._matches(text, self._transient_signatures):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.TERMINAL

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) == ErrorCategory.TRANSIENT

    def is_cancellation(self, error: BaseException) -> bool:
        return self.classify(error) == ErrorCategory.CANCELLED

    def is_authorization(self, error: BaseException) -> bool:
        return self.classify(error) == ErrorCategory.AUTHORIZATION

    def is_transient_text(self, text: str) -> bool:
        """Check raw backend text (e.g. an assistant message) for a transient signature."""
        return self._matches(text.lower(), self._transient_signatures)

    @staticmethod
    def _matches(text: str, signatures: Iterable[str]) -> bool:
        return any(sig in text for sig in signatures)
