"""
Orchestrator exceptions.

Custom exception classes for Cowork. Run failures are split into the
categories the retry and failover controllers act on:

- TransientProviderError: retried with backoff, then terminal.
- AuthorizationError: never retried, never failed over.
- CancellationError: silent stop, never retried or failed over.
- StructuredToolError: a tool reported a failure; becomes an is_error result.
- TerminalRunError: anything else; surfaced to the user.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .schemas import FailureContext


class CoworkError(Exception):
    """Base exception for orchestrator errors."""
    pass


class AdapterError(CoworkError):
    """
    Error raised by a backend adapter.

    Args:
        message: Human readable error text.
        retryable_hint: Explicit retry verdict from the adapter. None means
            let the error classifier decide from the error text.
        failure_context: What the adapter observed before failing.
    """

    def __init__(
        self,
        message: str,
        retryable_hint: Optional[bool] = None,
        failure_context: Optional["FailureContext"] = None,
    ) -> None:
        super().__init__(message)
        self.retryable_hint = retryable_hint
        self.failure_context = failure_context


class TransientProviderError(AdapterError):
    """Provider failure expected to succeed on retry (5xx, timeouts, ...)."""

    def __init__(
        self,
        message: str,
        failure_context: Optional["FailureContext"] = None,
    ) -> None:
        super().__init__(message, retryable_hint=True, failure_context=failure_context)


class AuthorizationError(AdapterError):
    """Credentials missing, expired or rejected by the provider."""

    def __init__(
        self,
        message: str,
        failure_context: Optional["FailureContext"] = None,
    ) -> None:
        super().__init__(message, retryable_hint=False, failure_context=failure_context)


class CancellationError(CoworkError):
    """The run was stopped by its cancellation signal."""
    pass


class StructuredToolError(CoworkError):
    """
    A tool executed and reported a machine-readable failure.

    Args:
        tool_use_id: The tool-use id the failure belongs to.
        message: Error output to record on the tool result.
        details: Optional structured payload from the tool.
    """

    def __init__(
        self,
        tool_use_id: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.tool_use_id = tool_use_id
        self.details = details or {}


class TerminalRunError(CoworkError):
    """
    A run failed for good.

    Args:
        message: User-visible error message.
        cause_category: Classification of the underlying error.
    """

    def __init__(self, message: str, cause_category: str = "terminal") -> None:
        super().__init__(message)
        self.cause_category = cause_category
