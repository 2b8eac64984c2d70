"""
Core modules for Cowork.

This package contains the backend-independent orchestration pieces:
- adapter.py: BackendAdapter contract and the per-invocation RunContext
- artifacts.py: Artifact block extraction from assistant text
- constants.py: Centralized constants (log formats, retry defaults, etc.)
- error_classifier.py: Transient / authorization / cancellation classification
- event_sink.py: EventSink interface for trace steps, messages and status
- exceptions.py: Custom exceptions
- logging_config.py: Unified logging configuration
- schemas.py: Pydantic data models
- translators/: Backend event stream to trace/message translation
"""
from .adapter import BackendAdapter, RunContext
from .error_classifier import ErrorCategory, ErrorClassifier
from .event_sink import EventSink
from .exceptions import (
    AdapterError,
    AuthorizationError,
    CancellationError,
    CoworkError,
    StructuredToolError,
    TerminalRunError,
    TransientProviderError,
)
from .logging_config import (
    setup_backend_logging,
    setup_dual_logging,
)
from .schemas import (
    ApprovalResult,
    FailureContext,
    Message,
    MessageRole,
    PromptQueueEntry,
    RetryState,
    Session,
    SessionStatus,
    TokenUsage,
    TraceStep,
    TraceStepStatus,
    TraceStepType,
)

__all__ = [
    # Adapter contract
    "BackendAdapter",
    "RunContext",
    "EventSink",
    # Errors
    "ErrorCategory",
    "ErrorClassifier",
    "AdapterError",
    "AuthorizationError",
    "CancellationError",
    "CoworkError",
    "StructuredToolError",
    "TerminalRunError",
    "TransientProviderError",
    # Logging
    "setup_backend_logging",
    "setup_dual_logging",
    # Schemas
    "ApprovalResult",
    "FailureContext",
    "Message",
    "MessageRole",
    "PromptQueueEntry",
    "RetryState",
    "Session",
    "SessionStatus",
    "TokenUsage",
    "TraceStep",
    "TraceStepStatus",
    "TraceStepType",
]
