"""
Backend event translators.

Each translator turns one backend's native events into TranslatedAction
values; apply_actions() routes them into a RunContext.
"""
from .actions import (
    AssistantText,
    PartialText,
    ResumeTokenIssued,
    ToolResultEmitted,
    ToolUseEmitted,
    TraceStepStarted,
    TraceStepUpdated,
    TranslatedAction,
    apply_actions,
)
from .codex import CodexEventTranslator
from .responses import ResponsesStreamTranslator

__all__ = [
    "AssistantText",
    "PartialText",
    "ResumeTokenIssued",
    "ToolResultEmitted",
    "ToolUseEmitted",
    "TraceStepStarted",
    "TraceStepUpdated",
    "TranslatedAction",
    "apply_actions",
    "CodexEventTranslator",
    "ResponsesStreamTranslator",
]
