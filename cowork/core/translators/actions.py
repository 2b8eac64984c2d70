"""
Translated actions and their application to a RunContext.

Translators turn native backend events into a list of these values and
never perform I/O. apply_actions() routes them into the RunContext,
which enforces the ordering rules and publishes through the event sink.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..adapter import RunContext
from ..schemas import (
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    TraceStep,
    TraceStepStatus,
    TraceStepType,
)


@dataclass(frozen=True)
class ResumeTokenIssued:
    token: str


@dataclass(frozen=True)
class TraceStepStarted:
    step: TraceStep


@dataclass(frozen=True)
class TraceStepUpdated:
    step_id: str
    updates: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolUseEmitted:
    block: ToolUseBlock


@dataclass(frozen=True)
class ToolResultEmitted:
    block: ToolResultBlock


@dataclass(frozen=True)
class AssistantText:
    """Complete text of one assistant turn."""
    text: str
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class PartialText:
    delta: str


TranslatedAction = Union[
    ResumeTokenIssued,
    TraceStepStarted,
    TraceStepUpdated,
    ToolUseEmitted,
    ToolResultEmitted,
    AssistantText,
    PartialText,
]


async def apply_actions(context: RunContext, actions: list[TranslatedAction]) -> None:
    """
    Apply translated actions in order.

    Args:
        context: The invocation's RunContext.
        actions: Output of a translator for one native event.
    """
    for action in actions:
        if isinstance(action, ResumeTokenIssued):
            await context.set_resume_token(action.token)

        elif isinstance(action, TraceStepStarted):
            step = action.step
            if (
                step.type == TraceStepType.THINKING
                and step.status == TraceStepStatus.RUNNING
            ):
                await context.begin_thinking(step.title, step_id=step.id)
            else:
                await context.emit_step(step)

        elif isinstance(action, TraceStepUpdated):
            await context.update_step(action.step_id, action.updates)

        elif isinstance(action, ToolUseEmitted):
            await context.emit_tool_use(action.block)

        elif isinstance(action, ToolResultEmitted):
            await context.emit_tool_result(action.block)

        elif isinstance(action, PartialText):
            await context.emit_partial_text(action.delta)

        elif isinstance(action, AssistantText):
            await context.emit_assistant_text(action.text, usage=action.usage)
