"""
Translator for Claude Agent SDK messages.

Maps the SDK's streaming message types to translated actions:

    SystemMessage(init)      -> resume token + thinking step
    StreamEvent text deltas  -> partial text
    AssistantMessage         -> tool uses + assistant text
    UserMessage tool_result  -> tool results
    ResultMessage(is_error)  -> AdapterError
"""
import json
import logging
from typing import Any, Optional, Union

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    UserMessage,
)
from claude_agent_sdk.types import (
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

from ..error_classifier import ErrorClassifier
from ..exceptions import AdapterError, TransientProviderError
from ..schemas import ImageBlock
from ..schemas import ToolResultBlock as ToolResultContent
from ..schemas import ToolUseBlock as ToolUseContent
from ..schemas import TokenUsage, TraceStep, TraceStepType
from .actions import (
    AssistantText,
    PartialText,
    ResumeTokenIssued,
    ToolResultEmitted,
    ToolUseEmitted,
    TraceStepStarted,
    TranslatedAction,
)

logger = logging.getLogger(__name__)

# Type alias for SDK messages
SDKMessage = Union[
    UserMessage,
    AssistantMessage,
    SystemMessage,
    ResultMessage,
    StreamEvent,
]


def _tool_result_content(content: Any) -> tuple[str, list[ImageBlock]]:
    """Flatten an SDK tool_result payload into text plus images."""
    if content is None:
        return "", []
    if isinstance(content, str):
        return content, []
    if not isinstance(content, list):
        return json.dumps(content), []

    text = ""
    images: list[ImageBlock] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text":
            text += item.get("text") or ""
        elif item.get("type") == "image":
            source = item.get("source") or {}
            data = source.get("data") or item.get("data") or ""
            mime_type = source.get("media_type") or item.get("mimeType") or "image/png"
            if data:
                images.append(ImageBlock(data=data, mime_type=mime_type))
    return text, images


class ClaudeMessageTranslator:
    """
    Translate SDK messages for one invocation.

    Args:
        classifier: Decides whether an "API Error" assistant text is transient.
    """

    def __init__(self, classifier: Optional[ErrorClassifier] = None) -> None:
        self._classifier = classifier or ErrorClassifier()
        self.usage: Optional[TokenUsage] = None
        self.result_text: Optional[str] = None

    def translate(self, message: SDKMessage) -> list[TranslatedAction]:
        """
        Translate one SDK message.

        Raises:
            TransientProviderError: The assistant relayed a transient API error.
            AdapterError: The SDK reported an error result.
        """
        if isinstance(message, SystemMessage):
            return self._system(message)
        if isinstance(message, StreamEvent):
            return self._stream_event(message)
        if isinstance(message, AssistantMessage):
            return self._assistant(message)
        if isinstance(message, UserMessage):
            return self._user(message)
        if isinstance(message, ResultMessage):
            return self._result(message)
        logger.debug(f"Ignoring SDK message type {type(message).__name__}")
        return []

    def _system(self, msg: SystemMessage) -> list[TranslatedAction]:
        if msg.subtype != "init":
            return []
        actions: list[TranslatedAction] = []
        token = msg.data.get("session_id")
        if isinstance(token, str) and token:
            actions.append(ResumeTokenIssued(token))
        actions.append(TraceStepStarted(
            TraceStep(type=TraceStepType.THINKING, title="Thinking")
        ))
        return actions

    def _stream_event(self, event: StreamEvent) -> list[TranslatedAction]:
        raw = event.event
        if not isinstance(raw, dict) or raw.get("type") != "content_block_delta":
            return []
        delta = raw.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return [PartialText(delta["text"])]
        return []

    def _assistant(self, msg: AssistantMessage) -> list[TranslatedAction]:
        error = getattr(msg, "error", None)
        if error:
            raise AdapterError(f"Assistant error: {error}")

        actions: list[TranslatedAction] = []
        text = ""
        for block in msg.content:
            if isinstance(block, TextBlock):
                text += block.text
            elif isinstance(block, ToolUseBlock):
                actions.append(ToolUseEmitted(
                    ToolUseContent(id=block.id, name=block.name, input=block.input or {})
                ))

        lower = text.lower()
        if "api error" in lower and self._classifier.is_transient_text(lower):
            raise TransientProviderError(f"API Error detected: {text}")

        if text:
            actions.append(AssistantText(text))
        return actions

    def _user(self, msg: UserMessage) -> list[TranslatedAction]:
        if not isinstance(msg.content, list):
            return []
        actions: list[TranslatedAction] = []
        for block in msg.content:
            if not isinstance(block, ToolResultBlock):
                continue
            text, images = _tool_result_content(block.content)
            actions.append(ToolResultEmitted(
                ToolResultContent(
                    tool_use_id=block.tool_use_id,
                    content=text,
                    is_error=bool(block.is_error),
                    images=images or None,
                )
            ))
        return actions

    def _result(self, msg: ResultMessage) -> list[TranslatedAction]:
        self.usage = TokenUsage.from_usage(msg.usage)
        self.result_text = msg.result
        if msg.is_error:
            raise AdapterError(msg.result or f"API error: {msg.subtype}")
        return []
