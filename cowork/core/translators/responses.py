"""
Translator for OpenAI Responses API server-sent events.

The response id doubles as the resume token: passing it back as
previous_response_id continues the same conversation server-side.
"""
import logging
from typing import Any, Optional

from ..exceptions import AdapterError, AuthorizationError, TransientProviderError
from ..schemas import TokenUsage, TraceStep, TraceStepType
from .actions import (
    AssistantText,
    PartialText,
    ResumeTokenIssued,
    TraceStepStarted,
    TranslatedAction,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = ("server_error", "rate_limit_exceeded", "overloaded")
AUTH_ERROR_CODES = ("invalid_api_key", "unauthorized", "insufficient_permissions")


def extract_output_text(response: dict[str, Any]) -> str:
    """Assemble the final text of a response object."""
    output_text = response.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    parts: list[str] = []
    for item in response.get("output") or []:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "output_text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
        elif item.get("type") == "message":
            for block in item.get("content") or []:
                if (
                    isinstance(block, dict)
                    and block.get("type") == "output_text"
                    and isinstance(block.get("text"), str)
                ):
                    parts.append(block["text"])
    return "".join(parts).strip()


def _usage(response: dict[str, Any]) -> Optional[TokenUsage]:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return None
    details = usage.get("input_tokens_details") or {}
    return TokenUsage(
        input_tokens=usage.get("input_tokens") or 0,
        output_tokens=usage.get("output_tokens") or 0,
        cache_read_input_tokens=details.get("cached_tokens") or 0,
    )


def error_from_payload(error: Any) -> AdapterError:
    """Map an error payload ({code, message}) to the exception taxonomy."""
    if not isinstance(error, dict):
        return AdapterError(str(error or "Responses API error"))
    code = str(error.get("code") or error.get("type") or "")
    message = str(error.get("message") or code or "Responses API error")
    if code in AUTH_ERROR_CODES:
        return AuthorizationError(message)
    if code in TRANSIENT_ERROR_CODES:
        return TransientProviderError(message)
    return AdapterError(message)


class ResponsesStreamTranslator:
    """Translate the SSE events of one streamed response."""

    def __init__(self) -> None:
        self.response_id: Optional[str] = None
        self.completed = False

    def translate(self, event: dict[str, Any]) -> list[TranslatedAction]:
        """
        Translate one decoded SSE data payload.

        Raises:
            AdapterError: On response.failed and error events.
        """
        event_type = event.get("type")

        if event_type == "response.created":
            response = event.get("response") or {}
            actions: list[TranslatedAction] = []
            response_id = response.get("id")
            if isinstance(response_id, str) and response_id:
                self.response_id = response_id
                actions.append(ResumeTokenIssued(response_id))
            actions.append(TraceStepStarted(
                TraceStep(type=TraceStepType.THINKING, title="Thinking")
            ))
            return actions

        if event_type == "response.output_text.delta":
            delta = event.get("delta")
            if isinstance(delta, str) and delta:
                return [PartialText(delta)]
            return []

        if event_type in ("response.completed", "response.incomplete"):
            self.completed = True
            response = event.get("response") or {}
            if event_type == "response.incomplete":
                reason = (response.get("incomplete_details") or {}).get("reason")
                logger.warning(f"Response {self.response_id} incomplete: {reason}")
            return [AssistantText(extract_output_text(response), usage=_usage(response))]

        if event_type == "response.failed":
            response = event.get("response") or {}
            raise error_from_payload(response.get("error"))

        if event_type == "error":
            raise error_from_payload(event.get("error") or event)

        return []
