"""
OpenAI Responses API backend adapter.

Streams ``POST /responses`` as server-sent events over httpx. The
response id is the resume token: a follow-up turn sends only the new
prompt with ``previous_response_id`` instead of the whole history.
Text only; no tools are offered to the model.
"""
import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from ..core.adapter import BackendAdapter, RunContext, append_file_attachments
from ..core.constants import TRACE_OUTPUT_PREVIEW_LENGTH
from ..core.exceptions import (
    AdapterError,
    AuthorizationError,
    CancellationError,
    TransientProviderError,
)
from ..core.schemas import Message, MessageRole, Session, TextBlock
from ..core.translators import ResponsesStreamTranslator, apply_actions

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(30.0, read=300.0)

ARTIFACT_INSTRUCTION = (
    "When you produce a final deliverable file, declare it once using this exact block:\n"
    "```artifact\n"
    '{"path":"/path/to/file.ext","name":"optional display name","type":"optional type"}\n'
    "```"
)


def build_input(history: list[Message], prompt: str) -> list[dict[str, Any]]:
    """Responses API input items from prior text turns plus the prompt."""
    items: list[dict[str, Any]] = []
    for message in history:
        text = "\n".join(b.text for b in message.content if isinstance(b, TextBlock))
        if not text:
            continue
        if message.role == MessageRole.ASSISTANT:
            items.append({
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            })
        else:
            items.append({
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            })
    if prompt.strip():
        items.append({
            "role": "user",
            "content": [{"type": "input_text", "text": prompt.strip()}],
        })
    return items


def error_from_status(status_code: int, body: str) -> AdapterError:
    """Map an HTTP error response to the exception taxonomy."""
    detail = body.strip()
    try:
        payload = json.loads(detail)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        detail = str(payload["error"].get("message") or detail)
    message = f"Responses API error {status_code}: {detail[:TRACE_OUTPUT_PREVIEW_LENGTH]}"

    if status_code in (401, 403):
        return AuthorizationError(message)
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message)
    return AdapterError(message, retryable_hint=False)


class ResponsesAdapter(BackendAdapter):
    """
    Streams the OpenAI Responses API.

    Args:
        api_key: API key; without one the adapter is unavailable.
        base_url: API base URL.
        model: Model name sent with every request.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    name = "openai-responses"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._transport = transport
        self._timeout = timeout
        self._tasks: dict[str, asyncio.Task] = {}

    def is_available(self) -> bool:
        return bool(self._api_key)

    async def run(
        self,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> None:
        if not self._api_key:
            raise AuthorizationError("OpenAI API key is not configured")

        text = append_file_attachments(prompt, context.attachments)
        previous_response_id = context.resume_token
        body: dict[str, Any] = {
            "model": self._model,
            "instructions": ARTIFACT_INSTRUCTION,
            "stream": True,
        }
        if previous_response_id:
            body["previous_response_id"] = previous_response_id
            body["input"] = build_input([], text)
        else:
            body["input"] = build_input(history, text)

        task = asyncio.current_task()
        if task is not None:
            self._tasks[session.id] = task
        logger.info(
            f"Starting responses run for session {session.id} "
            f"(model={self._model}, previous={previous_response_id or 'none'})"
        )
        try:
            await self._stream(body, context)
        except asyncio.CancelledError as e:
            raise CancellationError("Responses run cancelled") from e
        finally:
            if self._tasks.get(session.id) is task:
                del self._tasks[session.id]

    async def _stream(self, body: dict[str, Any], context: RunContext) -> None:
        translator = ResponsesStreamTranslator()
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "text/event-stream",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                async with client.stream(
                    "POST", "/responses", json=body, headers=headers
                ) as response:
                    if response.status_code >= 400:
                        raw = await response.aread()
                        raise error_from_status(
                            response.status_code, raw.decode("utf-8", errors="replace")
                        )
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if not data:
                            continue
                        if data == "[DONE]":
                            break
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            logger.debug(f"Skipping malformed SSE data: {data[:180]}")
                            continue
                        await apply_actions(context, translator.translate(event))
        except (httpx.TimeoutException, httpx.NetworkError) as e:
            raise TransientProviderError(
                f"Responses API connection error: {e}",
                failure_context=context.failure,
            ) from e

        if not translator.completed:
            raise TransientProviderError(
                "Responses stream ended before response.completed",
                failure_context=context.failure,
            )

    def cancel(self, session_id: str) -> None:
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            logger.info(f"Cancelling responses stream for session {session_id}")
            task.cancel()
