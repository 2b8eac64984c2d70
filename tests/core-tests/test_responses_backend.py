"""
Tests for the OpenAI Responses translator and adapter.

The adapter runs against httpx.MockTransport, so no network is used.
"""
import json

import httpx
import pytest

from cowork.adapters.responses import (
    ResponsesAdapter,
    build_input,
    error_from_status,
)
from cowork.core.exceptions import (
    AdapterError,
    AuthorizationError,
    TransientProviderError,
)
from cowork.core.schemas import Message, MessageRole, TextBlock, ToolUseBlock
from cowork.core.translators import (
    AssistantText,
    PartialText,
    ResponsesStreamTranslator,
    ResumeTokenIssued,
    TraceStepStarted,
)
from cowork.core.translators.responses import error_from_payload, extract_output_text

from recorders import SESSION_ID


def sse_body(*events: dict, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(event)}\n\n" for event in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


COMPLETED_STREAM = (
    {"type": "response.created", "response": {"id": "resp_1"}},
    {"type": "response.output_text.delta", "delta": "Hel"},
    {"type": "response.output_text.delta", "delta": "lo"},
    {
        "type": "response.completed",
        "response": {
            "id": "resp_1",
            "output": [
                {"type": "message", "content": [{"type": "output_text", "text": "Hello"}]}
            ],
            "usage": {
                "input_tokens": 12,
                "output_tokens": 3,
                "input_tokens_details": {"cached_tokens": 4},
            },
        },
    },
)


# =============================================================================
# Translator
# =============================================================================

class TestResponsesTranslator:

    def test_created_issues_token_and_thinking(self) -> None:
        translator = ResponsesStreamTranslator()

        token, thinking = translator.translate(COMPLETED_STREAM[0])

        assert token == ResumeTokenIssued("resp_1")
        assert isinstance(thinking, TraceStepStarted)
        assert translator.response_id == "resp_1"

    def test_deltas_and_completion(self) -> None:
        translator = ResponsesStreamTranslator()

        assert translator.translate(COMPLETED_STREAM[1]) == [PartialText("Hel")]
        [final] = translator.translate(COMPLETED_STREAM[3])

        assert isinstance(final, AssistantText)
        assert final.text == "Hello"
        assert final.usage.input_tokens == 12
        assert final.usage.cache_read_input_tokens == 4
        assert translator.completed is True

    def test_empty_delta_ignored(self) -> None:
        assert ResponsesStreamTranslator().translate(
            {"type": "response.output_text.delta", "delta": ""}
        ) == []

    def test_failed_response_raises_mapped_error(self) -> None:
        translator = ResponsesStreamTranslator()
        with pytest.raises(TransientProviderError):
            translator.translate({
                "type": "response.failed",
                "response": {"error": {"code": "server_error", "message": "oops"}},
            })

    def test_error_event(self) -> None:
        with pytest.raises(AuthorizationError, match="bad key"):
            ResponsesStreamTranslator().translate({
                "type": "error", "error": {"code": "invalid_api_key", "message": "bad key"},
            })

    def test_output_text_shortcut(self) -> None:
        assert extract_output_text({"output_text": "  direct  "}) == "direct"

    def test_unknown_error_payload(self) -> None:
        error = error_from_payload({"code": "weird", "message": "nope"})
        assert type(error) is AdapterError


class TestRequestMapping:

    def test_build_input_from_history(self) -> None:
        history = [
            Message(session_id=SESSION_ID, role=MessageRole.USER, content=[TextBlock(text="hi")]),
            Message(
                session_id=SESSION_ID,
                role=MessageRole.ASSISTANT,
                content=[ToolUseBlock(id="t", name="Read")],
            ),
            Message(
                session_id=SESSION_ID,
                role=MessageRole.ASSISTANT,
                content=[TextBlock(text="hello")],
            ),
        ]

        items = build_input(history, " next ")

        assert items == [
            {"role": "user", "content": [{"type": "input_text", "text": "hi"}]},
            {"role": "assistant", "content": [{"type": "output_text", "text": "hello"}]},
            {"role": "user", "content": [{"type": "input_text", "text": "next"}]},
        ]

    @pytest.mark.parametrize(
        "status_code, expected",
        [
            (401, AuthorizationError),
            (403, AuthorizationError),
            (429, TransientProviderError),
            (503, TransientProviderError),
        ],
    )
    def test_error_from_status(self, status_code: int, expected: type) -> None:
        assert isinstance(error_from_status(status_code, "{}"), expected)

    def test_client_error_is_not_retryable(self) -> None:
        error = error_from_status(400, '{"error": {"message": "bad model"}}')

        assert error.retryable_hint is False
        assert "bad model" in str(error)


# =============================================================================
# Adapter
# =============================================================================

class TestResponsesAdapter:

    @staticmethod
    def adapter(handler) -> ResponsesAdapter:
        return ResponsesAdapter(
            api_key="sk-test",
            base_url="https://api.test/v1",
            model="test-model",
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_streams_turn(self, session, run_context, recorder) -> None:
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            assert request.headers["Authorization"] == "Bearer sk-test"
            return httpx.Response(
                200,
                content=sse_body(*COMPLETED_STREAM),
                headers={"content-type": "text/event-stream"},
            )

        await self.adapter(handler).run(session, "say hello", [], run_context)

        body = requests[0]
        assert body["model"] == "test-model"
        assert body["stream"] is True
        assert "previous_response_id" not in body
        assert run_context.resume_token == "resp_1"
        assert recorder.partial_text() == "Hello"
        assert [m.text for m in recorder.messages] == ["Hello"]
        assert recorder.messages[0].token_usage.output_tokens == 3

    @pytest.mark.asyncio
    async def test_resume_sends_only_new_prompt(self, session, run_context) -> None:
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, content=sse_body(*COMPLETED_STREAM))

        run_context.resume_token = "resp_0"
        history = [
            Message(session_id=SESSION_ID, role=MessageRole.USER, content=[TextBlock(text="old")])
        ]

        await self.adapter(handler).run(session, "new", history, run_context)

        assert requests[0]["previous_response_id"] == "resp_0"
        assert requests[0]["input"] == [
            {"role": "user", "content": [{"type": "input_text", "text": "new"}]}
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, expected",
        [(401, AuthorizationError), (503, TransientProviderError)],
    )
    async def test_http_errors(
        self, session, run_context, status_code: int, expected: type
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"error": {"message": "nope"}})

        with pytest.raises(expected):
            await self.adapter(handler).run(session, "hi", [], run_context)

    @pytest.mark.asyncio
    async def test_truncated_stream_is_transient(self, session, run_context) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=sse_body(*COMPLETED_STREAM[:2], done=False))

        with pytest.raises(TransientProviderError, match="ended before"):
            await self.adapter(handler).run(session, "hi", [], run_context)

        assert run_context.failure.has_turn_output is True

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, session, run_context) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientProviderError):
            await self.adapter(handler).run(session, "hi", [], run_context)

    @pytest.mark.asyncio
    async def test_missing_key(self, session, run_context) -> None:
        adapter = ResponsesAdapter(api_key=None)

        assert adapter.is_available() is False
        with pytest.raises(AuthorizationError):
            await adapter.run(session, "hi", [], run_context)
