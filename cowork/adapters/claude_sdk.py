"""
Claude Agent SDK backend adapter.

Runs one ClaudeSDKClient per turn. The SDK session id from the init
SystemMessage is the resume token. Tool permissions go through the
can_use_tool callback: AskUserQuestion becomes a clarification request,
tools outside the session's allow-list become approval requests.
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    CLINotFoundError,
    PermissionResultAllow,
    PermissionResultDeny,
    ResultMessage,
    ToolPermissionContext,
)

from ..core.adapter import (
    BackendAdapter,
    RunContext,
    append_file_attachments,
    format_history_prompt,
)
from ..core.error_classifier import ErrorClassifier
from ..core.exceptions import AdapterError, AuthorizationError
from ..core.schemas import (
    ApprovalResult,
    ImageBlock,
    Message,
    QuestionItem,
    Session,
    TokenUsage,
    ToolUseBlock,
    new_id,
)
from ..core.translators import AssistantText, ToolUseEmitted, apply_actions
from ..core.translators.claude_sdk import ClaudeMessageTranslator

logger = logging.getLogger(__name__)

ASK_USER_QUESTION_TOOL = "AskUserQuestion"

ClientFactory = Callable[..., ClaudeSDKClient]


def build_question_answers(
    tool_input: dict[str, Any],
    questions: list[QuestionItem],
    answers: dict[str, list[str]],
) -> dict[str, Any]:
    """AskUserQuestion input with the user's answers filled in."""
    raw_questions = tool_input.get("questions") or []
    updated = []
    for index, question in enumerate(questions):
        raw = raw_questions[index] if index < len(raw_questions) else {}
        entry = dict(raw) if isinstance(raw, dict) else question.model_dump(by_alias=True)
        entry["answer"] = answers.get(str(index), [])
        updated.append(entry)
    return {**tool_input, "questions": updated, "answers": answers}


def _log_interrupt_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning(f"Claude interrupt failed: {task.exception()}")


class ClaudeSdkAdapter(BackendAdapter):
    """
    Drives the Claude Agent SDK in-process.

    Args:
        model: Optional model override.
        include_partial_messages: Stream text deltas as StreamEvents.
        classifier: Used to spot transient "API Error" assistant text.
        client_factory: Builds the SDK client (tests inject a fake).
    """

    name = "claude-sdk"

    def __init__(
        self,
        model: Optional[str] = None,
        include_partial_messages: bool = True,
        classifier: Optional[ErrorClassifier] = None,
        client_factory: ClientFactory = ClaudeSDKClient,
    ) -> None:
        self._model = model
        self._include_partial_messages = include_partial_messages
        self._classifier = classifier or ErrorClassifier()
        self._client_factory = client_factory
        self._clients: dict[str, ClaudeSDKClient] = {}
        self._always_allowed: dict[str, set[str]] = {}

    async def run(
        self,
        session: Session,
        prompt: str,
        history: list[Message],
        context: RunContext,
    ) -> None:
        translator = ClaudeMessageTranslator(self._classifier)
        seen_tool_uses: list[ToolUseBlock] = []
        options = self._build_options(session, context, seen_tool_uses)

        text = append_file_attachments(prompt, context.attachments)
        images = [b for b in context.attachments if isinstance(b, ImageBlock)]
        if not context.resume_token and not images:
            text = format_history_prompt(history, text)

        logger.info(
            f"Starting claude run for session {session.id} "
            f"(resume={context.resume_token or 'none'}, images={len(images)})"
        )
        pending_text: Optional[AssistantText] = None
        try:
            async with self._client_factory(options=options) as client:
                self._clients[session.id] = client
                if images:
                    await client.query(self._image_prompt(text, images))
                else:
                    await client.query(text)

                async for message in client.receive_response():
                    if isinstance(message, ResultMessage) and pending_text is not None:
                        # Attach usage to the turn's last assistant message
                        usage = TokenUsage.from_usage(message.usage)
                        await apply_actions(
                            context, [AssistantText(pending_text.text, usage=usage)]
                        )
                        pending_text = None

                    for action in translator.translate(message):
                        if pending_text is not None:
                            await apply_actions(context, [pending_text])
                            pending_text = None
                        if isinstance(action, AssistantText):
                            pending_text = action
                            continue
                        if isinstance(action, ToolUseEmitted):
                            seen_tool_uses.append(action.block)
                        await apply_actions(context, [action])

                    if isinstance(message, AssistantMessage):
                        context.raise_if_cancelled()

                if pending_text is not None:
                    await apply_actions(context, [pending_text])
        except CLINotFoundError as e:
            raise AdapterError(f"Claude Code CLI not found: {e}", retryable_hint=False) from e
        except AdapterError:
            raise
        except ClaudeSDKError as e:
            message = str(e)
            if "login" in message.lower() or "api key" in message.lower():
                raise AuthorizationError(message, failure_context=context.failure) from e
            raise AdapterError(message, failure_context=context.failure) from e
        finally:
            self._clients.pop(session.id, None)

    def _build_options(
        self,
        session: Session,
        context: RunContext,
        seen_tool_uses: list[ToolUseBlock],
    ) -> ClaudeAgentOptions:
        allowed = set(session.allowed_tool_names)
        approved_ids: set[str] = set()

        def match_tool_use_id(tool_name: str, tool_input: dict[str, Any]) -> str:
            for block in reversed(seen_tool_uses):
                if (
                    block.name == tool_name
                    and block.input == tool_input
                    and block.id not in approved_ids
                ):
                    approved_ids.add(block.id)
                    return block.id
            return new_id()

        async def can_use_tool(
            tool_name: str,
            tool_input: dict[str, Any],
            permission_context: ToolPermissionContext,
        ) -> PermissionResultAllow | PermissionResultDeny:
            if tool_name == ASK_USER_QUESTION_TOOL:
                questions = [
                    QuestionItem.model_validate(q)
                    for q in tool_input.get("questions") or []
                    if isinstance(q, dict)
                ]
                logger.info(f"Sending {len(questions)} questions for session {session.id}")
                answers = await context.request_clarification(questions)
                return PermissionResultAllow(
                    updated_input=build_question_answers(tool_input, questions, answers)
                )

            always = self._always_allowed.setdefault(session.id, set())
            if tool_name in allowed or tool_name in always:
                return PermissionResultAllow(updated_input=tool_input)

            tool_use_id = match_tool_use_id(tool_name, tool_input)
            result = await context.request_approval(tool_use_id, tool_name, tool_input)
            logger.info(f"Approval for {tool_name} ({tool_use_id}): {result}")
            if result == ApprovalResult.ALLOW_ALWAYS:
                always.add(tool_name)
                return PermissionResultAllow(updated_input=tool_input)
            if result == ApprovalResult.ALLOW:
                return PermissionResultAllow(updated_input=tool_input)
            return PermissionResultDeny(
                message=f"User denied permission for {tool_name}",
                interrupt=context.cancelled,
            )

        return ClaudeAgentOptions(
            model=self._model,
            cwd=session.working_directory,
            allowed_tools=list(session.allowed_tool_names),
            permission_mode=None,
            can_use_tool=can_use_tool,
            resume=context.resume_token,
            include_partial_messages=self._include_partial_messages,
        )

    @staticmethod
    async def _image_prompt(text: str, images: list[ImageBlock]) -> AsyncIterator[dict[str, Any]]:
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        for image in images:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.mime_type,
                    "data": image.data,
                },
            })
        yield {
            "type": "user",
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": None,
        }

    def cancel(self, session_id: str) -> None:
        client = self._clients.get(session_id)
        if client is None:
            return
        logger.info(f"Interrupting claude client for session {session_id}")
        task = asyncio.get_running_loop().create_task(client.interrupt())
        task.add_done_callback(_log_interrupt_failure)

    def clear_resume_token(self, session_id: str) -> None:
        self._always_allowed.pop(session_id, None)
