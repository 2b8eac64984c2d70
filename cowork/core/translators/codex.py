"""
Translator for the Codex CLI JSON-lines protocol (`codex exec --json`).

Handled events:
    thread.started                      -> resume token (thread id)
    turn.started / turn.completed       -> thinking step open / close
    item.started / item.completed       -> command_execution, mcp_tool_call,
                                           todo_list, agent_message
"""
import json
import logging
import time
import uuid
from typing import Any, Callable, Optional

from ..constants import DUPLICATE_SCREENSHOT_WINDOW_SECONDS
from ..schemas import (
    ImageBlock,
    ToolResultBlock,
    ToolUseBlock,
    TraceStep,
    TraceStepStatus,
    TraceStepType,
)
from .actions import (
    AssistantText,
    ResumeTokenIssued,
    ToolResultEmitted,
    ToolUseEmitted,
    TraceStepStarted,
    TraceStepUpdated,
    TranslatedAction,
)

logger = logging.getLogger(__name__)

SCREENSHOT_TOOL_SUFFIX = "__screenshot_for_display"
TODO_STATUSES = ("pending", "in_progress", "completed", "cancelled")


def parse_json_line(line: str) -> Optional[dict[str, Any]]:
    """Parse one stdout line; None for blank or non-JSON output."""
    text = line.strip()
    if not text.startswith("{"):
        return None
    try:
        event = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        return None
    return event


def map_todo_items(raw_items: Any) -> list[dict[str, str]]:
    """Convert Codex todo items to TodoWrite entries."""
    if not isinstance(raw_items, list):
        return []

    todos = []
    for index, raw in enumerate(raw_items):
        item = raw if isinstance(raw, dict) else {}
        text = item.get("text")
        todos.append({
            "content": text if isinstance(text, str) else f"Task {index + 1}",
            "status": _resolve_todo_status(item.get("completed"), item.get("status")),
            "id": item.get("id") if isinstance(item.get("id"), str) else "",
            "activeForm": (
                item.get("activeForm") if isinstance(item.get("activeForm"), str) else ""
            ),
        })
    return todos


def _resolve_todo_status(completed: Any, status: Any) -> str:
    if isinstance(status, str) and status.lower() in TODO_STATUSES:
        return status.lower()
    if completed is True:
        return "completed"
    return "pending"


def _format_command_output(item: dict[str, Any]) -> str:
    output = item.get("aggregated_output")
    output = output if isinstance(output, str) else ""
    exit_code = item.get("exit_code")
    if output.strip():
        return output
    if not isinstance(exit_code, int):
        return "Command finished."
    return f"Command exited with code {exit_code}"


def _format_mcp_result(result: Any) -> tuple[str, list[ImageBlock]]:
    if isinstance(result, str):
        return result, []
    if not isinstance(result, dict):
        return "MCP tool call completed", []

    content = result.get("content")
    if isinstance(content, list):
        text_parts: list[str] = []
        images: list[ImageBlock] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if isinstance(block.get("text"), str):
                text_parts.append(block["text"])
            elif block.get("type") == "image":
                data = block.get("data")
                if isinstance(data, str) and data:
                    images.append(
                        ImageBlock(data=data, mime_type=block.get("mimeType") or "image/png")
                    )
        if not text_parts and images:
            plural = "s" if len(images) > 1 else ""
            text_parts.append(f"MCP tool call completed ({len(images)} image{plural})")
        return "\n".join(text_parts), images

    return json.dumps(result, indent=2), []


def _mcp_tool_name(item: dict[str, Any]) -> str:
    server = item.get("server") if isinstance(item.get("server"), str) else "MCP"
    tool = item.get("tool") if isinstance(item.get("tool"), str) else "unknown"
    return f"mcp__{server}__{tool}"


class CodexEventTranslator:
    """
    Stateful translator for one Codex CLI process.

    Args:
        cwd: Working directory reported as command input.
        now: Clock in seconds, used for the screenshot dedup window.
        id_factory: Generates ids for thinking steps and id-less items.
    """

    def __init__(
        self,
        cwd: str = ".",
        now: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._cwd = cwd
        self._now = now
        self._id_factory = id_factory
        self._current_thinking_step_id: Optional[str] = None
        self._tool_contexts: dict[str, ToolUseBlock] = {}
        self._suppressed_items: set[str] = set()
        self._recent_screenshots: dict[str, tuple[float, str]] = {}

    def translate(self, event: dict[str, Any]) -> list[TranslatedAction]:
        event_type = event.get("type")
        actions: list[TranslatedAction] = []

        if event_type == "thread.started":
            thread_id = event.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                actions.append(ResumeTokenIssued(thread_id))
            return actions

        if event_type == "turn.started":
            step_id = self._id_factory()
            self._current_thinking_step_id = step_id
            actions.append(TraceStepStarted(
                TraceStep(id=step_id, type=TraceStepType.THINKING, title="Thinking")
            ))
            return actions

        if event_type == "turn.completed":
            if self._current_thinking_step_id:
                actions.append(TraceStepUpdated(
                    self._current_thinking_step_id,
                    {"status": TraceStepStatus.COMPLETED, "title": "Task completed"},
                ))
                self._current_thinking_step_id = None
            return actions

        item = event.get("item")
        if event_type not in ("item.started", "item.completed") or not isinstance(item, dict):
            return actions

        completed = event_type == "item.completed"
        item_type = item.get("type")
        item_id = item.get("id") if isinstance(item.get("id"), str) else self._id_factory()

        if item_type == "command_execution":
            command = item.get("command")
            tool_input = {
                "command": command if isinstance(command, str) else "",
                "cwd": self._cwd,
            }
            block = self._ensure_tool(actions, item_id, "execute_command", tool_input)
            if completed:
                exit_code = item.get("exit_code")
                is_error = isinstance(exit_code, int) and exit_code != 0
                self._complete_tool(
                    actions, item_id, block, _format_command_output(item), is_error
                )
            return actions

        if item_type == "mcp_tool_call":
            tool_name = _mcp_tool_name(item)
            arguments = item.get("arguments") if isinstance(item.get("arguments"), dict) else {}
            if self._suppress_duplicate_screenshot(item_id, tool_name, arguments, completed):
                return actions
            block = self._ensure_tool(actions, item_id, tool_name, arguments)
            if completed:
                error = item.get("error")
                has_error = isinstance(error, str) and bool(error.strip())
                if has_error:
                    output, images = error, []
                else:
                    output, images = _format_mcp_result(item.get("result"))
                self._complete_tool(actions, item_id, block, output, has_error, images)
            return actions

        if item_type == "todo_list":
            todos = map_todo_items(item.get("items"))
            block = self._ensure_tool(actions, item_id, "TodoWrite", {"todos": todos})
            if completed:
                self._complete_tool(
                    actions, item_id, block, f"Todo list updated ({len(todos)} items)", False
                )
            return actions

        if item_type == "agent_message" and completed:
            text = item.get("text")
            text = text.strip() if isinstance(text, str) else ""
            if text:
                actions.append(AssistantText(text))
            return actions

        return actions

    def _ensure_tool(
        self,
        actions: list[TranslatedAction],
        item_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> ToolUseBlock:
        existing = self._tool_contexts.get(item_id)
        if existing is not None:
            return existing

        block = ToolUseBlock(id=item_id, name=tool_name, input=tool_input)
        self._tool_contexts[item_id] = block
        actions.append(ToolUseEmitted(block))
        return block

    def _complete_tool(
        self,
        actions: list[TranslatedAction],
        item_id: str,
        block: ToolUseBlock,
        output: str,
        is_error: bool,
        images: Optional[list[ImageBlock]] = None,
    ) -> None:
        # The RunContext completes the tool_call step from the result
        actions.append(ToolResultEmitted(
            ToolResultBlock(
                tool_use_id=block.id,
                content=output,
                is_error=is_error,
                images=images or None,
            )
        ))
        self._tool_contexts.pop(item_id, None)

    def _suppress_duplicate_screenshot(
        self,
        item_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        completed: bool,
    ) -> bool:
        """Drop repeated screenshot calls with identical input inside the window."""
        if not tool_name.endswith(SCREENSHOT_TOOL_SUFFIX):
            return False
        if item_id in self._suppressed_items:
            return True

        # The first call's own completion is never suppressed
        if completed and item_id in self._tool_contexts:
            return False

        signature = f"{tool_name}:{json.dumps(tool_input, sort_keys=True, separators=(',', ':'))}"
        now = self._now()
        last = self._recent_screenshots.get(signature)
        if (
            last is not None
            and last[1] != item_id
            and now - last[0] < DUPLICATE_SCREENSHOT_WINDOW_SECONDS
        ):
            self._suppressed_items.add(item_id)
            logger.debug(f"Suppressed duplicate screenshot call {item_id}")
            return True

        if not completed:
            self._recent_screenshots[signature] = (now, item_id)
        return False
