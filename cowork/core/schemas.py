"""
Data models for Cowork.

Contains Pydantic models for sessions, messages, content blocks and trace
steps, plus the small dataclasses used as ephemeral run state.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .constants import DEFAULT_SESSION_TITLE, SESSION_TITLE_MAX_LENGTH


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """Generate a unique session ID (YYYYMMDD_HHMMSS_hex8)."""
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    uid = uuid.uuid4().hex[:8]
    return f"{ts}_{uid}"


def new_id() -> str:
    """Generate an id for messages, trace steps and questions."""
    return uuid.uuid4().hex


def derive_session_title(prompt: Optional[str]) -> str:
    """
    Build a session title from the first prompt.

    Args:
        prompt: The prompt text, possibly empty.

    Returns:
        The trimmed prompt cut to SESSION_TITLE_MAX_LENGTH characters
        (with "..." appended when cut), or DEFAULT_SESSION_TITLE.
    """
    text = (prompt or "").strip()
    if not text:
        return DEFAULT_SESSION_TITLE
    if len(text) > SESSION_TITLE_MAX_LENGTH:
        return text[:SESSION_TITLE_MAX_LENGTH] + "..."
    return text


class SessionStatus(StrEnum):
    """Whether an invocation is in flight for a session."""
    IDLE = "idle"
    RUNNING = "running"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class TraceStepType(StrEnum):
    """Kind of entry on the tool-use timeline."""
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class TraceStepStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ApprovalResult(StrEnum):
    """Human decision on a tool-use approval request."""
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_ALWAYS = "allow_always"


# =============================================================================
# Content blocks
# =============================================================================

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ImageBlock(BaseModel):
    """Inline image, base64 encoded."""
    type: Literal["image"] = "image"
    data: str
    mime_type: str = "image/png"


class ToolResultBlock(BaseModel):
    """
    Output of a tool execution.

    tool_use_id always references a ToolUseBlock emitted earlier in the
    same turn or an ancestor turn.
    """
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str = ""
    is_error: bool = False
    images: Optional[list[ImageBlock]] = None


class FileAttachmentBlock(BaseModel):
    type: Literal["file_attachment"] = "file_attachment"
    path: str
    size: int = 0


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock, ImageBlock, FileAttachmentBlock],
    Field(discriminator="type"),
]

# Validates the JSON list stored in the messages table
content_blocks_adapter: TypeAdapter[list[ContentBlock]] = TypeAdapter(list[ContentBlock])


# =============================================================================
# Conversation records
# =============================================================================

class TokenUsage(BaseModel):
    """
    Token usage statistics.

    Tracks input and output token counts, including cached tokens.
    """
    input_tokens: int = Field(
        default=0,
        description="Number of input tokens processed"
    )
    output_tokens: int = Field(
        default=0,
        description="Number of output tokens generated"
    )
    cache_creation_input_tokens: int = Field(
        default=0,
        description="Number of tokens used to create cache"
    )
    cache_read_input_tokens: int = Field(
        default=0,
        description="Number of tokens read from cache"
    )

    @property
    def total_tokens(self) -> int:
        """
        Total tokens (input + output), including cache operations.
        """
        return (
            self.input_tokens +
            self.cache_creation_input_tokens +
            self.cache_read_input_tokens +
            self.output_tokens
        )

    @classmethod
    def from_usage(cls, usage: Optional[dict]) -> Optional["TokenUsage"]:
        """
        Create TokenUsage from a backend usage dictionary.

        Accepts both the Anthropic key names and the OpenAI ones
        (prompt/completion or input/output with cached_input_tokens).

        Args:
            usage: The usage dict reported by the backend.

        Returns:
            TokenUsage instance, or None when no usage was reported.
        """
        if not usage:
            return None

        return cls(
            input_tokens=usage.get("input_tokens", usage.get("prompt_tokens", 0)) or 0,
            output_tokens=usage.get("output_tokens", usage.get("completion_tokens", 0)) or 0,
            cache_creation_input_tokens=usage.get("cache_creation_input_tokens", 0) or 0,
            cache_read_input_tokens=(
                usage.get("cache_read_input_tokens", usage.get("cached_input_tokens", 0)) or 0
            ),
        )


class Session(BaseModel):
    """
    A conversation with one provider family.

    resume_token is opaque and owned by the backend named in
    resume_backend. It is only valid for the working_directory it was
    issued under.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str = DEFAULT_SESSION_TITLE
    status: SessionStatus = SessionStatus.IDLE
    working_directory: Optional[str] = None
    allowed_tool_names: list[str] = Field(default_factory=list)
    resume_token: Optional[str] = None
    resume_backend: Optional[str] = None
    provider: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Message(BaseModel):
    """One conversation turn entry with ordered typed content."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    session_id: str
    role: MessageRole
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    token_usage: Optional[TokenUsage] = None

    @property
    def text(self) -> str:
        """Concatenated text of all TextBlocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_use_ids(self) -> list[str]:
        return [b.id for b in self.content if isinstance(b, ToolUseBlock)]


class TraceStep(BaseModel):
    """
    Timeline entry for thinking, tool calls and tool results.

    Created running, then mutated in place by id to completed or error.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    type: TraceStepType
    status: TraceStepStatus = TraceStepStatus.RUNNING
    title: str = ""
    tool_name: Optional[str] = None
    tool_input: Optional[dict[str, Any]] = None
    tool_output: Optional[str] = None
    is_error: bool = False
    timestamp: datetime = Field(default_factory=utc_now)
    duration: Optional[float] = Field(
        default=None,
        description="Seconds between creation and the final status update"
    )


class QuestionOption(BaseModel):
    label: str
    description: str = ""


class QuestionItem(BaseModel):
    """A clarifying question a backend asks the user mid-run."""
    question: str
    header: str = ""
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")

    model_config = ConfigDict(populate_by_name=True)


# Answers keyed by question index ("0", "1", ...) to the selected labels
Answer = dict[str, list[str]]


# =============================================================================
# Ephemeral run state
# =============================================================================

@dataclass
class PromptQueueEntry:
    """
    A prompt waiting for its turn.

    Owned by the SessionRunner between enqueue and the start of its
    invocation.
    """
    prompt: str
    attached_content: list[Any] = field(default_factory=list)


@dataclass
class FailureContext:
    """
    What a failed invocation had already done.

    has_turn_output: assistant text or a tool use was emitted.
    has_turn_side_effects: a tool actually executed (a ToolResult was recorded).
    """
    has_turn_output: bool = False
    has_turn_side_effects: bool = False

    def merge(self, other: Optional["FailureContext"]) -> "FailureContext":
        if other is None:
            return FailureContext(self.has_turn_output, self.has_turn_side_effects)
        return FailureContext(
            has_turn_output=self.has_turn_output or other.has_turn_output,
            has_turn_side_effects=(
                self.has_turn_side_effects or other.has_turn_side_effects
            ),
        )


@dataclass
class RetryState:
    """Retry bookkeeping for one queued entry. Discarded when it finishes."""
    attempt: int = 0
    last_resume_token: Optional[str] = None
    delays: list[float] = field(default_factory=list)
