"""
Pydantic models for Cowork API request/response schemas.

These models define the API contract for session management and the
human-in-the-loop endpoints.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..core.schemas import (
    Answer,
    ApprovalResult,
    ContentBlock,
    Message,
    Session,
    TraceStep,
)


# =============================================================================
# Health
# =============================================================================

class HealthResponse(BaseModel):
    """Response for GET /health."""
    status: str = Field(description="Health status")
    version: str = Field(description="API version")
    timestamp: datetime = Field(description="Current server time")
    active_sessions: int = Field(default=0, description="Sessions with an active run")
    queued_prompts: int = Field(default=0, description="Prompts waiting across sessions")


# =============================================================================
# Session Requests
# =============================================================================

class CreateSessionRequest(BaseModel):
    """
    Request body for POST /sessions.

    When a prompt is given it is queued immediately and the title is
    derived from it unless one is supplied.
    """
    title: Optional[str] = Field(default=None, description="Session title")
    working_directory: Optional[str] = Field(
        default=None,
        description="Directory the backend runs in"
    )
    allowed_tool_names: Optional[list[str]] = Field(
        default=None,
        description="Tools that run without an approval request (config default if omitted)"
    )
    provider: Optional[str] = Field(
        default=None,
        description="Provider family, e.g. claude or openai (config default if omitted)"
    )
    prompt: Optional[str] = Field(default=None, description="Optional first prompt")


class PromptRequest(BaseModel):
    """Request body for POST /sessions/{id}/prompts."""
    prompt: str = Field(description="Prompt text")
    content: list[ContentBlock] = Field(
        default_factory=list,
        description="Attached images or file references"
    )


class WorkingDirectoryRequest(BaseModel):
    """Request body for PUT /sessions/{id}/working-directory."""
    path: str = Field(description="New working directory")


class AllowedToolsRequest(BaseModel):
    """Request body for PUT /sessions/{id}/allowed-tools."""
    allowed_tool_names: list[str] = Field(description="Tools allowed without approval")


class ApprovalRequest(BaseModel):
    """Request body for POST /permissions/{tool_use_id}."""
    result: ApprovalResult = Field(description="allow, deny or allow_always")


class ClarificationRequest(BaseModel):
    """Request body for POST /questions/{question_id}."""
    answer: Answer = Field(
        default_factory=dict,
        description="Selected labels keyed by question index"
    )


# =============================================================================
# Session Responses
# =============================================================================

class SessionResponse(BaseModel):
    """Response representing a session. The resume token is never exposed."""
    id: str = Field(description="Session ID")
    title: str = Field(description="Session title")
    status: str = Field(description="idle or running")
    provider: str = Field(description="Provider family")
    working_directory: Optional[str] = Field(default=None, description="Working directory")
    allowed_tool_names: list[str] = Field(default_factory=list)
    resumable: bool = Field(
        default=False,
        description="Whether the next prompt continues a backend session"
    )
    queued_prompts: int = Field(default=0, description="Prompts waiting to run")
    created_at: datetime = Field(description="Creation timestamp")
    updated_at: datetime = Field(description="Last update timestamp")

    @classmethod
    def from_session(cls, session: Session, queued_prompts: int = 0) -> "SessionResponse":
        return cls(
            id=session.id,
            title=session.title,
            status=session.status,
            provider=session.provider,
            working_directory=session.working_directory,
            allowed_tool_names=session.allowed_tool_names,
            resumable=bool(session.resume_token),
            queued_prompts=queued_prompts,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


class SessionListResponse(BaseModel):
    """Response for GET /sessions."""
    sessions: list[SessionResponse] = Field(
        default_factory=list,
        description="List of sessions"
    )
    total: int = Field(description="Total number of sessions")


class PromptAcceptedResponse(BaseModel):
    """Response from POST /sessions/{id}/prompts (202)."""
    session_id: str = Field(description="Session ID")
    queued: int = Field(description="Prompts waiting, this one included")
    running: bool = Field(description="Whether a run is active")


class StopResponse(BaseModel):
    """Response from POST /sessions/{id}/stop."""
    session_id: str = Field(description="Session ID")
    stopped: bool = Field(description="False when nothing was running")
    status: str = Field(description="Session status after the stop")


class MessageListResponse(BaseModel):
    """Response for GET /sessions/{id}/messages."""
    messages: list[Message] = Field(default_factory=list)


class TraceResponse(BaseModel):
    """Response for GET /sessions/{id}/trace."""
    steps: list[TraceStep] = Field(default_factory=list)


class ResolutionResponse(BaseModel):
    """Response from the approval and clarification endpoints."""
    id: str = Field(description="tool_use_id or question_id")
    resolved: bool = Field(description="Always true; unknown ids return 404")
