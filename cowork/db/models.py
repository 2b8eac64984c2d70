"""
SQLAlchemy ORM models for Cowork.

Defines the sessions, messages and trace_steps tables. Messages and
trace steps belong to a session and are removed with it.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Session(Base):
    """
    Session model.

    resume_token is opaque to the orchestrator and only valid together with
    working_directory and the adapter named in resume_backend.
    """
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), default="New Session")
    status: Mapped[str] = mapped_column(String(20), default="idle", index=True)
    working_directory: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    allowed_tool_names: Mapped[list[str]] = mapped_column(JSON, default=list)
    resume_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resume_backend: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    provider: Mapped[str] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utc_now, onupdate=_utc_now
    )

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="session",
        cascade="all, delete-orphan",
    )
    trace_steps: Mapped[list["TraceStep"]] = relationship(
        "TraceStep",
        back_populates="session",
        cascade="all, delete-orphan",
    )


class Message(Base):
    """A conversation message; content is an ordered JSON list of typed blocks."""
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("sessions.id", ondelete="CASCADE"), index=True
    )
    # Insertion order; timestamps can collide within one turn
    position: Mapped[int] = mapped_column(Integer, default=0)
    role: Mapped[str] = mapped_column(String(20))
    content: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    token_usage: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    session: Mapped["Session"] = relationship("Session", back_populates="messages")


class TraceStep(Base):
    """
    A timeline step, mutated in place by id.

    Step ids come from backends and are only unique within one turn (Codex
    reuses item ids per thread), so rows get a surrogate key and updates
    target the latest step with that id in the session.
    """
    __tablename__ = "trace_steps"

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), index=True)
    session_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("sessions.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20), default="running")
    title: Mapped[str] = mapped_column(Text, default="")
    tool_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    tool_input: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    tool_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_error: Mapped[bool] = mapped_column(Boolean, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    session: Mapped["Session"] = relationship("Session", back_populates="trace_steps")
