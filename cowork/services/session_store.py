"""
Session store for Cowork.

Durable session, message and trace-step records; the only source of
truth across restarts. Everything is keyed by session id, and deleting a
session cascades to its messages and trace steps.

Implements robustness features:
- Error handling with proper rollback
- Retry logic for transient database failures
- Session ID format validation
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.schemas import (
    Message,
    Session,
    SessionStatus,
    TokenUsage,
    TraceStep,
    content_blocks_adapter,
)
from ..db import models
from ..db.database import AsyncSessionLocal

logger = logging.getLogger(__name__)

# Type variable for retry decorator
T = TypeVar("T")

# Session ID validation pattern: YYYYMMDD_HHMMSS_hexchars
SESSION_ID_PATTERN = re.compile(r"^\d{8}_\d{6}_[a-f0-9]{8}$")

# Retry configuration
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 0.1
RETRY_BACKOFF_MULTIPLIER = 2.0

# Columns a caller may change through update()
UPDATABLE_SESSION_FIELDS = frozenset({
    "title",
    "status",
    "working_directory",
    "allowed_tool_names",
    "resume_token",
    "resume_backend",
    "provider",
})

UPDATABLE_STEP_FIELDS = frozenset({
    "status",
    "title",
    "tool_name",
    "tool_input",
    "tool_output",
    "is_error",
    "duration",
})


class SessionServiceError(Exception):
    """Base exception for session service errors."""
    pass


class SessionNotFoundError(SessionServiceError):
    """Session not found."""
    pass


class InvalidSessionIdError(SessionServiceError):
    """Invalid session ID format."""
    pass


class SessionBusyError(SessionServiceError):
    """Operation not allowed while a run is active for the session."""
    pass


def validate_session_id(session_id: str) -> None:
    """
    Validate session ID format.

    Args:
        session_id: The session ID to validate.

    Raises:
        InvalidSessionIdError: If the session ID format is invalid.
    """
    if not session_id:
        raise InvalidSessionIdError("Session ID cannot be empty")

    if not SESSION_ID_PATTERN.match(session_id):
        raise InvalidSessionIdError(
            f"Invalid session ID format: {session_id}. "
            "Expected format: YYYYMMDD_HHMMSS_hexchars"
        )


def with_db_retry(
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY_SECONDS,
    backoff_multiplier: float = RETRY_BACKOFF_MULTIPLIER,
) -> Callable:
    """
    Decorator for retrying database operations on transient failures.

    Retries on OperationalError (connection issues, locks, etc.)
    but not on IntegrityError (constraint violations).
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            delay = retry_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    last_error = e
                    if attempt < max_retries:
                        logger.warning(
                            f"Database operation failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                            f"Retrying in {delay:.2f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay *= backoff_multiplier
                    else:
                        logger.error(
                            f"Database operation failed after {max_retries + 1} attempts: {e}"
                        )
                except IntegrityError:
                    # Don't retry integrity errors - they won't succeed
                    raise

            raise last_error  # type: ignore
        return wrapper
    return decorator


def _to_session(row: models.Session) -> Session:
    return Session.model_validate(row)


def _to_message(row: models.Message) -> Message:
    return Message(
        id=row.id,
        session_id=row.session_id,
        role=row.role,
        content=content_blocks_adapter.validate_python(row.content or []),
        timestamp=row.timestamp,
        token_usage=TokenUsage(**row.token_usage) if row.token_usage else None,
    )


def _to_trace_step(row: models.TraceStep) -> TraceStep:
    return TraceStep.model_validate(row)


class SessionStore:
    """
    Persistence for sessions, messages and trace steps.

    Each operation runs in its own database session and commits before
    returning, so callers observe durable state.

    Args:
        session_factory: Async session factory. Defaults to the module factory.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @with_db_retry()
    async def create(self, session: Session) -> Session:
        """
        Insert a new session row.

        Raises:
            InvalidSessionIdError: If the session ID format is invalid.
        """
        validate_session_id(session.id)
        async with self._session_factory() as db:
            row = models.Session(
                id=session.id,
                title=session.title,
                status=str(session.status),
                working_directory=session.working_directory,
                allowed_tool_names=list(session.allowed_tool_names),
                resume_token=session.resume_token,
                resume_backend=session.resume_backend,
                provider=session.provider,
            )
            db.add(row)
            try:
                await db.commit()
                await db.refresh(row)
            except Exception as e:
                logger.error(f"Failed to create session {session.id}: {e}")
                await db.rollback()
                raise
            logger.info(f"Created session: {session.id}")
            return _to_session(row)

    @with_db_retry()
    async def get(self, session_id: str) -> Optional[Session]:
        """
        Get a session by ID.

        Raises:
            InvalidSessionIdError: If session ID format is invalid.
        """
        validate_session_id(session_id)
        async with self._session_factory() as db:
            row = await db.get(models.Session, session_id)
            return _to_session(row) if row else None

    @with_db_retry()
    async def list_all(self, limit: int = 50, offset: int = 0) -> tuple[list[Session], int]:
        """
        List sessions, newest first.

        Returns:
            Tuple of (sessions list, total count).
        """
        async with self._session_factory() as db:
            count_result = await db.execute(
                select(func.count()).select_from(models.Session)
            )
            total = count_result.scalar_one()

            result = await db.execute(
                select(models.Session)
                .order_by(models.Session.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_to_session(row) for row in result.scalars().all()], total

    @with_db_retry()
    async def update(self, session_id: str, **fields: Any) -> Session:
        """
        Update session columns in one transaction.

        Args:
            session_id: The session ID.
            **fields: Columns to set (see UPDATABLE_SESSION_FIELDS).

        Raises:
            SessionNotFoundError: If the session does not exist.
            ValueError: If an unknown field is passed.
        """
        unknown = set(fields) - UPDATABLE_SESSION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        validate_session_id(session_id)
        async with self._session_factory() as db:
            row = await db.get(models.Session, session_id)
            if row is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")

            for key, value in fields.items():
                setattr(row, key, str(value) if key == "status" else value)
            row.updated_at = datetime.now(timezone.utc)

            try:
                await db.commit()
                await db.refresh(row)
            except Exception as e:
                logger.error(f"Failed to update session {session_id}: {e}")
                await db.rollback()
                raise
            return _to_session(row)

    @with_db_retry()
    async def delete(self, session_id: str) -> bool:
        """
        Delete a session with its messages and trace steps.

        Returns:
            True if a row was deleted.
        """
        validate_session_id(session_id)
        async with self._session_factory() as db:
            row = await db.get(models.Session, session_id)
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
            logger.info(f"Deleted session: {session_id}")
            return True

    @with_db_retry()
    async def reset_running_sessions(self) -> int:
        """
        Set every running session back to idle.

        Called on startup: no invocation survives a process restart.

        Returns:
            Number of sessions reset.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(models.Session)
                .where(models.Session.status == SessionStatus.RUNNING.value)
                .values(
                    status=SessionStatus.IDLE.value,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()
            count = result.rowcount or 0
            if count:
                logger.warning(f"Reset {count} stale running sessions to idle")
            return count

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @with_db_retry()
    async def create_message(self, message: Message) -> Message:
        async with self._session_factory() as db:
            position = await self._next_position(db, models.Message, message.session_id)
            db.add(models.Message(
                id=message.id,
                session_id=message.session_id,
                position=position,
                role=str(message.role),
                content=[block.model_dump(mode="json") for block in message.content],
                timestamp=message.timestamp,
                token_usage=(
                    message.token_usage.model_dump() if message.token_usage else None
                ),
            ))
            try:
                await db.commit()
            except Exception as e:
                logger.error(f"Failed to store message for {message.session_id}: {e}")
                await db.rollback()
                raise
            return message

    @with_db_retry()
    async def get_messages_by_session(self, session_id: str) -> list[Message]:
        """Messages in insertion order."""
        validate_session_id(session_id)
        async with self._session_factory() as db:
            result = await db.execute(
                select(models.Message)
                .where(models.Message.session_id == session_id)
                .order_by(models.Message.position)
            )
            return [_to_message(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Trace steps
    # ------------------------------------------------------------------

    @with_db_retry()
    async def create_trace_step(self, session_id: str, step: TraceStep) -> TraceStep:
        async with self._session_factory() as db:
            position = await self._next_position(db, models.TraceStep, session_id)
            db.add(models.TraceStep(
                id=step.id,
                session_id=session_id,
                position=position,
                type=str(step.type),
                status=str(step.status),
                title=step.title,
                tool_name=step.tool_name,
                tool_input=step.tool_input,
                tool_output=step.tool_output,
                is_error=step.is_error,
                timestamp=step.timestamp,
                duration=step.duration,
            ))
            try:
                await db.commit()
            except Exception as e:
                logger.error(f"Failed to store trace step {step.id}: {e}")
                await db.rollback()
                raise
            return step

    @with_db_retry()
    async def update_trace_step(
        self,
        session_id: str,
        step_id: str,
        updates: dict[str, Any],
    ) -> Optional[TraceStep]:
        """
        Mutate a trace step in place.

        Returns:
            The updated step, or None if no step with that id exists in the session.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(models.TraceStep)
                .where(
                    models.TraceStep.session_id == session_id,
                    models.TraceStep.id == step_id,
                )
                .order_by(models.TraceStep.position.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                logger.warning(f"Trace step {step_id} not found for session {session_id}")
                return None
            for key, value in updates.items():
                if key in UPDATABLE_STEP_FIELDS:
                    setattr(row, key, str(value) if key == "status" else value)
            await db.commit()
            await db.refresh(row)
            return _to_trace_step(row)

    @with_db_retry()
    async def get_trace_steps_by_session(self, session_id: str) -> list[TraceStep]:
        validate_session_id(session_id)
        async with self._session_factory() as db:
            result = await db.execute(
                select(models.TraceStep)
                .where(models.TraceStep.session_id == session_id)
                .order_by(models.TraceStep.position)
            )
            return [_to_trace_step(row) for row in result.scalars().all()]

    @staticmethod
    async def _next_position(db: AsyncSession, model: Any, session_id: str) -> int:
        result = await db.execute(
            select(func.coalesce(func.max(model.position), 0))
            .where(model.session_id == session_id)
        )
        return int(result.scalar_one()) + 1

