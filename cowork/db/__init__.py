"""
Database package for Cowork.

Provides SQLite async database with SQLAlchemy ORM.
"""
from .database import (
    AsyncSessionLocal,
    Base,
    create_engine,
    create_session_factory,
    engine,
    init_db,
)
from .models import Message, Session, TraceStep

__all__ = [
    "AsyncSessionLocal",
    "Base",
    "create_engine",
    "create_session_factory",
    "engine",
    "init_db",
    "Message",
    "Session",
    "TraceStep",
]
