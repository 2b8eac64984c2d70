"""
FastAPI dependencies for Cowork API.

The lifespan builds the orchestrator services once and stores them on
``app.state``; these dependencies hand them to route handlers.
"""
from fastapi import Request

from ..services.event_stream import EventHub
from ..services.session_runner import SessionRunner


def get_runner(request: Request) -> SessionRunner:
    """The application's SessionRunner."""
    return request.app.state.runner


def get_hub(request: Request) -> EventHub:
    """The application's live event hub."""
    return request.app.state.hub
