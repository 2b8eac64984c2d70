"""
Pytest configuration for core-tests.

Fixtures for the translator, adapter and configuration tests. Nothing
here touches the database or the HTTP layer.
"""
import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path before importing project modules
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from cowork.core.adapter import RunContext  # noqa: E402
from cowork.core.schemas import Session  # noqa: E402
from cowork.services.permission_broker import PermissionBroker  # noqa: E402

from recorders import SESSION_ID, EventRecorder  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (may spawn subprocesses)"
    )


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def session(tmp_path: Path) -> Session:
    return Session(
        id=SESSION_ID,
        provider="openai",
        working_directory=str(tmp_path),
        allowed_tool_names=["Read"],
    )


@pytest.fixture
def run_context(recorder: EventRecorder) -> RunContext:
    """A RunContext wired to the recorder and a real broker."""
    return RunContext(
        session_id=SESSION_ID,
        sink=recorder,
        broker=PermissionBroker(recorder),
        cancel_event=asyncio.Event(),
    )
