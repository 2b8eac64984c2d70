"""
Pytest configuration and fixtures for backend tests.

Provides fixtures for:
- Temporary SQLite database (file-backed so background drains and the
  test share it safely)
- Store, event hub, sink and permission broker
- Scripted fake backend adapters and a recording event sink
- FastAPI app and clients wired to the test services
"""
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Add project root to path before importing project modules
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from cowork.config import RetrySettings  # noqa: E402
from cowork.core.adapter import BackendAdapter  # noqa: E402
from cowork.core.schemas import Session  # noqa: E402
from cowork.db.database import create_engine, create_session_factory, init_db  # noqa: E402
from cowork.services.adapter_registry import AdapterRegistry  # noqa: E402
from cowork.services.event_sink import PersistentEventSink  # noqa: E402
from cowork.services.event_stream import EventHub  # noqa: E402
from cowork.services.permission_broker import PermissionBroker  # noqa: E402
from cowork.services.session_runner import SessionRunner  # noqa: E402
from cowork.services.session_store import SessionStore  # noqa: E402

from fakes import FakeAdapter, RecordingSink, RecordingSleep  # noqa: E402


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (may use real database)"
    )


# =============================================================================
# Database and services
# =============================================================================

@pytest_asyncio.fixture
async def test_engine(tmp_path: Path):
    """Create a test database engine on a temporary SQLite file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'cowork-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(test_engine) -> SessionStore:
    return SessionStore(create_session_factory(test_engine))


@pytest.fixture
def hub() -> EventHub:
    return EventHub()


@pytest.fixture
def sink(store: SessionStore, hub: EventHub) -> PersistentEventSink:
    return PersistentEventSink(store, hub)


@pytest.fixture
def broker(sink: PersistentEventSink) -> PermissionBroker:
    return PermissionBroker(sink)


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest_asyncio.fixture
async def make_runner(
    store: SessionStore,
    sink: PersistentEventSink,
    broker: PermissionBroker,
    recording_sleep: RecordingSleep,
) -> AsyncGenerator[Callable[..., SessionRunner], None]:
    """
    Factory for SessionRunners over the test store.

    Usage:
        runner = make_runner(primary, fallback, max_retries=3)
    """
    runners: list[SessionRunner] = []

    def build(
        primary: BackendAdapter,
        fallback: Optional[BackendAdapter] = None,
        provider: str = "fake",
        max_retries: int = 10,
    ) -> SessionRunner:
        registry = AdapterRegistry()
        registry.register(provider, primary, fallback)
        runner = SessionRunner(
            store=store,
            sink=sink,
            broker=broker,
            registry=registry,
            retry_settings=RetrySettings(max_retries=max_retries, base_delay_seconds=1.0),
            sleep=recording_sleep,
            default_provider=provider,
            default_allowed_tools=["Read"],
        )
        runners.append(runner)
        return runner

    yield build

    for runner in runners:
        await runner.shutdown()


@pytest_asyncio.fixture
async def runner(make_runner, fake_adapter: FakeAdapter) -> SessionRunner:
    return make_runner(fake_adapter)


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def test_app(runner: SessionRunner, hub: EventHub, store: SessionStore):
    """
    Create a FastAPI app configured for testing.

    The lifespan is not run; the test runner, hub and store are placed
    on app.state directly.
    """
    from cowork.api.main import create_app

    with patch("cowork.api.main.load_api_config") as mock_config:
        mock_config.return_value = {
            "host": "0.0.0.0",
            "port": 40080,
            "cors_origins": ["http://localhost:50080"],
        }
        app = create_app()

    app.state.runner = runner
    app.state.hub = hub
    app.state.store = store
    return app


@pytest_asyncio.fixture
async def async_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test"
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def created_session(runner: SessionRunner) -> Session:
    """An idle session for the fake provider."""
    return await runner.create_session(title="Fixture session", working_directory="/tmp")
