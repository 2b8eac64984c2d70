"""
FastAPI application for Cowork API.

Main entry point that configures the FastAPI app with:
- CORS middleware
- Database initialization and stale-session recovery
- Orchestrator wiring (store, event hub, broker, adapters, runner)
- Route registration
- Lifespan management
- Dual logging (console with colors + file)
"""
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Iterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import API_CONFIG_FILE, ensure_dirs, get_config_loader, load_api_config
from ..core.error_classifier import ErrorClassifier
from ..core.logging_config import setup_backend_logging
from ..db.database import DATABASE_PATH, engine, init_db
from ..services.adapter_registry import UnknownProviderError, build_registry
from ..services.event_sink import PersistentEventSink
from ..services.event_stream import EventHub
from ..services.permission_broker import PermissionBroker
from ..services.session_runner import SessionRunner
from ..services.session_store import (
    InvalidSessionIdError,
    SessionBusyError,
    SessionNotFoundError,
    SessionStore,
)
from .routes import health_router, permissions_router, sessions_router

logger = logging.getLogger(__name__)

# Config keys whose values are masked in the startup log
SENSITIVE_PATTERNS = re.compile(
    r"(secret|key|password|token|credential|auth)", re.IGNORECASE
)


# =============================================================================
# Configuration Logging
# =============================================================================

def mask_value(value: Any) -> str:
    """Show at most the first and last four characters of a secret."""
    text = str(value)
    if len(text) <= 8:
        return "*" * len(text)
    return f"{text[:4]}...{text[-4:]}"


def flatten_config(config: dict[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield (dotted.key, value) pairs for every leaf of a config dict."""
    for key, value in config.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            yield from flatten_config(value, f"{name}.")
        else:
            yield name, value


def log_configuration(api_config: dict[str, Any]) -> None:
    """Log the API and orchestrator configuration with secrets masked."""
    loader = get_config_loader()
    logger.info("=" * 60)
    logger.info(f"COWORK API ({API_CONFIG_FILE}, {loader.config_path})")
    logger.info(f"Database: {DATABASE_PATH}")
    logger.info("-" * 60)
    sections = {"api": api_config, **loader.get_config()}
    for name, value in flatten_config(sections):
        if value and SENSITIVE_PATTERNS.search(name.rsplit(".", 1)[-1]):
            value = mask_value(value)
        logger.info(f"{name} = {value}")
    logger.info("=" * 60)


# =============================================================================
# Orchestrator Wiring
# =============================================================================

def build_runner(store: SessionStore, hub: EventHub) -> SessionRunner:
    """
    Build the SessionRunner and its collaborators from cowork.yaml.

    Raises:
        ConfigNotFoundError: If cowork.yaml doesn't exist.
        ConfigValidationError: If a section is missing or a backend is unknown.
    """
    loader = get_config_loader()
    retry_settings = loader.get_retry_settings()
    classifier = ErrorClassifier(
        extra_transient_signatures=retry_settings.transient_signatures
    )
    registry = build_registry(loader, classifier)
    defaults = loader.get("defaults")

    sink = PersistentEventSink(store, hub)
    broker = PermissionBroker(sink)
    return SessionRunner(
        store=store,
        sink=sink,
        broker=broker,
        registry=registry,
        retry_settings=retry_settings,
        classifier=classifier,
        default_provider=defaults["provider"],
        default_allowed_tools=defaults["allowed_tool_names"],
    )


# =============================================================================
# Application Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Initialize database, build the runner, reset stale sessions
    - Shutdown: Stop active runs and dispose of the engine
    """
    logger.info("Starting Cowork API...")
    ensure_dirs()
    await init_db()
    logger.info("Database initialized")

    store = SessionStore()
    hub = EventHub()
    runner = build_runner(store, hub)
    recovered = await runner.recover_stale_sessions()
    if recovered:
        logger.info(f"Reset {recovered} sessions left running by a previous process")

    app.state.store = store
    app.state.hub = hub
    app.state.runner = runner

    yield

    logger.info("Shutting down Cowork API...")
    await runner.shutdown()
    await engine.dispose()


# =============================================================================
# Application Factory
# =============================================================================

def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance.

    Raises:
        ConfigNotFoundError: If api.yaml or cowork.yaml doesn't exist.
        ConfigValidationError: If required fields are missing.
    """
    # Configure dual logging (console with colors + file)
    setup_backend_logging()

    api_config = load_api_config()
    log_configuration(api_config)

    app = FastAPI(
        title="Cowork API",
        description="REST API for Cowork - multi-backend agent orchestrator",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_config["cors_origins"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes under /api/v1 prefix
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(sessions_router, prefix="/api/v1")
    app.include_router(permissions_router, prefix="/api/v1")

    @app.exception_handler(InvalidSessionIdError)
    async def invalid_session_id_handler(
        request: Request, exc: InvalidSessionIdError
    ) -> JSONResponse:
        """Convert InvalidSessionIdError to 404 response."""
        return _error_response(404, exc)

    @app.exception_handler(SessionNotFoundError)
    async def session_not_found_handler(
        request: Request, exc: SessionNotFoundError
    ) -> JSONResponse:
        """Convert SessionNotFoundError to 404 response."""
        return _error_response(404, exc)

    @app.exception_handler(SessionBusyError)
    async def session_busy_handler(
        request: Request, exc: SessionBusyError
    ) -> JSONResponse:
        """Convert SessionBusyError to 409 response."""
        return _error_response(409, exc)

    @app.exception_handler(UnknownProviderError)
    async def unknown_provider_handler(
        request: Request, exc: UnknownProviderError
    ) -> JSONResponse:
        """Convert UnknownProviderError to 400 response."""
        return _error_response(400, exc)

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    api_config = load_api_config()

    uvicorn.run(
        "cowork.api.main:app",
        host=api_config["host"],
        port=api_config["port"],
        reload=api_config.get("reload", False),
        reload_excludes=["logs/*", "data/*"],
    )
