"""
Centralized constants for Cowork.

All magic numbers, strings, and configuration values are defined here.
This ensures consistency across modules and makes maintenance easier.

Usage:
    from .constants import (
        LOG_FORMAT_FILE,
        TRACE_OUTPUT_PREVIEW_LENGTH,
        DEFAULT_TRANSIENT_SIGNATURES,
    )
"""

# =============================================================================
# Logging Constants
# =============================================================================

# Log format for file-based logging
LOG_FORMAT_FILE: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Log format for colored console (using colorlog)
LOG_FORMAT_COLORED: str = (
    "%(log_color)s%(levelname)-8s%(reset)s %(cyan)s%(name)s%(reset)s: %(message)s"
)

# Rotating file handler settings
LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT: int = 5

# Log file names
LOG_FILE_BACKEND: str = "backend.log"

# Colors for colorlog
COLORLOG_COLORS: dict[str, str] = {
    "DEBUG": "white",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


# =============================================================================
# Trace / Message Constants
# =============================================================================

# Tool output stored on a trace step (full output lives in the ToolResult)
TRACE_OUTPUT_PREVIEW_LENGTH: int = 800

# Title length cap when deriving a session title from the first prompt
SESSION_TITLE_MAX_LENGTH: int = 50
DEFAULT_SESSION_TITLE: str = "New Session"

# Assistant text is replayed to the UI in chunks of this size when a backend
# only delivers complete messages
PARTIAL_CHUNK_SIZE: int = 30

# Screenshot tool calls with identical input inside this window are collapsed
DUPLICATE_SCREENSHOT_WINDOW_SECONDS: float = 90.0


# =============================================================================
# Retry / Failover Constants
# =============================================================================

# Case-insensitive substrings identifying transient provider failures
DEFAULT_TRANSIENT_SIGNATURES: tuple[str, ...] = (
    "provider returned error",
    "unable to submit request",
    "api error",
    "error: 400",
    "error: 500",
    "error: 502",
    "error: 503",
    "timeout",
    "timed out",
    "econnrefused",
    "connection refused",
    "invalid upstream response",
    "thought signature",
    "invalid_argument",
)

# Substrings that mark an error as authorization-class
AUTHORIZATION_SIGNATURES: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid token",
    "authentication failed",
    "error: 401",
    "error: 403",
    "auth login",
)

RETRY_NOTICE_TEMPLATE: str = "\n\nBackend error, retrying ({attempt}/{max_retries})...\n\n"


# =============================================================================
# Event Stream Constants
# =============================================================================

EVENT_QUEUE_MAX_SIZE: int = 500
SSE_HEARTBEAT_SECONDS: float = 30.0

# Seconds to wait for a cancelled adapter task to unwind
CANCEL_GRACE_SECONDS: float = 5.0
