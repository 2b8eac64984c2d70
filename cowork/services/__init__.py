"""
Services package for Cowork.

Contains the orchestration services: the session store, the session
runner with its retry and failover controllers, the permission broker
and live event fanout.
"""
from .adapter_registry import AdapterRegistry, build_registry
from .event_sink import PersistentEventSink
from .event_stream import EventHub
from .failover import FailoverController
from .permission_broker import PermissionBroker
from .retry import RetryController
from .session_runner import SessionRunner
from .session_store import SessionStore

__all__ = [
    "AdapterRegistry",
    "build_registry",
    "PersistentEventSink",
    "EventHub",
    "FailoverController",
    "PermissionBroker",
    "RetryController",
    "SessionRunner",
    "SessionStore",
]
