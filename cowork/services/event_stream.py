"""
Live event fanout for SSE.

Provides per-session subscriber queues with backpressure handling. Every
published event gets a per-session sequence number, so a client can spot
gaps left by dropped events.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, DefaultDict, Dict, Set

from ..core.constants import EVENT_QUEUE_MAX_SIZE

logger = logging.getLogger(__name__)

# Pushed to subscribers when their session is deleted
STREAM_CLOSED_EVENT_TYPE = "stream_closed"


@dataclass
class SubscriberStats:
    """Statistics for a subscriber queue."""
    events_received: int = 0
    events_dropped: int = 0
    last_sequence_sent: int = 0


class EventHub:
    """
    Fan out events to multiple subscribers per session.

    Handles backpressure by dropping oldest events when queues are full,
    and tracks dropped events so clients can be notified.
    """

    def __init__(self, max_queue_size: int = EVENT_QUEUE_MAX_SIZE) -> None:
        self._subscribers: DefaultDict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._subscriber_stats: Dict[asyncio.Queue, SubscriberStats] = {}
        self._sequences: DefaultDict[str, int] = defaultdict(int)
        self._max_queue_size = max_queue_size

    def build_event(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """Wrap a payload in the live event envelope with the next sequence."""
        self._sequences[session_id] += 1
        return {
            "type": event_type,
            "data": data,
            "session_id": session_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sequence": self._sequences[session_id],
        }

    def subscribe(self, session_id: str) -> asyncio.Queue:
        """
        Subscribe to events for a session.

        Returns:
            Queue to receive events from.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[session_id].add(queue)
        self._subscriber_stats[queue] = SubscriberStats()
        logger.debug(f"New subscriber for session {session_id}")
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        stats = self._subscriber_stats.pop(queue, None)
        if stats and stats.events_dropped > 0:
            logger.info(
                f"Subscriber for session {session_id} unsubscribed. "
                f"Stats: {stats.events_received} received, "
                f"{stats.events_dropped} dropped"
            )
        if not subscribers:
            self._subscribers.pop(session_id, None)

    def publish(self, session_id: str, event: dict[str, Any]) -> None:
        """
        Publish an event to all subscribers for a session.

        Never blocks: a full queue loses its oldest event.
        """
        sequence = event.get("sequence", 0)

        for queue in list(self._subscribers.get(session_id, ())):
            stats = self._subscriber_stats.get(queue)

            if queue.full():
                try:
                    dropped_event = queue.get_nowait()
                    if stats:
                        stats.events_dropped += 1
                    logger.warning(
                        f"Dropping event (type={dropped_event.get('type', 'unknown')}, "
                        f"seq={dropped_event.get('sequence', '?')}) "
                        f"for session {session_id} due to backpressure"
                    )
                except asyncio.QueueEmpty:
                    pass

            try:
                queue.put_nowait(event)
                if stats:
                    stats.events_received += 1
                    stats.last_sequence_sent = sequence
            except asyncio.QueueFull:
                if stats:
                    stats.events_dropped += 1
                logger.error(
                    f"Failed to enqueue event for session {session_id} "
                    f"even after dropping oldest"
                )

    def dropped_count(self, queue: asyncio.Queue) -> int:
        stats = self._subscriber_stats.get(queue)
        return stats.events_dropped if stats else 0

    def get_subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def close_session(self, session_id: str) -> None:
        """Tell subscribers the session is gone and forget its sequence."""
        self.publish(
            session_id,
            self.build_event(session_id, STREAM_CLOSED_EVENT_TYPE, {}),
        )
        self._sequences.pop(session_id, None)
