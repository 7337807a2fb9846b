"""In-process pub/sub for sync progress notifications."""
import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "sync_progress"
HISTORY_LIMIT = 1000


class EventBroadcaster:
    """Fan-out of events to asyncio.Queue subscribers, keyed by topic.

    Slow subscribers never block publishers: when a subscriber queue is
    full the event is dropped for that subscriber and a warning logged.
    """

    def __init__(self, *, queue_size: int = 100, history_limit: int = HISTORY_LIMIT):
        self._queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_limit)

    def subscribe(self, topic: str = DEFAULT_TOPIC) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[topic].append(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        if queue in self._subscribers.get(topic, []):
            self._subscribers[topic].remove(queue)

    async def publish(self, topic: str, event_type: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        event = {
            "topic": topic,
            "event_type": event_type,
            "payload": dict(payload),
            "published_at": datetime.now(timezone.utc).isoformat(),
        }
        self.history.append(event)
        for queue in list(self._subscribers.get(topic, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Subscriber queue full on %s; dropping %s", topic, event_type)
        return event

    async def broadcast_session_event(
        self,
        session_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Publish on the shared topic and on the per-session topic."""
        data = {"session_id": session_id, **payload}
        event = await self.publish(topic or DEFAULT_TOPIC, event_type, data)
        await self.publish(f"sync_session:{session_id}", event_type, data)
        return event

    def events_for(self, session_id: str) -> List[Dict[str, Any]]:
        return [
            e for e in self.history
            if e["topic"] == f"sync_session:{session_id}"
        ]
