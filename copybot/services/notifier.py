import asyncio
import logging
from typing import Dict, Set
from copybot.core.interfaces import NotificationSink
from copybot.core.events import Notification, user_topic

logger = logging.getLogger(__name__)


class NotificationHub(NotificationSink):
    """
    In-process pub/sub keyed by topic (`user:<id>`).

    Every subscriber owns a bounded queue. A full queue means a slow client:
    the message is dropped for that subscriber only.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self.dropped = 0

    def subscribe(self, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(user_topic(user_id), set()).add(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue):
        topic = user_topic(user_id)
        queues = self._subscribers.get(topic)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[topic]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_topic(user_id), ()))

    async def publish(self, notification: Notification) -> None:
        queues = self._subscribers.get(notification.topic)
        if not queues:
            logger.debug(f"No listeners on {notification.topic} for {notification.kind.value}")
            return
        for queue in list(queues):
            try:
                queue.put_nowait(notification)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning(f"📭 Dropped {notification.kind.value} for {notification.topic}: subscriber queue full")
