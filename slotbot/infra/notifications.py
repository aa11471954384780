"""
Booking event publishing.

Booking-created events go out as JSON on a Redis pub/sub channel for the
reminder scheduler. When Redis is unavailable the event is logged and kept
in an in-process outbox; the next publish (or ``flush_outbox()``) sends
held events first.
"""

import json
import logging
from collections import deque
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from slotbot.config import settings
from slotbot.core.scheduling.repository import EventPublisher
from slotbot.core.scheduling.types import BookingCreatedEvent
from slotbot.infra.redis import RedisClient, get_redis

logger = logging.getLogger(__name__)

# Oldest events are dropped beyond this
OUTBOX_LIMIT = 1000


class BookingEventPublisher(EventPublisher):
    """Publishes booking-created events to Redis."""

    def __init__(
        self,
        channel: Optional[str] = None,
        redis_getter: Optional[Callable[[], Awaitable[Optional[Redis]]]] = None,
    ):
        self._channel = channel or settings.booking_events_channel
        self._get_redis = redis_getter or get_redis
        self.outbox: deque[BookingCreatedEvent] = deque(maxlen=OUTBOX_LIMIT)

    async def publish(self, event: BookingCreatedEvent) -> None:
        # Held events go out first so the reminder scheduler sees them in order
        if self.outbox:
            await self.flush_outbox()
        if self.outbox or not await self._send(event):
            self.outbox.append(event)
            logger.warning(
                f"Booking event {event.booking_id} held in outbox "
                f"({len(self.outbox)} pending): {json.dumps(event.to_dict())}"
            )

    async def flush_outbox(self) -> int:
        """Re-publish held events in order. Returns how many went out."""
        sent = 0
        while self.outbox:
            if not await self._send(self.outbox[0]):
                break
            self.outbox.popleft()
            sent += 1
        if sent:
            logger.info(f"Flushed {sent} booking event(s) from outbox")
        return sent

    async def _send(self, event: BookingCreatedEvent) -> bool:
        redis = await self._get_redis()
        if redis is None:
            return False
        try:
            await redis.publish(self._channel, json.dumps(event.to_dict()))
        except RedisError as e:
            logger.error(f"Failed to publish booking event {event.booking_id}: {e}")
            RedisClient.mark_unavailable()
            return False
        logger.debug(f"Published booking event {event.booking_id} to {self._channel}")
        return True


# Singleton
_publisher: Optional[BookingEventPublisher] = None


def get_event_publisher() -> BookingEventPublisher:
    """Get singleton BookingEventPublisher."""
    global _publisher
    if _publisher is None:
        _publisher = BookingEventPublisher()
    return _publisher
