"""
Event publishers.

``RedisEventPublisher`` fans events out on a pub/sub channel for the
notification service.  Publishing is scheduled as a background task; a
delivery failure is logged and never propagates into dispatch.

``InMemoryEventBus`` keeps events in process (local subscribers, tests).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Callable

import redis.asyncio as aioredis

from dispatch_engine.domain.events import DomainEvent, EventPublisher

logger = logging.getLogger(__name__)


class InMemoryEventBus(EventPublisher):
    def __init__(self, maxlen: int = 1000):
        self.events: deque[DomainEvent] = deque(maxlen=maxlen)
        self._subscribers: list[Callable[[DomainEvent], None]] = []

    def subscribe(self, callback: Callable[[DomainEvent], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", event.name)

    def of_type(self, event_type: type) -> list[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]


class RedisEventPublisher(EventPublisher):
    def __init__(self, client: aioredis.Redis, channel: str):
        self.redis = client
        self.channel = channel
        self._inflight: set[asyncio.Task] = set()

    def publish(self, event: DomainEvent) -> None:
        payload = json.dumps(event.to_dict())
        try:
            task = asyncio.get_running_loop().create_task(self._send(payload, event.name))
        except RuntimeError:
            logger.warning("No running loop; dropped %s for request %s", event.name, event.request_id)
            return
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _send(self, payload: str, name: str) -> None:
        try:
            await self.redis.publish(self.channel, payload)
        except Exception:
            logger.exception("Failed to publish %s", name)

    async def drain(self) -> None:
        """Wait for in-flight publishes (shutdown)."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
