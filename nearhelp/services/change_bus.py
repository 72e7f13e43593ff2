from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

from loguru import logger

from nearhelp.core.presence_config import BUS_QUEUE_SIZE
from nearhelp.schemas.enums import ChangeKind
from nearhelp.services.liveness import utcnow

TOPIC_POSITIONS = "positions"
TOPIC_PRESENCE = "presence"
TOPIC_HELP_REQUESTS = "help_requests"
TOPIC_MESSAGES = "messages"


def request_topic(help_request_id: str) -> str:
    return f"request:{help_request_id}"


@dataclass(frozen=True)
class ChangeEvent:
    topic: str
    entity_id: str
    change_kind: ChangeKind
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class Subscription:
    """
    One subscriber's view of a topic. Bounded: when the consumer falls behind,
    the oldest queued event is dropped. Consumers must not rely on seeing
    every event; they re-query on a timer anyway.
    """

    def __init__(self, bus: "ChangeBus", topic: str, maxsize: int = BUS_QUEUE_SIZE):
        self.topic = topic
        self.dropped = 0
        self._bus = bus
        self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: Optional[ChangeEvent]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def deliver(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._offer(event)

    async def get(self) -> Optional[ChangeEvent]:
        """Next event, or None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def drain(self) -> int:
        """Discard queued events; returns how many were dropped."""
        drained = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is None:
                self._queue.put_nowait(None)
                break
            drained += 1
        return drained

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self)
        # wake a consumer blocked in get()
        self._offer(None)


class ChangeBus(abc.ABC):
    """Publish/subscribe channel for row changes and presence events."""

    @abc.abstractmethod
    def subscribe(self, topic: str) -> Subscription:
        ...

    @abc.abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        ...

    @abc.abstractmethod
    async def publish(self, event: ChangeEvent) -> int:
        """Returns how many subscribers the event was handed to."""

    async def publish_presence(
        self,
        entity_id: str,
        change_kind: ChangeKind,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await self.publish(
            ChangeEvent(
                topic=TOPIC_PRESENCE,
                entity_id=entity_id,
                change_kind=change_kind,
                metadata=metadata or {},
            )
        )


class InProcessChangeBus(ChangeBus):
    def __init__(self, queue_size: int = BUS_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic, maxsize=self.queue_size)
        self._subscribers.setdefault(topic, set()).add(sub)
        logger.debug(f"[bus] subscribe topic={topic} subscribers={len(self._subscribers[topic])}")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscribers.get(subscription.topic)
        if not subs:
            return
        subs.discard(subscription)
        if not subs:
            # no empty topic sets left behind as clients come and go
            del self._subscribers[subscription.topic]

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, ()))
        return sum(len(s) for s in self._subscribers.values())

    async def publish(self, event: ChangeEvent) -> int:
        subs = list(self._subscribers.get(event.topic, ()))
        for sub in subs:
            sub.deliver(event)
        return len(subs)
