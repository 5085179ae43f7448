import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Sequence

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "job-"


def job_channel(job_id: str) -> str:
    return f"{CHANNEL_PREFIX}{job_id}"


class EventPublisher(ABC):
    """Sink for job progress / status events"""

    @abstractmethod
    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        ...


class InMemoryEventPublisher(EventPublisher):
    """Keeps the most recent events per channel for polling clients and tests"""

    def __init__(self, max_events_per_channel: int = 200):
        self.max_events_per_channel = max_events_per_channel
        self._events: Dict[str, Deque[Dict[str, Any]]] = {}

    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        if channel not in self._events:
            self._events[channel] = deque(maxlen=self.max_events_per_channel)
        self._events[channel].append(event)

    def events(self, channel: str) -> List[Dict[str, Any]]:
        return list(self._events.get(channel, ()))

    def event_types(self, channel: str) -> List[str]:
        return [event.get("type") for event in self.events(channel)]

    def forget(self, channel: str):
        self._events.pop(channel, None)


class WebSocketEventPublisher(EventPublisher):
    """Forwards events to WebSocket clients subscribed to the channel"""

    def __init__(self, manager):
        self.manager = manager

    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        await self.manager.send_message(channel, event)


class FanoutEventPublisher(EventPublisher):
    """Publishes to several sinks; one failing sink does not affect the others"""

    def __init__(self, publishers: Sequence[EventPublisher]):
        self.publishers = list(publishers)

    async def publish(self, channel: str, event: Dict[str, Any]) -> None:
        for publisher in self.publishers:
            try:
                await publisher.publish(channel, event)
            except Exception as e:
                logger.warning("Publisher %s failed on %s: %s", type(publisher).__name__, channel, e)
