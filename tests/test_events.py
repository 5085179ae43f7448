"""
Tests for event publishers.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock

from genengine.routes.websocket import ConnectionManager
from genengine.services.events import (
    FanoutEventPublisher,
    InMemoryEventPublisher,
    WebSocketEventPublisher,
    job_channel,
)


class TestEventPublishers:

    def test_job_channel_name(self):
        assert job_channel("ring-1") == "job-ring-1"

    @pytest.mark.asyncio
    async def test_in_memory_publisher_keeps_recent_events(self):
        publisher = InMemoryEventPublisher(max_events_per_channel=2)
        for event_type in ("job_enqueued", "job_started", "job_progress"):
            await publisher.publish("job-ring-1", {"type": event_type})

        assert publisher.event_types("job-ring-1") == ["job_started", "job_progress"]
        assert publisher.events("job-other") == []

        publisher.forget("job-ring-1")
        assert publisher.events("job-ring-1") == []

    @pytest.mark.asyncio
    async def test_websocket_publisher_forwards_to_manager(self):
        manager = AsyncMock()
        await WebSocketEventPublisher(manager).publish("job-ring-1", {"type": "job_started"})
        manager.send_message.assert_awaited_once_with("job-ring-1", {"type": "job_started"})

    @pytest.mark.asyncio
    async def test_fanout_survives_failing_sink(self):
        broken = AsyncMock()
        broken.publish.side_effect = RuntimeError("socket closed")
        log = InMemoryEventPublisher()

        await FanoutEventPublisher([broken, log]).publish("job-ring-1", {"type": "job_completed"})

        assert log.event_types("job-ring-1") == ["job_completed"]


class RecordingSocket:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.sent = []

    async def accept(self):
        pass

    async def send_text(self, text):
        await asyncio.sleep(self.delay)
        self.sent.append(json.loads(text))


class TestConnectionManager:

    @pytest.mark.asyncio
    async def test_broadcasts_to_channel_subscribers(self):
        manager = ConnectionManager()
        subscriber, other = RecordingSocket(), RecordingSocket()
        await manager.connect(subscriber, "job-ring-1")
        await manager.connect(other, "job-ring-2")

        await manager.send_message("job-ring-1", {"type": "job_progress", "progress": 50})

        assert subscriber.sent == [{"type": "job_progress", "progress": 50}]
        assert other.sent == []

    @pytest.mark.asyncio
    async def test_slow_client_is_dropped(self):
        manager = ConnectionManager(send_timeout=0.05)
        slow, fast = RecordingSocket(delay=5.0), RecordingSocket()
        await manager.connect(slow, "job-ring-1")
        await manager.connect(fast, "job-ring-1")

        loop = asyncio.get_running_loop()
        started = loop.time()
        await manager.send_message("job-ring-1", {"type": "job_progress"})

        assert loop.time() - started < 1.0
        assert fast.sent == [{"type": "job_progress"}]
        assert manager.active_connections["job-ring-1"] == {fast}
        assert slow not in manager.connection_channels
