"""
WebSocket routes for real-time job progress.

Clients subscribe to ``/ws/jobs/{job_id}`` and receive every event the
scheduler publishes on the job's ``job-{id}`` channel.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Dict, Set
import asyncio
import logging
import json
from datetime import datetime

from genengine.services.events import job_channel

logger = logging.getLogger(__name__)
router = APIRouter()

# Upper bound on one event send to one client
SEND_TIMEOUT_SECONDS = 2.0


class ConnectionManager:
    """Manages WebSocket connections per event channel."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.send_timeout = send_timeout
        # Map channel to set of WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        # Map WebSocket to channel for cleanup
        self.connection_channels: Dict[WebSocket, str] = {}

    async def connect(self, websocket: WebSocket, channel: str):
        """Accept a WebSocket connection for a channel."""
        await websocket.accept()
        self.active_connections.setdefault(channel, set()).add(websocket)
        self.connection_channels[websocket] = channel
        logger.info("WebSocket connected to %s", channel)

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        channel = self.connection_channels.pop(websocket, None)
        if channel is None:
            return
        connections = self.active_connections.get(channel)
        if connections is not None:
            connections.discard(websocket)
            if not connections:
                del self.active_connections[channel]
        logger.info("WebSocket disconnected from %s", channel)

    async def send_message(self, channel: str, message: dict):
        """Send a message to all connections on a channel."""
        if channel not in self.active_connections:
            return

        message_json = json.dumps(message, default=str)
        disconnected = set()

        for connection in list(self.active_connections[channel]):
            try:
                await asyncio.wait_for(connection.send_text(message_json), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("WebSocket on %s too slow, dropping connection", channel)
                disconnected.add(connection)
            except Exception as e:
                logger.warning("Failed to send message to WebSocket: %s", e)
                disconnected.add(connection)

        for connection in disconnected:
            self.disconnect(connection)


# Global connection manager
manager = ConnectionManager()


@router.websocket("/ws/jobs/{job_id}")
async def websocket_endpoint(websocket: WebSocket, job_id: str):
    """
    Streams job events (enqueued, started, progress, retry, completed,
    cancelled, failed) for one job. Answers ``{"type": "ping"}`` with a pong.
    """
    channel = job_channel(job_id)
    try:
        await manager.connect(websocket, channel)

        await websocket.send_text(json.dumps({
            "type": "connected",
            "job_id": job_id,
            "channel": channel,
            "timestamp": datetime.now().isoformat(),
            "message": "Connected to job updates"
        }))

        while True:
            try:
                data = await websocket.receive_text()
                message = json.loads(data)
                if message.get("type") == "ping":
                    await websocket.send_text(json.dumps({
                        "type": "pong",
                        "timestamp": datetime.now().isoformat()
                    }))
            except WebSocketDisconnect:
                break
            except json.JSONDecodeError:
                logger.warning("Invalid JSON received from WebSocket for job %s", job_id)
                continue

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error for job %s: %s", job_id, e)
    finally:
        manager.disconnect(websocket)
