import logging
from typing import Any, Dict, List

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)


def hospital_channel(hospital_id: int) -> str:
    return f"hospital:{hospital_id}"


def patient_channel(patient_id: int) -> str:
    return f"patient:{patient_id}"


class ChannelManager:
    """Fan-out of queue and appointment events to websocket subscribers, keyed by channel."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, channel: str):
        await websocket.accept()
        self.active_connections.setdefault(channel, []).append(websocket)
        logger.debug("Subscriber joined %s (%d total)", channel, len(self.active_connections[channel]))

    def disconnect(self, websocket: WebSocket, channel: str):
        connections = self.active_connections.get(channel)
        if not connections:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            del self.active_connections[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self.active_connections.get(channel, []))

    async def publish(self, channel: str, event: str, data: Any):
        message = jsonable_encoder({"event": event, "channel": channel, "data": data})
        for connection in list(self.active_connections.get(channel, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                # Closed sockets are dropped, the publisher never fails on them
                logger.warning("Dropping subscriber on %s: %s", channel, e)
                self.disconnect(connection, channel)

    async def publish_many(self, channels: List[str], event: str, data: Any):
        for channel in dict.fromkeys(channels):
            await self.publish(channel, event, data)


# Global channel manager instance
manager = ChannelManager()
